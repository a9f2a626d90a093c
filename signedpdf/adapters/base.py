from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from signedpdf.types import AuditAction, AuditEntry, DocumentRecord, IntegrityRecord


@runtime_checkable
class SourceResolver(Protocol):
    """Locates and fetches the bytes of a source document."""

    def locate(self, document_id: str) -> str | None: ...

    def fetch(self, location: str) -> bytes: ...


@runtime_checkable
class BlobStore(Protocol):
    def fetch(self, location: str) -> bytes: ...

    def upload(self, name: str, data: bytes) -> str: ...

    def delete(self, location: str) -> None: ...


@runtime_checkable
class DocumentStore(Protocol):
    def get_document(self, document_ref: str) -> DocumentRecord | None: ...

    def list_annotation_records(self, document_id: str, page: int | None = None) -> list[dict[str, Any]]: ...

    def list_audit_entries(self, document_id: str) -> list[AuditEntry]: ...

    def append_audit_entry(
        self,
        document_id: str,
        action: AuditAction,
        *,
        actor_label: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry: ...

    def save_integrity(self, record: IntegrityRecord) -> DocumentRecord: ...

    def update_signed_location(self, document_id: str, location: str) -> DocumentRecord: ...

    def find_by_hash(self, content_hash: str) -> tuple[DocumentRecord, bool] | None: ...

    def purge_expired(self, now: datetime) -> list[DocumentRecord]: ...
