from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from signedpdf.adapters.base import BlobStore, DocumentStore, SourceResolver
from signedpdf.assembly import assemble, virtual_pages_from_editor_options
from signedpdf.config import Settings, get_settings
from signedpdf.errors import AssemblyError
from signedpdf.ingest import ingest_records
from signedpdf.integrity import compute_content_hash, is_integrity_verified, verify_document
from signedpdf.storage import StoreSourceResolver, count_pdf_pages
from signedpdf.types import (
    AssemblyResult,
    AssemblyStage,
    AuditAction,
    VerificationReport,
    VerificationStatus,
    VirtualPage,
)

logger = logging.getLogger(__name__)


class AssemblyService:
    """Runs assembly against the stores and persists what it produces."""

    def __init__(
        self,
        documents: DocumentStore,
        blobs: BlobStore,
        *,
        settings: Settings | None = None,
        resolver: SourceResolver | None = None,
        token_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.documents = documents
        self.blobs = blobs
        self.settings = settings or get_settings()
        self.resolver = resolver or StoreSourceResolver(documents, blobs)
        self.token_factory = token_factory
        self.clock = clock

    def _default_virtual_pages(self, document_id: str) -> list[VirtualPage]:
        record = self.documents.get_document(document_id)
        page_count = record.page_count if record is not None else None
        if not page_count:
            location = self.resolver.locate(document_id)
            page_count = count_pdf_pages(self.resolver.fetch(location)) if location else 0
        return virtual_pages_from_editor_options(document_id, int(page_count or 0))

    def _gather_annotations(self, virtual_pages: Sequence[VirtualPage]):
        anchors: list[tuple[str, int]] = []
        for page in virtual_pages:
            anchor = (page.source_doc_id, page.source_page_index)
            if anchor not in anchors:
                anchors.append(anchor)

        records: list[dict] = []
        for source_doc_id, page_index in anchors:
            try:
                records.extend(self.documents.list_annotation_records(source_doc_id, page_index))
            except ValueError as exc:
                logger.warning('Cannot list annotations for %s page %s: %s', source_doc_id, page_index, exc)
        return ingest_records(records)

    def finalize(
        self,
        primary_document_id: str,
        virtual_pages: Sequence[VirtualPage] | None = None,
    ) -> AssemblyResult:
        primary = self.documents.get_document(primary_document_id)
        if primary is None:
            raise AssemblyError(AssemblyStage.fetch, f'primary document {primary_document_id} not found')
        document_id = primary.id

        pages = list(virtual_pages) if virtual_pages is not None else self._default_virtual_pages(document_id)
        ingested = self._gather_annotations(pages)
        audit_entries = self.documents.list_audit_entries(document_id)

        result = assemble(
            document_id,
            pages,
            ingested.annotations,
            audit_entries,
            resolver=self.resolver,
            settings=self.settings,
            token_factory=self.token_factory,
            clock=self.clock,
        )
        if ingested.warnings:
            result = result.model_copy(update={'warnings': ingested.warnings + result.warnings})

        previous_location = primary.signed_location
        location = self.blobs.upload(f'{document_id}-signed.pdf', result.output_bytes)
        self.documents.save_integrity(result.integrity_record)
        self.documents.update_signed_location(document_id, location)
        if previous_location and previous_location != location:
            try:
                self.blobs.delete(previous_location)
            except Exception as exc:
                logger.warning('Failed to delete previous output %s: %s', previous_location, exc)

        self.documents.append_audit_entry(
            document_id,
            AuditAction.completed,
            details={'content_hash': result.content_hash, 'pages': result.page_count},
        )
        logger.info('Finalized %s (hash %s)', document_id, result.content_hash)
        return result

    def verify_by_token(self, document_id: str, presented_token: str) -> bool:
        record = self.documents.get_document(document_id)
        if record is None:
            return False
        return is_integrity_verified(record.integrity, presented_token)

    def verify_by_hash(self, presented_hash: str) -> str | None:
        match = self.documents.find_by_hash(presented_hash)
        if match is None:
            return None
        record, current = match
        return record.id if current else None

    def verify(
        self,
        document_ref: str | None = None,
        *,
        token: str | None = None,
        content: bytes | None = None,
    ) -> VerificationReport:
        """Check a verification link, an uploaded copy, or both.

        Without ``document_ref`` the content alone is looked up by hash.
        """
        if document_ref is None:
            if content is None:
                raise ValueError('either document_ref or content is required')
            match = self.documents.find_by_hash(compute_content_hash(content))
            if match is None:
                return VerificationReport(
                    status=VerificationStatus.hash_mismatch,
                    message='Content does not match any finalized document.',
                    content_hash=compute_content_hash(content),
                )
            record = match[0]
        else:
            record = self.documents.get_document(document_ref)
            if record is None:
                return VerificationReport(
                    status=VerificationStatus.not_found,
                    message=f'Document not found: {document_ref}',
                )

        return verify_document(
            record.integrity,
            superseded_hashes=record.superseded_hashes,
            presented_token=token,
            content=content,
        )
