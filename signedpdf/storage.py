from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import pymupdf as fitz

from signedpdf.adapters.base import BlobStore, DocumentStore
from signedpdf.adapters.http_fetch import HttpByteFetcher
from signedpdf.config import Settings, get_settings
from signedpdf.errors import DocumentNotFoundError
from signedpdf.types import AuditAction, AuditEntry, DocumentRecord, IntegrityRecord, new_id, utcnow

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:-]*$')


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding='utf-8')
    tmp.replace(path)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    tmp.write_bytes(data)
    tmp.replace(path)


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding='utf-8'))


def _safe_id(value: str) -> str:
    token = str(value or '').strip()
    if not token or '..' in token or not _SAFE_ID.match(token):
        raise ValueError(f'invalid document id: {value!r}')
    return token


def _safe_name(name: str) -> str:
    token = re.sub(r'[^A-Za-z0-9_.-]+', '_', str(name or '').strip()).strip('._')
    return token or 'document.pdf'


def _location_path(location: str) -> Path | None:
    parsed = urlparse(location)
    if parsed.scheme == 'file':
        return Path(url2pathname(parsed.path))
    if not parsed.scheme:
        return Path(location)
    return None


def count_pdf_pages(pdf_bytes: bytes) -> int:
    document = fitz.open(stream=pdf_bytes, filetype='pdf')
    try:
        return int(document.page_count)
    finally:
        document.close()


class LocalBlobStore:
    """Bytes under ``root``; locations are ``file://`` URIs.

    ``http(s)`` locations can be fetched but never written.
    """

    def __init__(self, root: Path, *, http_fetcher: HttpByteFetcher | None = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._http = http_fetcher or HttpByteFetcher()
        self._lock = threading.RLock()

    def upload(self, name: str, data: bytes) -> str:
        path = self.root / f'{new_id()}-{_safe_name(name)}'
        with self._lock:
            write_bytes_atomic(path, bytes(data))
        return path.resolve().as_uri()

    def fetch(self, location: str) -> bytes:
        parsed = urlparse(location)
        if parsed.scheme in {'http', 'https'}:
            return self._http.fetch(location)
        path = _location_path(location)
        if path is None:
            raise ValueError(f'unsupported location: {location}')
        return path.read_bytes()

    def delete(self, location: str) -> None:
        path = _location_path(location)
        if path is None:
            logger.debug('Not deleting non-local blob %s', location)
            return
        try:
            path.resolve().relative_to(self.root.resolve())
        except ValueError:
            logger.warning('Refusing to delete blob outside store: %s', location)
            return
        with self._lock:
            path.unlink(missing_ok=True)


class LocalDocumentStore:
    """Document, annotation and audit records as JSON files under ``data_dir/documents``."""

    def __init__(self, root: Path, *, blob_store: BlobStore, settings: Settings | None = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.blob_store = blob_store
        self.settings = settings or get_settings()
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> LocalDocumentStore:
        settings = settings or get_settings()
        fetcher = HttpByteFetcher(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_bytes=settings.max_pdf_bytes,
        )
        blobs = LocalBlobStore(settings.data_dir / 'blobs', http_fetcher=fetcher)
        return cls(settings.data_dir / 'documents', blob_store=blobs, settings=settings)

    def _doc_dir(self, document_id: str) -> Path:
        return self.root / _safe_id(document_id)

    def _record_path(self, document_id: str) -> Path:
        return self._doc_dir(document_id) / 'document.json'

    def _annotations_path(self, document_id: str) -> Path:
        return self._doc_dir(document_id) / 'annotations.json'

    def _audit_path(self, document_id: str) -> Path:
        return self._doc_dir(document_id) / 'audit.jsonl'

    def save_document(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            write_json_atomic(self._record_path(record.id), record.model_dump(mode='json'))
        return record

    def _load(self, document_id: str) -> DocumentRecord | None:
        try:
            path = self._record_path(document_id)
        except ValueError:
            return None
        if not path.exists():
            return None
        with self._lock:
            payload = read_json(path)
        return DocumentRecord.model_validate(payload)

    def list_documents(self) -> list[DocumentRecord]:
        records: list[DocumentRecord] = []
        for path in sorted(self.root.glob('*/document.json')):
            with self._lock:
                try:
                    payload = read_json(path)
                except (OSError, ValueError) as exc:
                    logger.warning('Unreadable document record %s: %s', path, exc)
                    continue
            records.append(DocumentRecord.model_validate(payload))
        return records

    def get_document(self, document_ref: str) -> DocumentRecord | None:
        record = self._load(document_ref)
        if record is not None:
            return record
        ref = str(document_ref or '').strip()
        if not ref:
            return None
        for candidate in self.list_documents():
            if candidate.slug and candidate.slug == ref:
                return candidate
        return None

    def require_document(self, document_ref: str) -> DocumentRecord:
        record = self.get_document(document_ref)
        if record is None:
            raise DocumentNotFoundError(f'Document not found: {document_ref}')
        return record

    def _mutate(self, document_id: str, fn) -> DocumentRecord:
        with self._lock:
            record = self._load(document_id)
            if record is None:
                raise DocumentNotFoundError(f'Document not found: {document_id}')
            fn(record)
            write_json_atomic(self._record_path(record.id), record.model_dump(mode='json'))
        return record

    def import_document(
        self,
        pdf_bytes: bytes,
        name: str,
        *,
        slug: str | None = None,
        now: datetime | None = None,
    ) -> DocumentRecord:
        size = len(pdf_bytes or b'')
        if size <= 0:
            raise ValueError('PDF is empty')
        if size > int(self.settings.max_pdf_bytes):
            raise ValueError(f'PDF too large: {size} bytes, max allowed {int(self.settings.max_pdf_bytes)} bytes')
        try:
            page_count = count_pdf_pages(pdf_bytes)
        except Exception as exc:
            raise ValueError(f'not a readable PDF: {exc}') from exc
        if page_count <= 0:
            raise ValueError('PDF has no pages')

        slug = (slug or '').strip() or None
        if slug is not None and self.get_document(slug) is not None:
            raise ValueError(f'slug already in use: {slug}')

        created_at = now or utcnow()
        record = DocumentRecord(
            name=str(name or 'document.pdf'),
            location=self.blob_store.upload(name or 'document.pdf', pdf_bytes),
            slug=slug,
            page_count=page_count,
            created_at=created_at,
            expires_at=created_at + timedelta(days=int(self.settings.document_ttl_days)),
        )
        self.save_document(record)
        self.append_audit_entry(record.id, AuditAction.created, details={'name': record.name})
        logger.info('Imported %s as %s (%d pages)', record.name, record.id, page_count)
        return record

    def list_annotation_records(self, document_id: str, page: int | None = None) -> list[dict[str, Any]]:
        path = self._annotations_path(document_id)
        if not path.exists():
            return []
        with self._lock:
            rows = read_json(path)
        rows = [row for row in rows or [] if isinstance(row, dict)]
        if page is None:
            return rows
        return [row for row in rows if str(row.get('page')) == str(page)]

    def add_annotation_records(self, document_id: str, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Store raw annotation rows and record a ``signed`` audit entry for each."""
        self.require_document(document_id)
        stored: list[dict[str, Any]] = []
        with self._lock:
            existing = self.list_annotation_records(document_id)
            for raw in records:
                row = dict(raw)
                row['id'] = str(row.get('id') or new_id())
                row['document_id'] = document_id
                row.setdefault('created_at', utcnow().isoformat())
                stored.append(row)
            write_json_atomic(self._annotations_path(document_id), existing + stored)
            for row in stored:
                self.append_audit_entry(
                    document_id,
                    AuditAction.signed,
                    actor_label=str(row.get('name') or '').strip() or None,
                    details={'signature_id': row['id']},
                )
        return stored

    def list_audit_entries(self, document_id: str) -> list[AuditEntry]:
        path = self._audit_path(document_id)
        if not path.exists():
            return []
        entries: list[AuditEntry] = []
        with self._lock:
            lines = path.read_text(encoding='utf-8').splitlines()
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValueError as exc:
                logger.warning('Skipping malformed audit line for %s: %s', document_id, exc)
        entries.sort(key=lambda entry: entry.created_at)
        return entries

    def append_audit_entry(
        self,
        document_id: str,
        action: AuditAction,
        *,
        actor_label: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            document_id=document_id,
            action=action,
            actor_label=actor_label,
            details=json.dumps(details, ensure_ascii=False, sort_keys=True) if details else None,
        )
        path = self._audit_path(document_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open('a', encoding='utf-8') as f:
                f.write(entry.model_dump_json() + '\n')
        return entry

    def save_integrity(self, record: IntegrityRecord) -> DocumentRecord:
        def apply(document: DocumentRecord) -> None:
            previous = document.integrity
            if previous is not None and previous.content_hash != record.content_hash:
                if previous.content_hash not in document.superseded_hashes:
                    document.superseded_hashes.append(previous.content_hash)
            document.integrity = record

        return self._mutate(record.document_id, apply)

    def update_signed_location(self, document_id: str, location: str) -> DocumentRecord:
        def apply(document: DocumentRecord) -> None:
            document.signed_location = location

        return self._mutate(document_id, apply)

    def find_by_hash(self, content_hash: str) -> tuple[DocumentRecord, bool] | None:
        wanted = str(content_hash or '').strip().lower()
        if not wanted:
            return None
        stale: DocumentRecord | None = None
        for record in self.list_documents():
            if record.integrity is not None and record.integrity.content_hash == wanted:
                return record, True
            if stale is None and wanted in record.superseded_hashes:
                stale = record
        if stale is not None:
            return stale, False
        return None

    def purge_expired(self, now: datetime) -> list[DocumentRecord]:
        purged: list[DocumentRecord] = []
        for record in self.list_documents():
            if record.expires_at is None or record.expires_at > now:
                continue
            for location in (record.location, record.signed_location):
                if not location:
                    continue
                try:
                    self.blob_store.delete(location)
                except Exception as exc:
                    logger.warning('Failed to delete blob %s for %s: %s', location, record.id, exc)
            with self._lock:
                shutil.rmtree(self._doc_dir(record.id), ignore_errors=True)
            logger.info('Purged expired document %s', record.id)
            purged.append(record)
        return purged


class StoreSourceResolver:
    """Resolves source document ids through a document store and reads bytes from a blob store."""

    def __init__(self, documents: DocumentStore, blobs: BlobStore):
        self.documents = documents
        self.blobs = blobs

    def locate(self, document_id: str) -> str | None:
        record = self.documents.get_document(document_id)
        if record is None:
            raise DocumentNotFoundError(f'Document not found: {document_id}')
        return record.location

    def fetch(self, location: str) -> bytes:
        return self.blobs.fetch(location)
