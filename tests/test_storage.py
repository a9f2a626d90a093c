import json
from datetime import timedelta

import httpx
import pytest

from conftest import FIXED_NOW, make_pdf
from signedpdf.adapters.http_fetch import HttpByteFetcher
from signedpdf.errors import DocumentNotFoundError
from signedpdf.integrity import finalize
from signedpdf.storage import LocalBlobStore, LocalDocumentStore, StoreSourceResolver
from signedpdf.types import AuditAction


def test_import_document_stores_blob_and_expiry(store):
    pdf_bytes = make_pdf(2)

    record = store.import_document(pdf_bytes, 'contract.pdf', slug='contract', now=FIXED_NOW)

    assert record.page_count == 2
    assert record.expires_at == FIXED_NOW + timedelta(days=14)
    assert record.location.startswith('file://')
    assert store.blob_store.fetch(record.location) == pdf_bytes
    assert store.get_document(record.id).model_dump() == record.model_dump()
    assert store.get_document('contract').id == record.id
    assert [entry.action for entry in store.list_audit_entries(record.id)] == [AuditAction.created]


@pytest.mark.parametrize('payload', [b'', b'plain text, not a pdf'])
def test_import_rejects_bad_input(store, payload):
    with pytest.raises(ValueError):
        store.import_document(payload, 'bad.pdf')


def test_import_rejects_oversized_pdf(settings):
    limited = LocalDocumentStore.from_settings(settings.model_copy(update={'max_pdf_bytes': 10}))

    with pytest.raises(ValueError, match='too large'):
        limited.import_document(make_pdf(1), 'big.pdf')


def test_import_rejects_duplicate_slug(store):
    store.import_document(make_pdf(1), 'a.pdf', slug='shared')

    with pytest.raises(ValueError, match='slug'):
        store.import_document(make_pdf(1), 'b.pdf', slug='shared')


def test_annotation_records_append_signed_audit(store):
    record = store.import_document(make_pdf(2), 'doc.pdf')

    stored = store.add_annotation_records(
        record.id,
        [
            {'name': 'Jane', 'data': '{"type": "rect"}', 'x': 1, 'y': 2, 'width': 3, 'height': 4, 'page': 1},
            {'name': 'Joe', 'data': '{"type": "rect"}', 'x': 1, 'y': 2, 'width': 3, 'height': 4, 'page': 2},
        ],
    )

    assert [row['document_id'] for row in stored] == [record.id, record.id]
    assert len(store.list_annotation_records(record.id)) == 2
    assert [row['name'] for row in store.list_annotation_records(record.id, page=2)] == ['Joe']

    signed = [entry for entry in store.list_audit_entries(record.id) if entry.action == AuditAction.signed]
    assert [json.loads(entry.details)['signature_id'] for entry in signed] == [row['id'] for row in stored]
    assert [entry.actor_label for entry in signed] == ['Jane', 'Joe']


def test_annotating_unknown_document_fails(store):
    with pytest.raises(DocumentNotFoundError):
        store.add_annotation_records('does-not-exist', [{'data': '{}'}])


def test_save_integrity_keeps_superseded_hashes(store):
    record = store.import_document(make_pdf(1), 'doc.pdf')
    first = finalize(b'first', document_id=record.id, integrity_token='t1', finalized_at=FIXED_NOW)
    second = finalize(b'second', document_id=record.id, integrity_token='t2', finalized_at=FIXED_NOW)

    store.save_integrity(first)
    updated = store.save_integrity(second)

    assert updated.integrity == second
    assert updated.superseded_hashes == [first.content_hash]
    assert store.find_by_hash(second.content_hash) == (updated, True)
    assert store.find_by_hash(first.content_hash) == (updated, False)
    assert store.find_by_hash('0' * 64) is None


def test_purge_expired_removes_documents_and_blobs(store):
    old = store.import_document(make_pdf(1), 'old.pdf', now=FIXED_NOW - timedelta(days=30))
    fresh = store.import_document(make_pdf(1), 'fresh.pdf', now=FIXED_NOW)

    purged = store.purge_expired(FIXED_NOW)

    assert [record.id for record in purged] == [old.id]
    assert store.get_document(old.id) is None
    assert store.get_document(fresh.id) is not None
    with pytest.raises(FileNotFoundError):
        store.blob_store.fetch(old.location)


def test_blob_store_round_trip_and_delete(tmp_path):
    blobs = LocalBlobStore(tmp_path / 'blobs')

    location = blobs.upload('../../escape me.pdf', b'payload')

    assert blobs.fetch(location) == b'payload'
    blobs.delete(location)
    with pytest.raises(FileNotFoundError):
        blobs.fetch(location)


def test_blob_store_fetches_http_locations(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == '/files/source.pdf'
        return httpx.Response(200, content=b'%PDF-remote')

    fetcher = HttpByteFetcher(transport=httpx.MockTransport(handler))
    blobs = LocalBlobStore(tmp_path / 'blobs', http_fetcher=fetcher)

    assert blobs.fetch('https://cdn.example.com/files/source.pdf') == b'%PDF-remote'


def test_http_fetcher_raises_on_error_status():
    fetcher = HttpByteFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(404)))

    with pytest.raises(httpx.HTTPStatusError):
        fetcher.fetch('https://cdn.example.com/missing.pdf')


def test_http_fetcher_enforces_size_limit():
    fetcher = HttpByteFetcher(
        max_bytes=4,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b'too many bytes')),
    )

    with pytest.raises(ValueError):
        fetcher.fetch('https://cdn.example.com/big.pdf')


def test_store_resolver_reads_through_blob_store(store):
    pdf_bytes = make_pdf(1)
    record = store.import_document(pdf_bytes, 'doc.pdf')
    resolver = StoreSourceResolver(store, store.blob_store)

    assert resolver.fetch(resolver.locate(record.id)) == pdf_bytes
    with pytest.raises(DocumentNotFoundError):
        resolver.locate('unknown-doc')
