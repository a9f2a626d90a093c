from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from signedpdf.bundle import build_signed_bundle
from signedpdf.config import get_settings
from signedpdf.errors import AssemblyError, DocumentNotFoundError
from signedpdf.service import AssemblyService
from signedpdf.storage import LocalDocumentStore
from signedpdf.types import AssemblyResult, DocumentRecord, VirtualPage, utcnow


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _document_snapshot(record: DocumentRecord) -> dict:
    return {
        'document_id': record.id,
        'name': record.name,
        'slug': record.slug,
        'page_count': record.page_count,
        'location': record.location,
        'signed_location': record.signed_location,
        'created_at': record.created_at.isoformat(),
        'expires_at': record.expires_at.isoformat() if record.expires_at else None,
        'integrity': record.integrity.model_dump(mode='json') if record.integrity else None,
    }


def _assembly_snapshot(result: AssemblyResult, output_path: Path | None) -> dict:
    return {
        'document_id': result.primary_document_id,
        'content_hash': result.content_hash,
        'integrity_token': result.integrity_token,
        'finalized_at': result.finalized_at.isoformat(),
        'page_count': result.page_count,
        'content_page_count': result.content_page_count,
        'skipped_virtual_page_ids': result.skipped_virtual_page_ids,
        'audit_entries_truncated': result.audit_entries_truncated,
        'warnings': [warning.model_dump(mode='json') for warning in result.warnings],
        'output_path': str(output_path) if output_path else None,
    }


def parse_page_list(value: str) -> list[VirtualPage]:
    """Parse ``docA:1,docB:1:90`` into virtual pages (document id, 1-based page, optional rotation)."""
    pages: list[VirtualPage] = []
    for position, chunk in enumerate(str(value or '').split(','), start=1):
        token = chunk.strip()
        if not token:
            continue
        parts = token.split(':')
        if len(parts) not in {2, 3} or not parts[0].strip():
            raise ValueError(f'invalid page entry {token!r}; expected DOC:PAGE[:ROTATION]')
        try:
            page_index = int(parts[1])
            rotation = int(parts[2]) if len(parts) == 3 else 0
        except ValueError as exc:
            raise ValueError(f'invalid page entry {token!r}: {exc}') from exc
        pages.append(
            VirtualPage(
                id=f'vp{position}',
                source_doc_id=parts[0].strip(),
                source_page_index=page_index,
                rotation_delta=rotation,
            )
        )
    if not pages:
        raise ValueError('page list is empty')
    return pages


def _build_service() -> tuple[LocalDocumentStore, AssemblyService]:
    settings = get_settings()
    store = LocalDocumentStore.from_settings(settings)
    return store, AssemblyService(store, store.blob_store, settings=settings)


def cmd_import(args: argparse.Namespace) -> int:
    pdf_path = Path(args.pdf).expanduser().resolve()
    if not pdf_path.exists() or not pdf_path.is_file():
        _print_json({'status': 'error', 'message': f'PDF not found: {pdf_path}'})
        return 2

    store, _ = _build_service()
    try:
        record = store.import_document(pdf_path.read_bytes(), args.name or pdf_path.name, slug=args.slug)
    except ValueError as exc:
        _print_json({'status': 'error', 'message': str(exc)})
        return 2
    _print_json(_document_snapshot(record))
    return 0


def cmd_annotate(args: argparse.Namespace) -> int:
    records_path = Path(args.records).expanduser().resolve()
    if not records_path.exists():
        _print_json({'status': 'error', 'message': f'Records file not found: {records_path}'})
        return 2
    try:
        payload = json.loads(records_path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as exc:
        _print_json({'status': 'error', 'message': f'Records file is not valid JSON: {exc}'})
        return 2
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        _print_json({'status': 'error', 'message': 'Records file must hold a JSON object or list'})
        return 2

    store, _ = _build_service()
    try:
        stored = store.add_annotation_records(args.document_id, payload)
    except DocumentNotFoundError as exc:
        _print_json({'status': 'error', 'message': str(exc)})
        return 2
    _print_json({'document_id': args.document_id, 'added': [row['id'] for row in stored]})
    return 0


def cmd_assemble(args: argparse.Namespace) -> int:
    _, service = _build_service()
    try:
        pages = parse_page_list(args.pages) if args.pages else None
        result = service.finalize(args.document_id, pages)
    except ValueError as exc:
        _print_json({'status': 'error', 'message': str(exc)})
        return 2
    except AssemblyError as exc:
        _print_json({'status': 'error', 'stage': exc.stage.value, 'message': exc.message})
        return 1

    output_path = None
    if args.output:
        output_path = Path(args.output).expanduser().resolve()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(result.output_bytes)
    _print_json(_assembly_snapshot(result, output_path))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    if not args.document and not args.file:
        _print_json({'status': 'error', 'message': 'Pass --document, --file, or both'})
        return 2
    content = None
    if args.file:
        file_path = Path(args.file).expanduser().resolve()
        if not file_path.exists():
            _print_json({'status': 'error', 'message': f'File not found: {file_path}'})
            return 2
        content = file_path.read_bytes()

    _, service = _build_service()
    report = service.verify(args.document, token=args.token, content=content)
    _print_json(report.model_dump(mode='json'))
    return 0


def cmd_bundle(args: argparse.Namespace) -> int:
    _, service = _build_service()
    archive = build_signed_bundle(service, args.document_id)
    output_path = Path(args.output).expanduser().resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(archive)
    _print_json({'output_path': str(output_path), 'bytes': len(archive)})
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    store, _ = _build_service()
    purged = store.purge_expired(utcnow())
    _print_json({'purged': [record.id for record in purged]})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='SignedPDF document assembly CLI')
    sub = parser.add_subparsers(dest='command', required=True)

    import_cmd = sub.add_parser('import', help='Import a source PDF')
    import_cmd.add_argument('--pdf', required=True, help='Path to PDF file')
    import_cmd.add_argument('--name', required=False, help='Display name override')
    import_cmd.add_argument('--slug', required=False, help='Optional short link slug')
    import_cmd.set_defaults(func=cmd_import)

    annotate = sub.add_parser('annotate', help='Add annotation records to a document')
    annotate.add_argument('--document-id', required=True)
    annotate.add_argument('--records', required=True, help='JSON file with one record or a list of records')
    annotate.set_defaults(func=cmd_annotate)

    assemble_cmd = sub.add_parser('assemble', help='Assemble and finalize a document')
    assemble_cmd.add_argument('--document-id', required=True, help='Primary document ID')
    assemble_cmd.add_argument('--pages', required=False, help='Page list, e.g. "docA:1,docB:1:90"')
    assemble_cmd.add_argument('--output', required=False, help='Write the output PDF here')
    assemble_cmd.set_defaults(func=cmd_assemble)

    verify = sub.add_parser('verify', help='Verify a link token or a PDF copy')
    verify.add_argument('--document', required=False, help='Document ID or slug')
    verify.add_argument('--token', required=False, help='Integrity token from the verification link')
    verify.add_argument('--file', required=False, help='PDF copy to check by hash')
    verify.set_defaults(func=cmd_verify)

    bundle = sub.add_parser('bundle', help='Finalize several documents into a ZIP archive')
    bundle.add_argument('--document-id', required=True, action='append')
    bundle.add_argument('--output', required=True)
    bundle.set_defaults(func=cmd_bundle)

    purge = sub.add_parser('purge', help='Delete expired documents')
    purge.set_defaults(func=cmd_purge)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(get_settings().log_level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    return int(args.func(args))


if __name__ == '__main__':
    raise SystemExit(main())
