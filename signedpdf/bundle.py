from __future__ import annotations

import io
import logging
import re
import zipfile
from typing import Iterable

from signedpdf.errors import AssemblyError
from signedpdf.service import AssemblyService

logger = logging.getLogger(__name__)


def _archive_name(name: str, document_id: str, used: set[str]) -> str:
    stem = re.sub(r'\.pdf$', '', str(name or ''), flags=re.IGNORECASE).strip() or document_id
    stem = re.sub(r'[^A-Za-z0-9 _.-]+', '_', stem)
    candidate = f'{stem}-signed.pdf'
    counter = 2
    while candidate in used:
        candidate = f'{stem}-signed-{counter}.pdf'
        counter += 1
    used.add(candidate)
    return candidate


def build_signed_bundle(service: AssemblyService, document_ids: Iterable[str]) -> bytes:
    """Finalize each document and pack the outputs into one ZIP archive.

    Unknown documents and documents that fail to assemble are left out.
    """
    buffer = io.BytesIO()
    used: set[str] = set()
    with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
        for document_id in document_ids:
            record = service.documents.get_document(document_id)
            if record is None:
                logger.warning('Skipping unknown document %s in bundle', document_id)
                continue
            try:
                result = service.finalize(record.id)
            except AssemblyError as exc:
                logger.warning('Skipping %s in bundle: %s', record.id, exc)
                continue
            archive.writestr(_archive_name(record.name, record.id, used), result.output_bytes)
    return buffer.getvalue()
