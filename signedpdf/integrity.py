from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from typing import Iterable

from signedpdf.types import IntegrityRecord, VerificationReport, VerificationStatus

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


def mint_integrity_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def compute_content_hash(data: bytes) -> str:
    return hashlib.sha256(bytes(data)).hexdigest()


def finalize(
    output_bytes: bytes,
    *,
    document_id: str,
    integrity_token: str,
    finalized_at: datetime,
) -> IntegrityRecord:
    return IntegrityRecord(
        document_id=document_id,
        integrity_token=integrity_token,
        content_hash=compute_content_hash(output_bytes),
        finalized_at=finalized_at,
    )


def is_integrity_verified(record: IntegrityRecord | None, presented_token: str | None) -> bool:
    if record is None or not presented_token:
        return False
    return hmac.compare_digest(
        record.integrity_token.encode('utf-8'),
        str(presented_token).encode('utf-8'),
    )


def is_content_valid(content: bytes, known_hashes: Iterable[str]) -> bool:
    digest = compute_content_hash(content)
    return any(hmac.compare_digest(digest, str(known)) for known in known_hashes if known)


def verify_document(
    record: IntegrityRecord | None,
    *,
    superseded_hashes: Iterable[str] = (),
    presented_token: str | None = None,
    content: bytes | None = None,
) -> VerificationReport:
    """Combine the token and content checks into one verdict.

    The token check decides whether a link still points at the current
    version. Content is checked against the current hash first and then
    against superseded ones, so an older copy reads as a stale token rather
    than as altered content. When both are given, current content with a
    non-matching token is still an integrity mismatch.
    """
    if record is None:
        return VerificationReport(
            status=VerificationStatus.not_found,
            message='Document has not been finalized.',
        )

    base = {
        'document_id': record.document_id,
        'content_hash': record.content_hash,
        'finalized_at': record.finalized_at,
    }

    if content is not None:
        if is_content_valid(content, [record.content_hash]):
            if presented_token is not None and not is_integrity_verified(record, presented_token):
                logger.info('Current content presented with a stale token for %s', record.document_id)
                return VerificationReport(
                    status=VerificationStatus.integrity_mismatch,
                    message='Content matches, but the integrity token does not match the current version.',
                    **base,
                )
            return VerificationReport(
                status=VerificationStatus.verified,
                message='Content matches the current finalized version.',
                **base,
            )
        if is_content_valid(content, superseded_hashes):
            return VerificationReport(
                status=VerificationStatus.integrity_mismatch,
                message='Content matches an earlier version; a newer version has been issued.',
                **base,
            )
        return VerificationReport(
            status=VerificationStatus.hash_mismatch,
            message='Content does not match any finalized version of this document.',
            **base,
        )

    if is_integrity_verified(record, presented_token):
        return VerificationReport(
            status=VerificationStatus.verified,
            message='Verification link points at the current version.',
            **base,
        )

    logger.info('Stale or unknown integrity token presented for %s', record.document_id)
    return VerificationReport(
        status=VerificationStatus.integrity_mismatch,
        message='Content may be valid, but the integrity token does not match the current version.',
        **base,
    )
