import json
from datetime import timedelta

import pymupdf as fitz

from conftest import FIXED_NOW, make_pdf
from signedpdf.pdf.certificate import (
    CertificateContent,
    build_certificate_pdf,
    build_qr_png,
    draw_verification_footer,
    resolve_actor_label,
)
from signedpdf.types import AuditAction, AuditEntry


def _entries(count, document_id='doc-1'):
    return [
        AuditEntry(
            document_id=document_id,
            action=AuditAction.viewed,
            actor_label=f'viewer {index}',
            created_at=FIXED_NOW + timedelta(minutes=index),
        )
        for index in range(count)
    ]


def _content(entries, **overrides):
    values = {
        'title': 'Certificate of Completion',
        'document_id': 'doc-1',
        'generated_at': FIXED_NOW,
        'verification_url': 'https://sign.example.com/verify/doc-1?integrity=abc',
        'qr_png': build_qr_png('https://sign.example.com/verify/doc-1?integrity=abc'),
        'audit_entries': entries,
        'max_entries': 30,
    }
    values.update(overrides)
    return CertificateContent(**values)


def test_qr_code_is_png():
    assert build_qr_png('https://example.com').startswith(b'\x89PNG\r\n\x1a\n')


def test_certificate_lists_entries_in_ascending_order():
    entries = list(reversed(_entries(3)))
    pdf_bytes, truncated = build_certificate_pdf(_content(entries))

    document = fitz.open(stream=pdf_bytes, filetype='pdf')
    text = document[0].get_text()
    document.close()

    assert truncated == 0
    assert 'Certificate of Completion' in text
    assert 'doc-1' in text
    assert '2026-03-01 12:30:00 UTC' in text
    assert text.index('viewer 0') < text.index('viewer 1') < text.index('viewer 2')
    assert 'VIEWED' in text


def test_certificate_truncates_at_max_entries():
    _, truncated = build_certificate_pdf(_content(_entries(8), max_entries=5))

    assert truncated == 3


def test_certificate_truncates_when_page_is_full():
    pdf_bytes, truncated = build_certificate_pdf(_content(_entries(200), max_entries=500))

    document = fitz.open(stream=pdf_bytes, filetype='pdf')
    assert document.page_count == 1
    document.close()
    assert 0 < truncated < 200


def test_empty_audit_trail_is_stated():
    pdf_bytes, truncated = build_certificate_pdf(_content([]))

    document = fitz.open(stream=pdf_bytes, filetype='pdf')
    assert 'No audit events recorded.' in document[0].get_text()
    document.close()
    assert truncated == 0


def test_certificate_bytes_are_stable():
    content = _content(_entries(4))

    assert build_certificate_pdf(content)[0] == build_certificate_pdf(content)[0]


def test_actor_label_prefers_signature_label():
    entry = AuditEntry(
        document_id='doc-1',
        action=AuditAction.signed,
        actor_label='guest',
        details=json.dumps({'signature_id': 'sig-1'}),
    )

    assert resolve_actor_label(entry, {'sig-1': 'Jane Doe'}) == 'Jane Doe'
    assert resolve_actor_label(entry, {'other': 'Someone'}) == 'guest'


def test_actor_label_falls_back_to_system():
    entry = AuditEntry(document_id='doc-1', action=AuditAction.completed)

    assert resolve_actor_label(entry) == 'System/Guest'


def test_footer_is_drawn_in_visual_frame():
    document = fitz.open(stream=make_pdf(1, rotation=90), filetype='pdf')
    page = document[0]

    draw_verification_footer(
        page,
        qr_png=build_qr_png('https://sign.example.com/verify/doc-1?integrity=abc'),
        captions=('first caption', 'second caption', 'third caption'),
    )

    assert page.rotation == 90
    text = page.get_text()
    assert 'first caption' in text
    assert 'third caption' in text
    assert len(page.get_images()) == 1
    document.close()
