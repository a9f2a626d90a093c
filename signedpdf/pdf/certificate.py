from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Sequence

import pymupdf as fitz
import qrcode
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen.canvas import Canvas

from signedpdf.types import AuditAction, AuditEntry

logger = logging.getLogger(__name__)

FOOTER_MARGIN = 36.0
FOOTER_BOTTOM_GAP = 14.0
FOOTER_DIVIDER_GAP = 6.0
FOOTER_TEXT_GAP = 10.0

CERT_MARGIN = 20 * mm
CERT_ROW_HEIGHT = 15.0
CERT_BODY_FONT = 'Helvetica'
CERT_BOLD_FONT = 'Helvetica-Bold'
CERT_COLUMN_RATIOS = (0.24, 0.16, 0.24, 0.36)
UNKNOWN_ACTOR = 'System/Guest'


@dataclass(frozen=True)
class CertificateContent:
    title: str
    document_id: str
    generated_at: datetime
    verification_url: str
    qr_png: bytes
    audit_entries: Sequence[AuditEntry]
    max_entries: int
    qr_size: float = 96.0
    producer: str = 'SignedPDF'
    annotation_labels: Mapping[str, str] | None = None


def build_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=4,
        border=1,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color='black', back_color='white')
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def draw_verification_footer(
    page,
    *,
    qr_png: bytes,
    captions: Sequence[str],
    qr_size: float = 48.0,
    font_size: float = 7.0,
    font_name: str = 'helv',
) -> None:
    # Laid out in the visual (rotated) frame, then mapped onto the unrotated page.
    visual = page.rect
    derotate = page.derotation_matrix
    rotation = int(page.rotation)

    qr_bottom = visual.height - FOOTER_BOTTOM_GAP
    qr_top = qr_bottom - qr_size
    qr_rect = fitz.Rect(FOOTER_MARGIN, qr_top, FOOTER_MARGIN + qr_size, qr_bottom)
    divider_y = qr_top - FOOTER_DIVIDER_GAP

    page.draw_line(
        fitz.Point(FOOTER_MARGIN, divider_y) * derotate,
        fitz.Point(visual.width - FOOTER_MARGIN, divider_y) * derotate,
        color=(0.55, 0.57, 0.60),
        width=0.7,
        overlay=True,
    )
    page.insert_image(qr_rect * derotate, stream=qr_png, rotate=rotation, overlay=True)

    text_x = qr_rect.x1 + FOOTER_TEXT_GAP
    line_height = font_size + 4.0
    baseline = qr_top + (qr_size - line_height * len(captions)) / 2 + font_size
    for caption in captions:
        page.insert_text(
            fitz.Point(text_x, baseline) * derotate,
            caption,
            fontsize=font_size,
            fontname=font_name,
            color=(0.25, 0.27, 0.30),
            rotate=rotation,
            overlay=True,
        )
        baseline += line_height


def resolve_actor_label(entry: AuditEntry, annotation_labels: Mapping[str, str] | None = None) -> str:
    if entry.action == AuditAction.signed and annotation_labels:
        details = _parse_details(entry.details)
        signature_id = details.get('signature_id') if isinstance(details, dict) else None
        if signature_id and annotation_labels.get(str(signature_id)):
            return annotation_labels[str(signature_id)]
    return entry.actor_label or UNKNOWN_ACTOR


def _parse_details(raw: str | None) -> object:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def _details_summary(raw: str | None) -> str:
    details = _parse_details(raw)
    if isinstance(details, dict):
        return ', '.join(f'{key}={value}' for key, value in details.items())
    return str(details or '')


def _action_label(action: AuditAction) -> str:
    return action.value.upper().replace('_', ' ')


def _fit_text(text: str, font_name: str, font_size: float, max_width: float) -> str:
    value = str(text or '')
    if pdfmetrics.stringWidth(value, font_name, font_size) <= max_width:
        return value
    ellipsis = '...'
    while value and pdfmetrics.stringWidth(value + ellipsis, font_name, font_size) > max_width:
        value = value[:-1]
    return value + ellipsis


def build_certificate_pdf(
    content: CertificateContent,
    *,
    page_size: tuple[float, float] = A4,
) -> tuple[bytes, int]:
    """Render the certificate page.

    Returns the one-page PDF and the number of audit entries that did not fit.
    """
    width, height = page_size
    buffer = io.BytesIO()
    canvas = Canvas(buffer, pagesize=(width, height), invariant=1)
    canvas.setTitle(content.title)
    canvas.setProducer(content.producer)

    top = height - CERT_MARGIN
    canvas.setFillColor(colors.HexColor('#111827'))
    canvas.setFont(CERT_BOLD_FONT, 20)
    canvas.drawString(CERT_MARGIN, top - 20, content.title)

    canvas.setFillColor(colors.HexColor('#374151'))
    meta_y = top - 44
    meta_value_width = width - 2 * CERT_MARGIN - content.qr_size - 90
    for label, value in (
        ('Document ID', content.document_id),
        ('Generated At', format_timestamp(content.generated_at)),
        ('Verify At', content.verification_url),
    ):
        canvas.setFont(CERT_BOLD_FONT, 9.5)
        canvas.drawString(CERT_MARGIN, meta_y, label)
        canvas.setFont(CERT_BODY_FONT, 9.5)
        canvas.drawString(
            CERT_MARGIN + 80,
            meta_y,
            _fit_text(value, CERT_BODY_FONT, 9.5, meta_value_width),
        )
        meta_y -= 15

    qr_x = width - CERT_MARGIN - content.qr_size
    qr_y = top - content.qr_size
    canvas.drawImage(
        ImageReader(io.BytesIO(content.qr_png)),
        qr_x,
        qr_y,
        width=content.qr_size,
        height=content.qr_size,
    )

    divider_y = min(meta_y, qr_y) - 10
    canvas.setStrokeColor(colors.HexColor('#D1D5DB'))
    canvas.setLineWidth(0.7)
    canvas.line(CERT_MARGIN, divider_y, width - CERT_MARGIN, divider_y)

    canvas.setFillColor(colors.HexColor('#111827'))
    canvas.setFont(CERT_BOLD_FONT, 13)
    cursor_y = divider_y - 22
    canvas.drawString(CERT_MARGIN, cursor_y, 'Audit Trail')

    table_width = width - 2 * CERT_MARGIN
    column_x = [CERT_MARGIN]
    for ratio in CERT_COLUMN_RATIOS[:-1]:
        column_x.append(column_x[-1] + table_width * ratio)
    column_widths = [table_width * ratio - 6 for ratio in CERT_COLUMN_RATIOS]

    cursor_y -= 20
    canvas.setFont(CERT_BOLD_FONT, 8.5)
    canvas.setFillColor(colors.HexColor('#6B7280'))
    for x, header in zip(column_x, ('Timestamp', 'Action', 'Actor', 'Details')):
        canvas.drawString(x, cursor_y, header)
    canvas.line(CERT_MARGIN, cursor_y - 4, width - CERT_MARGIN, cursor_y - 4)

    entries = sorted(content.audit_entries, key=lambda entry: entry.created_at)
    bottom_limit = CERT_MARGIN + 20
    rendered = 0
    canvas.setFillColor(colors.HexColor('#111827'))
    for entry in entries[: max(0, content.max_entries)]:
        if cursor_y - CERT_ROW_HEIGHT < bottom_limit:
            break
        cursor_y -= CERT_ROW_HEIGHT
        cells = (
            format_timestamp(entry.created_at),
            _action_label(entry.action),
            resolve_actor_label(entry, content.annotation_labels),
            _details_summary(entry.details),
        )
        canvas.setFont(CERT_BODY_FONT, 8.5)
        for x, cell_width, cell in zip(column_x, column_widths, cells):
            canvas.drawString(x, cursor_y, _fit_text(cell, CERT_BODY_FONT, 8.5, cell_width))
        rendered += 1

    if not entries:
        canvas.setFont(CERT_BODY_FONT, 9)
        canvas.drawString(CERT_MARGIN, cursor_y - CERT_ROW_HEIGHT, 'No audit events recorded.')

    canvas.setFont(CERT_BODY_FONT, 7.5)
    canvas.setFillColor(colors.HexColor('#6B7280'))
    canvas.drawString(CERT_MARGIN, CERT_MARGIN - 6, f'Generated by {content.producer}')

    canvas.showPage()
    canvas.save()

    truncated = len(entries) - rendered
    if truncated:
        logger.info('Certificate for %s omits %d audit entries', content.document_id, truncated)
    return buffer.getvalue(), truncated


def append_certificate_page(output_doc: fitz.Document, certificate_pdf: bytes) -> None:
    certificate_doc = fitz.open(stream=certificate_pdf, filetype='pdf')
    try:
        output_doc.insert_pdf(certificate_doc)
    finally:
        certificate_doc.close()
