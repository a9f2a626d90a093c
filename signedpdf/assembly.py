from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Sequence

import pymupdf as fitz
from reportlab.lib.pagesizes import A4

from signedpdf.adapters.base import SourceResolver
from signedpdf.config import Settings, get_settings
from signedpdf.errors import AssemblyError, SourceDocumentError
from signedpdf.integrity import finalize, mint_integrity_token
from signedpdf.pdf.annotations import RenderDefaults
from signedpdf.pdf.certificate import (
    CertificateContent,
    append_certificate_page,
    build_certificate_pdf,
    build_qr_png,
    draw_verification_footer,
)
from signedpdf.pdf.composer import SourceDocumentCache, compose_virtual_pages
from signedpdf.types import AssemblyResult, AssemblyStage, AuditEntry, VirtualPage, utcnow

logger = logging.getLogger(__name__)


def _pdf_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("D:%Y%m%d%H%M%S+00'00'")


def _render_defaults(settings: Settings) -> RenderDefaults:
    return RenderDefaults(
        stroke_width_pt=settings.default_stroke_width_pt,
        font_size_pt=settings.default_font_size_pt,
        font_name=settings.text_font_name,
    )


def _annotation_labels(annotations: Iterable) -> dict[str, str]:
    return {annotation.id: annotation.label for annotation in annotations if getattr(annotation, 'label', None)}


def assemble(
    primary_document_id: str,
    virtual_pages: Sequence[VirtualPage],
    annotations: Sequence,
    audit_entries: Sequence[AuditEntry],
    *,
    resolver: SourceResolver,
    settings: Settings | None = None,
    token_factory: Callable[[], str] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AssemblyResult:
    """Build the finalized output document for ``primary_document_id``.

    Pages come from ``virtual_pages`` in order, each with its annotations
    drawn on. A verification footer is added to the last content page and a
    certificate page is appended. Per-page and per-annotation problems are
    returned as warnings; anything that would leave no trustworthy output
    raises ``AssemblyError``.
    """
    settings = settings or get_settings()
    if not virtual_pages:
        raise AssemblyError(AssemblyStage.compose, 'no virtual pages to assemble')

    integrity_token = (token_factory or mint_integrity_token)()
    finalized_at = (clock or utcnow)()
    verification_url = settings.verification_url(primary_document_id, integrity_token)

    with SourceDocumentCache(resolver) as cache:
        try:
            cache.get(primary_document_id)
        except SourceDocumentError as exc:
            raise AssemblyError(exc.stage, f'primary document {primary_document_id}: {exc}') from exc

        output_doc = fitz.open()
        try:
            composition = compose_virtual_pages(
                output_doc,
                virtual_pages,
                annotations,
                cache,
                defaults=_render_defaults(settings),
            )
            content_page_count = int(output_doc.page_count)
            try:
                qr_png = build_qr_png(verification_url)
            except Exception as exc:
                raise AssemblyError(AssemblyStage.render, f'failed to render QR code: {exc}') from exc

            page_size = A4
            if content_page_count:
                last_page = output_doc.load_page(content_page_count - 1)
                try:
                    draw_verification_footer(
                        last_page,
                        qr_png=qr_png,
                        captions=settings.footer_captions,
                        qr_size=settings.footer_qr_size_pt,
                        font_size=settings.footer_font_size_pt,
                        font_name=settings.text_font_name,
                    )
                except Exception as exc:
                    raise AssemblyError(AssemblyStage.render, f'failed to draw footer: {exc}') from exc
                page_size = (float(last_page.rect.width), float(last_page.rect.height))
            else:
                logger.warning('No content pages for %s; footer skipped', primary_document_id)

            certificate = CertificateContent(
                title=settings.certificate_title,
                document_id=primary_document_id,
                generated_at=finalized_at,
                verification_url=verification_url,
                qr_png=qr_png,
                audit_entries=list(audit_entries),
                max_entries=settings.certificate_max_entries,
                qr_size=settings.certificate_qr_size_pt,
                producer=settings.pdf_producer,
                annotation_labels=_annotation_labels(annotations),
            )
            try:
                certificate_pdf, truncated = build_certificate_pdf(certificate, page_size=page_size)
                append_certificate_page(output_doc, certificate_pdf)
            except Exception as exc:
                raise AssemblyError(AssemblyStage.render, f'failed to build certificate page: {exc}') from exc

            pdf_date = _pdf_date(finalized_at)
            output_doc.set_metadata(
                {
                    'title': f'{settings.certificate_title} {primary_document_id}',
                    'producer': settings.pdf_producer,
                    'creator': settings.app_name,
                    'creationDate': pdf_date,
                    'modDate': pdf_date,
                }
            )

            try:
                output_bytes = output_doc.tobytes(garbage=3, deflate=True, no_new_id=True)
            except Exception as exc:
                raise AssemblyError(AssemblyStage.serialize, f'failed to serialize output: {exc}') from exc
            page_count = int(output_doc.page_count)
        finally:
            output_doc.close()

    try:
        integrity_record = finalize(
            output_bytes,
            document_id=primary_document_id,
            integrity_token=integrity_token,
            finalized_at=finalized_at,
        )
    except Exception as exc:
        raise AssemblyError(AssemblyStage.hash, f'failed to hash output: {exc}') from exc

    logger.info(
        'Assembled %s: %d content pages, %d skipped, %d warnings',
        primary_document_id,
        content_page_count,
        len(composition.skipped_virtual_page_ids),
        len(composition.warnings),
    )
    return AssemblyResult(
        primary_document_id=primary_document_id,
        output_bytes=output_bytes,
        integrity_record=integrity_record,
        page_count=page_count,
        content_page_count=content_page_count,
        skipped_virtual_page_ids=composition.skipped_virtual_page_ids,
        audit_entries_truncated=truncated,
        warnings=composition.warnings,
    )


def virtual_pages_from_editor_options(
    document_id: str,
    page_count: int,
    *,
    rotations: Mapping[int | str, int] | None = None,
    deleted_pages: Iterable[int] = (),
) -> list[VirtualPage]:
    """Default page list for a single document: every page, minus deletions, with per-page rotation."""
    deleted = {int(page) for page in deleted_pages}
    rotation_by_page = {int(page): int(degrees) for page, degrees in (rotations or {}).items()}
    return [
        VirtualPage(
            id=f'{document_id}:{page}',
            source_doc_id=document_id,
            source_page_index=page,
            rotation_delta=rotation_by_page.get(page, 0),
        )
        for page in range(1, int(page_count) + 1)
        if page not in deleted
    ]
