from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import pymupdf as fitz

from signedpdf.adapters.base import SourceResolver
from signedpdf.errors import AssemblyError, SourceDocumentError
from signedpdf.pdf.annotations import RenderDefaults, render_annotations
from signedpdf.pdf.transform import compose_rotation
from signedpdf.types import AssemblyStage, AssemblyWarning, VirtualPage

logger = logging.getLogger(__name__)


class SourceDocumentCache:
    """Parsed source documents for a single assembly run.

    Failures are remembered as well, so a broken source is resolved and
    fetched at most once per run.
    """

    def __init__(self, resolver: SourceResolver):
        self._resolver = resolver
        self._documents: dict[str, fitz.Document] = {}
        self._failures: dict[str, SourceDocumentError] = {}
        self.fetch_counts: dict[str, int] = {}

    def __enter__(self) -> SourceDocumentCache:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get(self, source_doc_id: str) -> fitz.Document:
        cached = self._documents.get(source_doc_id)
        if cached is not None:
            return cached
        failure = self._failures.get(source_doc_id)
        if failure is not None:
            raise failure

        try:
            document = self._load(source_doc_id)
        except SourceDocumentError as exc:
            logger.warning('Source document %s unavailable: %s', source_doc_id, exc)
            self._failures[source_doc_id] = exc
            raise

        self._documents[source_doc_id] = document
        return document

    def page_count(self, source_doc_id: str) -> int:
        return int(self.get(source_doc_id).page_count)

    def _load(self, source_doc_id: str) -> fitz.Document:
        try:
            location = self._resolver.locate(source_doc_id)
        except Exception as exc:
            raise SourceDocumentError(
                source_doc_id,
                AssemblyStage.fetch,
                f'failed to resolve location: {exc}',
            ) from exc
        if not location:
            raise SourceDocumentError(source_doc_id, AssemblyStage.fetch, 'document has no location')

        self.fetch_counts[source_doc_id] = self.fetch_counts.get(source_doc_id, 0) + 1
        try:
            data = self._resolver.fetch(location)
        except Exception as exc:
            raise SourceDocumentError(
                source_doc_id,
                AssemblyStage.fetch,
                f'failed to fetch {location}: {exc}',
            ) from exc

        try:
            document = fitz.open(stream=data, filetype='pdf')
        except Exception as exc:
            raise SourceDocumentError(
                source_doc_id,
                AssemblyStage.parse,
                f'failed to parse PDF: {exc}',
            ) from exc

        if document.is_encrypted:
            authenticated = False
            try:
                authenticated = bool(document.authenticate(''))
            except Exception:
                authenticated = False
            if not authenticated:
                document.close()
                raise SourceDocumentError(source_doc_id, AssemblyStage.parse, 'PDF is encrypted')

        if document.page_count <= 0:
            document.close()
            raise SourceDocumentError(source_doc_id, AssemblyStage.parse, 'PDF has no pages')

        return document

    def close(self) -> None:
        for document in self._documents.values():
            document.close()
        self._documents.clear()


@dataclass
class PlacedPage:
    virtual_page_id: str
    source_doc_id: str
    source_page_index: int
    output_page_index: int
    rotation: int
    annotation_ids: list[str] = field(default_factory=list)


@dataclass
class CompositionReport:
    placed: list[PlacedPage] = field(default_factory=list)
    skipped_virtual_page_ids: list[str] = field(default_factory=list)
    warnings: list[AssemblyWarning] = field(default_factory=list)


def group_annotations(annotations: Iterable) -> dict[tuple[str, int], list]:
    grouped: dict[tuple[str, int], list] = defaultdict(list)
    for annotation in annotations:
        grouped[annotation.anchor].append(annotation)
    return dict(grouped)


def compose_virtual_pages(
    output_doc: fitz.Document,
    virtual_pages: Sequence[VirtualPage],
    annotations: Iterable,
    cache: SourceDocumentCache,
    *,
    defaults: RenderDefaults | None = None,
) -> CompositionReport:
    report = CompositionReport()
    grouped = group_annotations(annotations)

    for virtual_page in virtual_pages:
        try:
            source = cache.get(virtual_page.source_doc_id)
        except SourceDocumentError as exc:
            report.skipped_virtual_page_ids.append(virtual_page.id)
            report.warnings.append(
                AssemblyWarning(
                    stage=exc.stage,
                    code='source_unavailable',
                    message=str(exc),
                    virtual_page_id=virtual_page.id,
                    source_doc_id=virtual_page.source_doc_id,
                )
            )
            continue

        page_index = virtual_page.source_page_index
        source_page_count = cache.page_count(virtual_page.source_doc_id)
        if not 1 <= page_index <= source_page_count:
            message = (
                f'page {page_index} is out of range for document '
                f'{virtual_page.source_doc_id} ({source_page_count} pages)'
            )
            logger.warning('Skipped virtual page %s: %s', virtual_page.id, message)
            report.skipped_virtual_page_ids.append(virtual_page.id)
            report.warnings.append(
                AssemblyWarning(
                    stage=AssemblyStage.compose,
                    code='page_out_of_range',
                    message=message,
                    virtual_page_id=virtual_page.id,
                    source_doc_id=virtual_page.source_doc_id,
                )
            )
            continue

        try:
            output_doc.insert_pdf(source, from_page=page_index - 1, to_page=page_index - 1)
        except Exception as exc:
            raise AssemblyError(
                AssemblyStage.compose,
                f'failed to copy page {page_index} of {virtual_page.source_doc_id}: {exc}',
            ) from exc
        output_page_index = output_doc.page_count - 1
        page = output_doc.load_page(output_page_index)

        # Annotations are placed on the unrotated media box.
        prior_rotation = int(page.rotation)
        if prior_rotation:
            page.set_rotation(0)
        prior_cropbox = page.cropbox
        cropped = prior_cropbox != page.mediabox
        if cropped:
            page.set_cropbox(page.mediabox)

        render_report = render_annotations(
            page,
            grouped.get((virtual_page.source_doc_id, page_index), []),
            defaults=defaults,
            virtual_page_id=virtual_page.id,
        )
        report.warnings.extend(render_report.warnings)

        if cropped:
            page.set_cropbox(prior_cropbox)
        rotation = compose_rotation(prior_rotation, virtual_page.rotation_delta)
        page.set_rotation(rotation)

        report.placed.append(
            PlacedPage(
                virtual_page_id=virtual_page.id,
                source_doc_id=virtual_page.source_doc_id,
                source_page_index=page_index,
                output_page_index=output_page_index,
                rotation=rotation,
                annotation_ids=render_report.rendered,
            )
        )

    return report
