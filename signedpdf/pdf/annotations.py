from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

import pymupdf as fitz

from signedpdf.errors import AnnotationRenderError, ImageDecodeError, UnsupportedImageError
from signedpdf.pdf.transform import drawing_box_to_page_rect, drawing_point_to_page, to_drawing_space
from signedpdf.types import (
    TRANSPARENT,
    AnnotationStyle,
    AssemblyStage,
    AssemblyWarning,
    EllipseAnnotation,
    FreehandAnnotation,
    ImageAnnotation,
    ImageFormat,
    RectAnnotation,
    TextAnnotation,
)

logger = logging.getLogger(__name__)

JPEG_MAGIC = b'\xff\xd8\xff'
PNG_MAGIC = b'\x89PNG\r\n\x1a\n'

# Approximate distance from the top of a text line to its baseline.
TEXT_BASELINE_RATIO = 0.8
TEXT_LINE_SPACING = 1.2

DEFAULT_STROKE_COLOR = (0.0, 0.0, 0.0)


@dataclass(frozen=True)
class RenderDefaults:
    stroke_width_pt: float = 2.0
    font_size_pt: float = 16.0
    font_name: str = 'helv'


@dataclass
class RenderReport:
    rendered: list[str] = field(default_factory=list)
    warnings: list[AssemblyWarning] = field(default_factory=list)


def sniff_image_format(data: bytes) -> ImageFormat | None:
    if data.startswith(PNG_MAGIC):
        return ImageFormat.png
    if data.startswith(JPEG_MAGIC):
        return ImageFormat.jpeg
    return None


def parse_hex_color(value: object) -> tuple[float, float, float] | None:
    token = str(value or '').strip()
    if re.fullmatch(r'#?[0-9a-fA-F]{3}', token):
        token = ''.join(ch * 2 for ch in token.lstrip('#'))
    if not re.fullmatch(r'#?[0-9a-fA-F]{6}', token):
        return None
    if token.startswith('#'):
        token = token[1:]
    r = int(token[0:2], 16) / 255.0
    g = int(token[2:4], 16) / 255.0
    b = int(token[4:6], 16) / 255.0
    return (r, g, b)


def _stroke_color(style: AnnotationStyle) -> tuple[float, float, float] | None:
    raw = str(style.stroke_color or '').strip()
    if not raw:
        return DEFAULT_STROKE_COLOR
    if raw.lower() == TRANSPARENT:
        return None
    parsed = parse_hex_color(raw)
    if parsed is None:
        logger.debug('Unparseable stroke colour %r; using black', raw)
        return DEFAULT_STROKE_COLOR
    return parsed


def _fill_color(style: AnnotationStyle) -> tuple[float, float, float] | None:
    raw = str(style.fill_color or '').strip()
    if not raw or raw.lower() == TRANSPARENT:
        return None
    return parse_hex_color(raw)


def _stroke_width(style: AnnotationStyle, defaults: RenderDefaults) -> float:
    if style.stroke_width_pt is None:
        return float(defaults.stroke_width_pt)
    return float(style.stroke_width_pt)


def _draw_image(page, annotation: ImageAnnotation, defaults: RenderDefaults) -> None:
    image_format = sniff_image_format(annotation.data)
    if image_format is None:
        raise UnsupportedImageError(
            f'annotation {annotation.id}: payload is neither PNG nor JPEG'
        )
    if annotation.format_hint is not None and annotation.format_hint != image_format:
        logger.debug(
            'Annotation %s declared %s but payload is %s',
            annotation.id,
            annotation.format_hint.value,
            image_format.value,
        )

    page_height = float(page.rect.height)
    rect = drawing_box_to_page_rect(page_height, to_drawing_space(page_height, annotation.geometry))
    if rect.is_empty:
        raise AnnotationRenderError(f'annotation {annotation.id}: image box is empty')

    try:
        page.insert_image(rect, stream=annotation.data, keep_proportion=False, overlay=True)
    except Exception as exc:
        raise ImageDecodeError(
            f'annotation {annotation.id}: failed to decode {image_format.value} payload: {exc}'
        ) from exc


def _draw_rect(page, annotation: RectAnnotation, defaults: RenderDefaults) -> None:
    page_height = float(page.rect.height)
    box = to_drawing_space(page_height, annotation.geometry)
    page.draw_rect(
        drawing_box_to_page_rect(page_height, box),
        color=_stroke_color(annotation.style),
        fill=_fill_color(annotation.style),
        width=_stroke_width(annotation.style, defaults),
        overlay=True,
    )


def _draw_ellipse(page, annotation: EllipseAnnotation, defaults: RenderDefaults) -> None:
    page_height = float(page.rect.height)
    box = to_drawing_space(page_height, annotation.geometry)
    x_radius = box.width / 2
    y_radius = box.height / 2
    center = drawing_point_to_page(
        page_height,
        box.x + x_radius,
        box.y_bottom_left_origin + y_radius,
    )
    oval_rect = fitz.Rect(
        center.x - x_radius,
        center.y - y_radius,
        center.x + x_radius,
        center.y + y_radius,
    )
    page.draw_oval(
        oval_rect,
        color=_stroke_color(annotation.style),
        fill=_fill_color(annotation.style),
        width=_stroke_width(annotation.style, defaults),
        overlay=True,
    )


def _draw_text(page, annotation: TextAnnotation, defaults: RenderDefaults) -> None:
    text = annotation.text or ''
    if not text.strip():
        return

    page_height = float(page.rect.height)
    box = to_drawing_space(page_height, annotation.geometry)
    font_size = float(annotation.style.font_size_pt or defaults.font_size_pt)
    color = _stroke_color(annotation.style) or DEFAULT_STROKE_COLOR

    # Text hangs below the stored top-left anchor.
    anchor_top = box.y_bottom_left_origin + box.height
    baseline = anchor_top - font_size * TEXT_BASELINE_RATIO
    for line in text.splitlines():
        if line:
            page.insert_text(
                drawing_point_to_page(page_height, box.x, baseline),
                line,
                fontsize=font_size,
                fontname=defaults.font_name,
                color=color,
                overlay=True,
            )
        baseline -= font_size * TEXT_LINE_SPACING


def _draw_freehand(page, annotation: FreehandAnnotation, defaults: RenderDefaults) -> None:
    if len(annotation.points) < 2:
        logger.debug('Freehand annotation %s has fewer than two points', annotation.id)
        return

    page_height = float(page.rect.height)
    box = to_drawing_space(page_height, annotation.geometry)
    scale_x = box.width / annotation.original_width
    scale_y = box.height / annotation.original_height
    anchor_top = box.y_bottom_left_origin + box.height

    points = [
        drawing_point_to_page(
            page_height,
            box.x + point.x * scale_x,
            anchor_top - point.y * scale_y,
        )
        for point in annotation.points
    ]
    page.draw_polyline(
        points,
        color=_stroke_color(annotation.style) or DEFAULT_STROKE_COLOR,
        width=_stroke_width(annotation.style, defaults),
        closePath=False,
        overlay=True,
    )


_DRAWERS: dict[str, Callable] = {
    'image': _draw_image,
    'rect': _draw_rect,
    'ellipse': _draw_ellipse,
    'text': _draw_text,
    'freehand': _draw_freehand,
}


def render_annotation(page, annotation, *, defaults: RenderDefaults | None = None) -> None:
    drawer = _DRAWERS.get(annotation.kind)
    if drawer is None:
        raise AnnotationRenderError(f'annotation {annotation.id}: unknown kind {annotation.kind!r}')
    try:
        drawer(page, annotation, defaults or RenderDefaults())
    except AnnotationRenderError:
        raise
    except Exception as exc:
        raise AnnotationRenderError(f'annotation {annotation.id}: {exc}') from exc


def render_annotations(
    page,
    annotations: Iterable,
    *,
    defaults: RenderDefaults | None = None,
    virtual_page_id: str | None = None,
) -> RenderReport:
    report = RenderReport()
    for annotation in annotations:
        try:
            render_annotation(page, annotation, defaults=defaults)
        except AnnotationRenderError as exc:
            logger.warning('Skipped annotation %s: %s', annotation.id, exc)
            report.warnings.append(
                AssemblyWarning(
                    stage=AssemblyStage.render,
                    code=exc.code,
                    message=str(exc),
                    virtual_page_id=virtual_page_id,
                    source_doc_id=annotation.source_doc_id,
                    annotation_id=annotation.id,
                )
            )
            continue
        report.rendered.append(annotation.id)
    return report
