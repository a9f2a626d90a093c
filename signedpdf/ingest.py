from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError

from signedpdf.types import (
    AnnotationStyle,
    AssemblyStage,
    AssemblyWarning,
    EllipseAnnotation,
    FreehandAnnotation,
    Geometry,
    ImageAnnotation,
    ImageFormat,
    Point,
    RectAnnotation,
    TextAnnotation,
)

logger = logging.getLogger(__name__)

_SHAPE_KINDS = {
    'rect': 'rect',
    'rectangle': 'rect',
    'circle': 'ellipse',
    'ellipse': 'ellipse',
    'text': 'text',
    'draw': 'freehand',
    'freehand': 'freehand',
}


class RecordError(ValueError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class IngestReport:
    annotations: list = field(default_factory=list)
    warnings: list[AssemblyWarning] = field(default_factory=list)


def _coerce_float(value: Any, default: float | None = None) -> float | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_page(value: Any) -> int | None:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return None
    return page if page >= 1 else None


def _coerce_geometry(record: dict[str, Any]) -> Geometry:
    x = _coerce_float(record.get('x'))
    y = _coerce_float(record.get('y'))
    width = _coerce_float(record.get('width'))
    height = _coerce_float(record.get('height'))
    if None in (x, y, width, height):
        raise RecordError('invalid_geometry', 'record is missing x, y, width or height')
    if width < 0 or height < 0:
        raise RecordError('invalid_geometry', f'negative size {width}x{height}')
    return Geometry(x=x, y=y, width=width, height=height)


def _coerce_style(value: Any) -> AnnotationStyle:
    if not isinstance(value, dict):
        return AnnotationStyle()
    stroke_width = _coerce_float(value.get('strokeWidth', value.get('stroke_width')))
    font_size = _coerce_float(value.get('fontSize', value.get('font_size')))
    return AnnotationStyle(
        stroke_color=str(value.get('strokeColor') or value.get('stroke_color') or '').strip() or None,
        fill_color=str(value.get('fillColor') or value.get('fill_color') or '').strip() or None,
        stroke_width_pt=stroke_width if stroke_width is not None and stroke_width >= 0 else None,
        font_size_pt=font_size if font_size is not None and font_size > 0 else None,
    )


def _coerce_points(value: Any) -> list[Point]:
    points: list[Point] = []
    for row in value or []:
        if isinstance(row, dict):
            x = _coerce_float(row.get('x'))
            y = _coerce_float(row.get('y'))
        elif isinstance(row, (list, tuple)) and len(row) >= 2:
            x = _coerce_float(row[0])
            y = _coerce_float(row[1])
        else:
            continue
        if x is None or y is None:
            continue
        points.append(Point(x=x, y=y))
    return points


def decode_image_payload(raw: str) -> tuple[bytes, ImageFormat | None]:
    """Decode a data URL or bare base64 string into image bytes and a declared format."""
    text = str(raw or '').strip()
    format_hint: ImageFormat | None = None
    if text.startswith('data:'):
        header, sep, body = text.partition(',')
        if not sep:
            raise RecordError('image_decode_failed', 'data URL has no payload')
        mime = header[5:].split(';', 1)[0].strip().lower()
        if mime in {'image/jpeg', 'image/jpg'}:
            format_hint = ImageFormat.jpeg
        elif mime == 'image/png':
            format_hint = ImageFormat.png
        text = body
    if not text:
        raise RecordError('image_decode_failed', 'image payload is empty')
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise RecordError('image_decode_failed', f'image payload is not valid base64: {exc}') from exc
    if not data:
        raise RecordError('image_decode_failed', 'image payload is empty')
    return data, format_hint


def encode_image_payload(data: bytes, image_format: ImageFormat = ImageFormat.png) -> str:
    return f'data:image/{image_format.value};base64,' + base64.b64encode(data).decode('ascii')


def _parse_shape(raw: str) -> dict[str, Any] | None:
    text = raw.strip()
    if not text.startswith('{'):
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        # Not JSON after all: treated as a legacy image payload.
        return None
    if not isinstance(payload, dict) or not payload.get('type'):
        return None
    return payload


def annotation_from_record(record: dict[str, Any]):
    """Convert one stored annotation row into a typed annotation.

    Raises RecordError when the row cannot be represented.
    """
    source_doc_id = str(record.get('document_id') or '').strip()
    if not source_doc_id:
        raise RecordError('invalid_record', 'record has no document_id')
    page = _coerce_page(record.get('page'))
    if page is None:
        raise RecordError('invalid_record', f'invalid page {record.get("page")!r}')

    common: dict[str, Any] = {
        'source_doc_id': source_doc_id,
        'source_page_index': page,
        'geometry': _coerce_geometry(record),
        'label': str(record.get('name') or '').strip() or None,
    }
    if record.get('id'):
        common['id'] = str(record['id'])
    created_at = record.get('created_at')
    if isinstance(created_at, (str, datetime)) and created_at:
        common['created_at'] = created_at

    raw_data = str(record.get('data') or '')
    shape = _parse_shape(raw_data)
    try:
        if shape is None:
            data, format_hint = decode_image_payload(raw_data)
            return ImageAnnotation(data=data, format_hint=format_hint, **common)

        shape_type = str(shape.get('type') or '').strip().lower()
        kind = _SHAPE_KINDS.get(shape_type)
        if kind is None:
            raise RecordError('unknown_shape', f'unknown annotation type {shape_type!r}')

        style = _coerce_style(shape.get('style'))
        if kind == 'rect':
            return RectAnnotation(style=style, **common)
        if kind == 'ellipse':
            return EllipseAnnotation(style=style, **common)
        if kind == 'text':
            return TextAnnotation(style=style, text=str(shape.get('text') or ''), **common)

        points = _coerce_points(shape.get('points'))
        if len(points) < 2:
            raise RecordError('invalid_shape', 'freehand path needs at least two points')
        geometry: Geometry = common['geometry']
        original_width = _coerce_float(shape.get('width')) or geometry.width or 1.0
        original_height = _coerce_float(shape.get('height')) or geometry.height or 1.0
        return FreehandAnnotation(
            style=style,
            points=points,
            original_width=original_width,
            original_height=original_height,
            **common,
        )
    except ValidationError as exc:
        raise RecordError('invalid_record', f'record failed validation: {exc}') from exc


def ingest_records(records: Iterable[dict[str, Any]]) -> IngestReport:
    report = IngestReport()
    for record in records:
        if not isinstance(record, dict):
            continue
        try:
            annotation = annotation_from_record(record)
        except RecordError as exc:
            record_id = str(record.get('id') or '') or None
            logger.warning('Dropped annotation record %s: %s', record_id, exc)
            report.warnings.append(
                AssemblyWarning(
                    stage=AssemblyStage.render,
                    code=exc.code,
                    message=str(exc),
                    source_doc_id=str(record.get('document_id') or '') or None,
                    annotation_id=record_id,
                )
            )
            continue
        report.annotations.append(annotation)
    return report
