from __future__ import annotations

import pymupdf as fitz

from signedpdf.types import DrawingBox, Geometry


def to_drawing_space(page_height_pt: float, geometry: Geometry) -> DrawingBox:
    return DrawingBox(
        x=geometry.x,
        y_bottom_left_origin=float(page_height_pt) - geometry.y - geometry.height,
        width=geometry.width,
        height=geometry.height,
    )


def from_drawing_space(page_height_pt: float, box: DrawingBox) -> Geometry:
    return Geometry(
        x=box.x,
        y=float(page_height_pt) - box.y_bottom_left_origin - box.height,
        width=box.width,
        height=box.height,
    )


def drawing_point_to_page(page_height_pt: float, x: float, y_bottom_left_origin: float) -> fitz.Point:
    # PyMuPDF addresses the unrotated page with a top-left origin.
    return fitz.Point(x, float(page_height_pt) - y_bottom_left_origin)


def drawing_box_to_page_rect(page_height_pt: float, box: DrawingBox) -> fitz.Rect:
    top = float(page_height_pt) - box.y_bottom_left_origin - box.height
    return fitz.Rect(box.x, top, box.x + box.width, top + box.height)


def compose_rotation(current: int, delta: int) -> int:
    return (int(current) + int(delta)) % 360
