import itertools

import pytest
from pydantic import ValidationError

from signedpdf.pdf.transform import (
    compose_rotation,
    drawing_box_to_page_rect,
    from_drawing_space,
    to_drawing_space,
)
from signedpdf.types import Geometry, VirtualPage


def test_rect_on_letter_page_maps_to_bottom_left_origin():
    box = to_drawing_space(792, Geometry(x=10, y=20, width=100, height=50))

    assert box.x == 10
    assert box.y_bottom_left_origin == 722
    assert (box.width, box.height) == (100, 50)


def test_round_trip_recovers_geometry():
    geometry = Geometry(x=33.5, y=401.25, width=12, height=80)
    for page_height in (792, 842, 595.3):
        recovered = from_drawing_space(page_height, to_drawing_space(page_height, geometry))
        assert recovered.x == geometry.x
        assert recovered.y == pytest.approx(geometry.y)
        assert (recovered.width, recovered.height) == (geometry.width, geometry.height)


def test_drawing_box_maps_back_to_top_left_page_rect():
    rect = drawing_box_to_page_rect(792, to_drawing_space(792, Geometry(x=10, y=20, width=100, height=50)))

    assert (rect.x0, rect.y0, rect.x1, rect.y1) == (10, 20, 110, 70)


def test_rotation_composition_is_associative():
    angles = (0, 90, 180, 270)
    for a, b, c in itertools.product(angles, repeat=3):
        assert compose_rotation(compose_rotation(a, b), c) == compose_rotation(a, compose_rotation(b, c))


def test_rotation_wraps_modulo_360():
    assert compose_rotation(270, 180) == 90
    assert compose_rotation(90, 270) == 0


def test_virtual_page_normalizes_negative_rotation():
    page = VirtualPage(source_doc_id='doc', source_page_index=1, rotation_delta=-90)

    assert page.rotation_delta == 270


def test_virtual_page_rejects_non_right_angle():
    with pytest.raises(ValidationError):
        VirtualPage(source_doc_id='doc', source_page_index=1, rotation_delta=45)
