from __future__ import annotations

import io
from datetime import datetime, timezone
from itertools import count

import pymupdf as fitz
import pytest
from PIL import Image

from signedpdf.config import Settings
from signedpdf.storage import LocalDocumentStore

FIXED_NOW = datetime(2026, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


def make_pdf(
    page_count: int = 3,
    *,
    width: float = 612.0,
    height: float = 792.0,
    rotation: int = 0,
    label: str = 'Source',
) -> bytes:
    document = fitz.open()
    for index in range(page_count):
        page = document.new_page(width=width, height=height)
        page.insert_text(fitz.Point(72, 72), f'{label} page {index + 1}', fontsize=12)
        if rotation:
            page.set_rotation(rotation)
    data = document.tobytes()
    document.close()
    return data


def make_image(image_format: str = 'PNG', color: str = 'red') -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', (8, 8), color).save(buffer, format=image_format)
    return buffer.getvalue()


class MemoryResolver:
    def __init__(self, documents: dict[str, bytes] | None = None):
        self.documents = dict(documents or {})
        self.fetches: list[str] = []

    def locate(self, document_id: str) -> str | None:
        if document_id not in self.documents:
            return None
        return f'mem://{document_id}'

    def fetch(self, location: str) -> bytes:
        document_id = location.removeprefix('mem://')
        self.fetches.append(document_id)
        return self.documents[document_id]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / 'data',
        verify_base_url='https://sign.example.com',
    )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def token_factory():
    counter = count(1)
    return lambda: f'token-{next(counter)}'


@pytest.fixture
def store(settings) -> LocalDocumentStore:
    return LocalDocumentStore.from_settings(settings)


@pytest.fixture
def png_bytes() -> bytes:
    return make_image('PNG')


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image('JPEG', 'blue')
