from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


TRANSPARENT = 'transparent'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Geometry(BaseModel):
    """Annotation box in top-left-origin, unscaled PDF points of the source page."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class DrawingBox(BaseModel):
    """The same box expressed with a bottom-left origin."""

    model_config = ConfigDict(frozen=True)

    x: float
    y_bottom_left_origin: float
    width: float
    height: float


class AnnotationStyle(BaseModel):
    model_config = ConfigDict(frozen=True)

    stroke_color: str | None = None
    fill_color: str | None = None
    stroke_width_pt: float | None = Field(default=None, ge=0)
    font_size_pt: float | None = Field(default=None, gt=0)


class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class ImageFormat(str, Enum):
    jpeg = 'jpeg'
    png = 'png'


class _AnnotationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    source_doc_id: str
    source_page_index: int = Field(ge=1)
    geometry: Geometry
    style: AnnotationStyle = Field(default_factory=AnnotationStyle)
    label: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def anchor(self) -> tuple[str, int]:
        return (self.source_doc_id, self.source_page_index)


class ImageAnnotation(_AnnotationBase):
    kind: Literal['image'] = 'image'
    data: bytes
    format_hint: ImageFormat | None = None


class RectAnnotation(_AnnotationBase):
    kind: Literal['rect'] = 'rect'


class EllipseAnnotation(_AnnotationBase):
    kind: Literal['ellipse'] = 'ellipse'


class TextAnnotation(_AnnotationBase):
    kind: Literal['text'] = 'text'
    text: str = ''


class FreehandAnnotation(_AnnotationBase):
    kind: Literal['freehand'] = 'freehand'
    points: list[Point]
    original_width: float = Field(gt=0)
    original_height: float = Field(gt=0)


Annotation = Annotated[
    Union[ImageAnnotation, RectAnnotation, EllipseAnnotation, TextAnnotation, FreehandAnnotation],
    Field(discriminator='kind'),
]


class VirtualPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    source_doc_id: str
    # Range is checked against the parsed source during composition, not here.
    source_page_index: int
    rotation_delta: int = 0

    @field_validator('rotation_delta')
    @classmethod
    def _normalize_rotation(cls, value: int) -> int:
        if value % 90 != 0:
            raise ValueError(f'rotation must be a multiple of 90 degrees, got {value}')
        return value % 360


class AuditAction(str, Enum):
    created = 'created'
    invited = 'invited'
    viewed = 'viewed'
    signed = 'signed'
    rotated = 'rotated'
    deleted_page = 'deleted_page'
    completed = 'completed'
    downloaded = 'downloaded'


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    document_id: str
    action: AuditAction
    actor_label: str | None = None
    details: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class IntegrityRecord(BaseModel):
    document_id: str
    integrity_token: str
    content_hash: str
    finalized_at: datetime


class AssemblyStage(str, Enum):
    fetch = 'fetch'
    parse = 'parse'
    compose = 'compose'
    render = 'render'
    serialize = 'serialize'
    hash = 'hash'


class AssemblyWarning(BaseModel):
    stage: AssemblyStage
    code: str
    message: str
    virtual_page_id: str | None = None
    source_doc_id: str | None = None
    annotation_id: str | None = None


class AssemblyResult(BaseModel):
    primary_document_id: str
    output_bytes: bytes
    integrity_record: IntegrityRecord
    page_count: int
    content_page_count: int
    skipped_virtual_page_ids: list[str] = Field(default_factory=list)
    audit_entries_truncated: int = 0
    warnings: list[AssemblyWarning] = Field(default_factory=list)

    @property
    def integrity_token(self) -> str:
        return self.integrity_record.integrity_token

    @property
    def content_hash(self) -> str:
        return self.integrity_record.content_hash

    @property
    def finalized_at(self) -> datetime:
        return self.integrity_record.finalized_at


class DocumentRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    location: str | None = None
    signed_location: str | None = None
    slug: str | None = None
    page_count: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    integrity: IntegrityRecord | None = None
    superseded_hashes: list[str] = Field(default_factory=list)


class VerificationStatus(str, Enum):
    verified = 'verified'
    integrity_mismatch = 'integrity_mismatch'
    hash_mismatch = 'hash_mismatch'
    not_found = 'not_found'


class VerificationReport(BaseModel):
    status: VerificationStatus
    message: str
    document_id: str | None = None
    content_hash: str | None = None
    finalized_at: datetime | None = None
