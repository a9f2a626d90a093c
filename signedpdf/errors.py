from __future__ import annotations

from signedpdf.types import AssemblyStage


class AssemblyError(RuntimeError):
    """Raised when an assembly run must be aborted without producing output."""

    def __init__(self, stage: AssemblyStage, message: str):
        super().__init__(f'[{stage.value}] {message}')
        self.stage = stage
        self.message = message


class SourceDocumentError(RuntimeError):
    """A referenced source document could not be resolved, fetched or parsed."""

    def __init__(self, source_doc_id: str, stage: AssemblyStage, message: str):
        super().__init__(message)
        self.source_doc_id = source_doc_id
        self.stage = stage


class AnnotationRenderError(RuntimeError):
    """A single annotation could not be drawn."""

    code = 'annotation_render_failed'


class UnsupportedImageError(AnnotationRenderError):
    code = 'image_unsupported'


class ImageDecodeError(AnnotationRenderError):
    code = 'image_decode_failed'


class DocumentNotFoundError(LookupError):
    pass
