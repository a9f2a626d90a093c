import pymupdf as fitz
import pytest

from conftest import FIXED_NOW, MemoryResolver, make_pdf
from signedpdf.assembly import assemble, virtual_pages_from_editor_options
from signedpdf.errors import AssemblyError
from signedpdf.integrity import compute_content_hash
from signedpdf.types import (
    AnnotationStyle,
    AssemblyStage,
    AuditAction,
    AuditEntry,
    Geometry,
    RectAnnotation,
    VirtualPage,
)

CAPTION = 'This document was electronically signed and assembled.'


def _pages(document_id='doc', count=3):
    return [
        VirtualPage(id=f'vp{index}', source_doc_id=document_id, source_page_index=index)
        for index in range(1, count + 1)
    ]


def _rect(color='#ff0000'):
    return RectAnnotation(
        id='box',
        source_doc_id='doc',
        source_page_index=2,
        geometry=Geometry(x=10, y=20, width=100, height=50),
        style=AnnotationStyle(stroke_color=color),
    )


def _audit():
    return [
        AuditEntry(id='a1', document_id='doc', action=AuditAction.created, created_at=FIXED_NOW),
        AuditEntry(id='a2', document_id='doc', action=AuditAction.signed, actor_label='Jane', created_at=FIXED_NOW),
    ]


def _run(settings, token='fixed-token', annotations=None, pages=None, resolver=None):
    return assemble(
        'doc',
        pages if pages is not None else _pages(),
        annotations if annotations is not None else [_rect()],
        _audit(),
        resolver=resolver or MemoryResolver({'doc': make_pdf(3)}),
        settings=settings,
        token_factory=lambda: token,
        clock=lambda: FIXED_NOW,
    )


def test_three_pages_with_footer_and_certificate(settings):
    result = _run(settings)

    document = fitz.open(stream=result.output_bytes, filetype='pdf')
    assert document.page_count == 4
    assert result.page_count == 4
    assert result.content_page_count == 3
    assert CAPTION not in document[0].get_text()
    assert CAPTION not in document[1].get_text()
    assert document[2].get_text().count(CAPTION) == 1
    assert 'Certificate of Completion' in document[3].get_text()
    assert 'doc' in document[3].get_text()

    rect = document[1].get_drawings()[0]['rect']
    assert rect.y1 == pytest.approx(792 - 722, abs=1.5)
    document.close()

    assert result.content_hash == compute_content_hash(result.output_bytes)
    assert result.integrity_token == 'fixed-token'
    assert result.finalized_at == FIXED_NOW
    assert result.integrity_record.document_id == 'doc'
    assert result.integrity_record.content_hash == result.content_hash
    assert result.warnings == []


def test_output_is_deterministic_for_fixed_token_and_clock(settings):
    assert _run(settings).content_hash == _run(settings).content_hash


def test_hash_changes_with_annotation_colour(settings):
    red = _run(settings, annotations=[_rect('#ff0000')])
    blue = _run(settings, annotations=[_rect('#0000ff')])

    assert red.content_hash != blue.content_hash


def test_hash_changes_with_token(settings):
    assert _run(settings, token='one').content_hash != _run(settings, token='two').content_hash


def test_default_tokens_are_fresh_per_run(settings):
    resolver = MemoryResolver({'doc': make_pdf(3)})
    first = assemble('doc', _pages(), [], [], resolver=resolver, settings=settings)
    second = assemble('doc', _pages(), [], [], resolver=resolver, settings=settings)

    assert first.integrity_token != second.integrity_token


def test_out_of_range_page_is_reported(settings):
    pages = _pages() + [VirtualPage(id='far', source_doc_id='doc', source_page_index=99)]

    result = _run(settings, pages=pages)

    assert result.content_page_count == 3
    assert result.skipped_virtual_page_ids == ['far']
    assert [w.code for w in result.warnings] == ['page_out_of_range']


def test_missing_secondary_source_is_skipped(settings):
    pages = _pages() + [VirtualPage(id='other', source_doc_id='ghost', source_page_index=1)]

    result = _run(settings, pages=pages)

    assert result.content_page_count == 3
    assert result.skipped_virtual_page_ids == ['other']
    assert result.warnings[0].stage is AssemblyStage.fetch


def test_footer_lands_on_last_rotated_page(settings):
    pages = _pages()[:2] + [VirtualPage(id='turned', source_doc_id='doc', source_page_index=3, rotation_delta=90)]

    result = _run(settings, pages=pages)

    document = fitz.open(stream=result.output_bytes, filetype='pdf')
    assert document[2].rotation == 90
    assert CAPTION in document[2].get_text()
    # The certificate follows the visual size of the last content page.
    assert document[3].rect.width == pytest.approx(792)
    document.close()


def test_zero_virtual_pages_is_fatal(settings):
    with pytest.raises(AssemblyError) as excinfo:
        _run(settings, pages=[])

    assert excinfo.value.stage is AssemblyStage.compose


def test_unresolvable_primary_is_fatal(settings):
    with pytest.raises(AssemblyError) as excinfo:
        _run(settings, resolver=MemoryResolver({}))

    assert excinfo.value.stage is AssemblyStage.fetch


def test_unparseable_primary_is_fatal(settings):
    with pytest.raises(AssemblyError) as excinfo:
        _run(settings, resolver=MemoryResolver({'doc': b'%PDF-garbage'}))

    assert excinfo.value.stage is AssemblyStage.parse


def test_qr_failure_is_fatal_at_render_stage(settings, monkeypatch):
    def fail_qr(url):
        raise ValueError('data too long')

    monkeypatch.setattr('signedpdf.assembly.build_qr_png', fail_qr)

    with pytest.raises(AssemblyError) as excinfo:
        _run(settings)

    assert excinfo.value.stage is AssemblyStage.render


def test_hash_failure_is_fatal_at_hash_stage(settings, monkeypatch):
    def fail_hash(data):
        raise RuntimeError('digest unavailable')

    monkeypatch.setattr('signedpdf.integrity.compute_content_hash', fail_hash)

    with pytest.raises(AssemblyError) as excinfo:
        _run(settings)

    assert excinfo.value.stage is AssemblyStage.hash


def test_all_pages_skipped_still_yields_certificate(settings):
    result = _run(settings, pages=[VirtualPage(id='far', source_doc_id='doc', source_page_index=42)])

    assert result.content_page_count == 0
    assert result.page_count == 1
    assert result.skipped_virtual_page_ids == ['far']


def test_virtual_pages_from_editor_options():
    pages = virtual_pages_from_editor_options('doc', 4, rotations={'2': 90, 3: -90}, deleted_pages=[4])

    assert [(p.source_page_index, p.rotation_delta) for p in pages] == [(1, 0), (2, 90), (3, 270)]
    assert {p.source_doc_id for p in pages} == {'doc'}
