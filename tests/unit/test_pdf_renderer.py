from pathlib import Path

import fitz
import pytest

from slidesift.core.cancellation import CancellationToken
from slidesift.core.errors import DocumentError, OperationCancelledError
from slidesift.domain.models.document import ChunkRange
from slidesift.domain.models.render import RenderProfile
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer


def _make_pdf(page_count: int) -> bytes:
    doc = fitz.open()
    for index in range(page_count):
        page = doc.new_page(width=320, height=180)
        page.insert_text((36, 72), f"Slide {index + 1}", fontsize=24)
    data = doc.tobytes()
    doc.close()
    return data


def test_load_counts_pages_and_rejects_non_pdfs(tmp_path: Path) -> None:
    renderer = PdfPageRenderer()
    path = tmp_path / "deck.pdf"
    path.write_bytes(_make_pdf(3))

    document = renderer.load_path(path)

    assert document.page_count == 3
    assert document.byte_size == path.stat().st_size
    with pytest.raises(DocumentError):
        renderer.load("notes.pdf", b"this is not a pdf")
    with pytest.raises(DocumentError, match="too large"):
        PdfPageRenderer(max_document_bytes=10).load("deck.pdf", _make_pdf(1))


def test_render_range_returns_pages_in_order() -> None:
    renderer = PdfPageRenderer(max_workers=3)
    document = renderer.load("deck.pdf", _make_pdf(5))
    counts: list[tuple[int, int]] = []

    images = renderer.render_range(
        document,
        ChunkRange(2, 5),
        RenderProfile(scale=0.5, quality=0.6),
        on_page=lambda rendered, total: counts.append((rendered, total)),
    )

    assert [image.page_number for image in images] == [2, 3, 4, 5]
    assert all(image.data_url.startswith("data:image/jpeg;base64,") for image in images)
    assert counts[-1] == (4, 4)
    assert len(counts) == 4


def test_lower_fidelity_profiles_produce_smaller_payloads() -> None:
    renderer = PdfPageRenderer()
    document = renderer.load("deck.pdf", _make_pdf(1))

    high = renderer.render_page(document, 1, RenderProfile(scale=2.0, quality=0.9))
    low = renderer.render_page(document, 1, RenderProfile(scale=0.5, quality=0.5))

    assert low.payload_chars < high.payload_chars


def test_png_render_and_out_of_range_pages() -> None:
    renderer = PdfPageRenderer()
    document = renderer.load("deck.pdf", _make_pdf(2))

    image = renderer.render_page_png(document, 2, 1.0)

    assert image.mime_type == "image/png"
    assert image.data_url.startswith("data:image/png;base64,")
    with pytest.raises(DocumentError, match="out of range"):
        renderer.render_page_png(document, 3, 1.0)
    with pytest.raises(DocumentError):
        renderer.render_range(document, ChunkRange(1, 4), RenderProfile(1.0, 0.7))


def test_cancelled_token_stops_rendering() -> None:
    renderer = PdfPageRenderer()
    document = renderer.load("deck.pdf", _make_pdf(2))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        renderer.render_range(document, ChunkRange(1, 2), RenderProfile(1.0, 0.7), cancel_token=token)
