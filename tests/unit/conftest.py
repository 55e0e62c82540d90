from __future__ import annotations

from typing import Callable

import pytest

from slidesift.core.cancellation import CancellationToken
from slidesift.core.errors import DocumentError
from slidesift.domain.models.analysis import AnalysisResult, SelectedSlide
from slidesift.domain.models.document import ChunkRange, Document
from slidesift.domain.models.render import PageImage, RenderProfile
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer


def make_document(page_count: int, *, byte_size: int = 1024, name: str = "deck.pdf") -> Document:
    return Document(name=name, data=b"%PDF-fake", page_count=page_count, byte_size=byte_size)


def _image(page_number: int, mime_type: str, chars: int) -> PageImage:
    prefix = f"data:{mime_type};base64,"
    return PageImage(page_number=page_number, mime_type=mime_type, data_url=prefix + "A" * max(0, chars - len(prefix)))


class FakeRenderer:
    """Stands in for PdfPageRenderer; page payload size is configurable per call."""

    def __init__(
        self,
        *,
        page_chars: int = 1000,
        png_chars: int = 2000,
        page_count: int = 20,
        failing_pages: set[int] | None = None,
    ) -> None:
        self.page_chars = page_chars
        self.png_chars = png_chars
        self.page_count = page_count
        self.failing_pages = failing_pages or set()
        self.render_calls: list[tuple[ChunkRange, RenderProfile]] = []
        self.png_calls: list[int] = []
        self.jpeg_calls: list[int] = []

    supports = staticmethod(PdfPageRenderer.supports)

    def load(self, name: str, data: bytes) -> Document:
        if not data.startswith(b"%PDF"):
            raise DocumentError(f"Unable to open {name} as PDF: not a PDF")
        return Document(name=name, data=data, page_count=self.page_count, byte_size=len(data))

    def render_range(
        self,
        document: Document,
        chunk: ChunkRange,
        profile: RenderProfile,
        *,
        cancel_token: CancellationToken | None = None,
        on_page: Callable[[int, int], None] | None = None,
    ) -> list[PageImage]:
        self.render_calls.append((chunk, profile))
        images = []
        for index, page_number in enumerate(chunk.pages(), start=1):
            images.append(_image(page_number, "image/jpeg", self.page_chars))
            if on_page is not None:
                on_page(index, chunk.page_count)
        return images

    def render_page(self, document: Document, page_number: int, profile: RenderProfile) -> PageImage:
        self.jpeg_calls.append(page_number)
        return _image(page_number, "image/jpeg", self.page_chars)

    def render_page_png(self, document: Document, page_number: int, scale: float) -> PageImage:
        self.png_calls.append(page_number)
        if page_number in self.failing_pages:
            raise DocumentError(f"Page {page_number} could not be rendered: boom")
        return _image(page_number, "image/png", self.png_chars)


AnalyzeBehaviour = Callable[[ChunkRange, int], AnalysisResult]


def select_pages(*pages: int) -> AnalyzeBehaviour:
    """Analyzer behaviour that picks every listed page that falls inside the chunk."""

    def behaviour(chunk: ChunkRange, call_index: int) -> AnalysisResult:
        chosen = [page for page in pages if chunk.start_page <= page <= chunk.end_page]
        return AnalysisResult(
            metadata={"title": f"Deck {chunk.label}"} if chunk.start_page > 1 else {"title": "", "speaker": "Ada"},
            slides=[SelectedSlide(page_number=page, context=f"Insight on page {page}") for page in chosen],
        )

    return behaviour


class FakeAnalyzer:
    def __init__(self, behaviour: AnalyzeBehaviour) -> None:
        self.behaviour = behaviour
        self.calls: list[ChunkRange] = []

    def analyze(
        self,
        images: list[PageImage],
        chunk: ChunkRange,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        self.calls.append(chunk)
        return self.behaviour(chunk, len(self.calls) - 1)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, token: CancellationToken, seconds: float) -> None:
        self.delays.append(seconds)
        token.raise_if_cancelled("retry backoff")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
