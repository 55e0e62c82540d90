from __future__ import annotations

import base64
import io
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable

from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.errors import DocumentError
from slidesift.domain.models.document import ChunkRange, Document
from slidesift.domain.models.render import PageImage, RenderProfile

logger = logging.getLogger(__name__)

PageRenderedCallback = Callable[[int, int], None]


def _require_pymupdf() -> Any:
    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - dependency guard
        raise DocumentError("PyMuPDF is required. Install with: pip install pymupdf") from exc
    return fitz


def _require_pillow() -> Any:
    try:
        from PIL import Image  # type: ignore
    except ImportError as exc:  # pragma: no cover - dependency guard
        raise DocumentError("Pillow is required. Install with: pip install pillow") from exc
    return Image


def _to_data_url(mime_type: str, payload: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


class PdfPageRenderer:
    """Rasterizes PDF pages with PyMuPDF and encodes them with Pillow.

    PyMuPDF documents are not safe to share across threads, so every worker
    opens its own handle on the in-memory bytes.
    """

    SUPPORTED_SUFFIXES = {".pdf"}
    SUPPORTED_MEDIA_TYPES = {"application/pdf"}
    _WAIT_POLL_SECONDS = 0.25

    def __init__(self, *, max_workers: int = 4, max_document_bytes: int = 25 * 1024 * 1024) -> None:
        self.max_workers = max(1, int(max_workers))
        self.max_document_bytes = max_document_bytes

    @classmethod
    def supports(cls, filename: str | None, media_type: str | None = None) -> bool:
        if (media_type or "").strip().lower() in cls.SUPPORTED_MEDIA_TYPES:
            return True
        return Path(filename or "").suffix.lower() in cls.SUPPORTED_SUFFIXES

    def load(self, name: str, data: bytes) -> Document:
        if not data:
            raise DocumentError(f"{name} is empty.")
        if len(data) > self.max_document_bytes:
            limit_mib = self.max_document_bytes // (1024 * 1024)
            raise DocumentError(f"Presentation PDF is too large (max {limit_mib}MB).")

        pdf = self._open(data, name)
        try:
            if pdf.needs_pass:
                raise DocumentError("Password protected PDFs are not supported.")
            page_count = int(pdf.page_count)
        finally:
            pdf.close()

        if page_count < 1:
            raise DocumentError(f"{name} has no pages.")
        return Document(name=name, data=data, page_count=page_count, byte_size=len(data))

    def load_path(self, path: Path) -> Document:
        path = path.expanduser().resolve()
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise DocumentError(f"Unable to read {path}: {exc}") from exc
        return self.load(path.name, data)

    def render_range(
        self,
        document: Document,
        chunk: ChunkRange,
        profile: RenderProfile,
        *,
        cancel_token: CancellationToken | None = None,
        on_page: PageRenderedCallback | None = None,
    ) -> list[PageImage]:
        """Render every page of ``chunk`` concurrently; results come back in page order."""
        token = ensure_token(cancel_token)
        token.raise_if_cancelled("render")
        if chunk.end_page > document.page_count:
            raise DocumentError(
                f"Invalid page range {chunk.label} requested for a {document.page_count}-page PDF."
            )

        pages = chunk.pages()
        total = len(pages)
        rendered: dict[int, PageImage] = {}
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, total), thread_name_prefix="page-render")
        try:
            future_map: dict[Future[PageImage], int] = {
                executor.submit(self.render_page, document, page_number, profile): page_number
                for page_number in pages
            }
            pending = set(future_map)
            while pending:
                token.raise_if_cancelled("render")
                done, pending = wait(pending, timeout=self._WAIT_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    page_number = future_map[future]
                    rendered[page_number] = future.result()
                    if on_page is not None:
                        on_page(len(rendered), total)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return [rendered[page_number] for page_number in pages]

    def render_page(self, document: Document, page_number: int, profile: RenderProfile) -> PageImage:
        Image = _require_pillow()
        samples, width, height = self._rasterize(document, page_number, profile.scale)
        buffer = io.BytesIO()
        try:
            image = Image.frombytes("RGB", (width, height), samples)
            image.save(buffer, format="JPEG", quality=profile.jpeg_quality, optimize=True)
        except Exception as exc:
            raise DocumentError(f"Page {page_number} could not be encoded: {exc}") from exc
        return PageImage(
            page_number=page_number,
            mime_type="image/jpeg",
            data_url=_to_data_url("image/jpeg", buffer.getvalue()),
        )

    def render_page_png(self, document: Document, page_number: int, scale: float) -> PageImage:
        fitz = _require_pymupdf()
        pdf = self._open(document.data, document.name)
        try:
            page = self._load_page(pdf, page_number, document)
            try:
                pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
                payload = pixmap.tobytes("png")
            except Exception as exc:
                raise DocumentError(f"Page {page_number} could not be rendered: {exc}") from exc
        finally:
            pdf.close()
        return PageImage(page_number=page_number, mime_type="image/png", data_url=_to_data_url("image/png", payload))

    def _rasterize(self, document: Document, page_number: int, scale: float) -> tuple[bytes, int, int]:
        fitz = _require_pymupdf()
        pdf = self._open(document.data, document.name)
        try:
            page = self._load_page(pdf, page_number, document)
            try:
                pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            except Exception as exc:
                raise DocumentError(f"Page {page_number} could not be rendered: {exc}") from exc
            return bytes(pixmap.samples), int(pixmap.width), int(pixmap.height)
        finally:
            pdf.close()

    @staticmethod
    def _open(data: bytes, name: str) -> Any:
        fitz = _require_pymupdf()
        try:
            return fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise DocumentError(f"Unable to open {name} as PDF: {exc}") from exc

    @staticmethod
    def _load_page(pdf: Any, page_number: int, document: Document) -> Any:
        if page_number < 1 or page_number > int(pdf.page_count):
            raise DocumentError(
                f"Page {page_number} is out of range for a {document.page_count}-page PDF."
            )
        return pdf.load_page(page_number - 1)
