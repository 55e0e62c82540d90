from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.config import PipelineTuning
from slidesift.core.errors import DocumentError
from slidesift.domain.models.analysis import AnalysisResult
from slidesift.domain.models.document import Document
from slidesift.domain.models.render import PageImage, RenderProfile
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer

logger = logging.getLogger(__name__)

UpgradeProgressCallback = Callable[[int, int, int], None]


@dataclass(slots=True)
class PageRenderFailure:
    page_number: int
    reason: str


@dataclass(slots=True)
class UpgradeReport:
    result: AnalysisResult
    images_by_page: dict[int, PageImage] = field(default_factory=dict)
    downgraded_pages: list[int] = field(default_factory=list)
    failed_pages: list[PageRenderFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def selected_pages(result: AnalysisResult) -> list[int]:
    return sorted(
        {
            slide.page_number
            for slide in result.slides
            if isinstance(slide.page_number, int) and not isinstance(slide.page_number, bool)
        }
    )


class QualityUpgradeService:
    """Re-renders only the finally selected pages at high fidelity."""

    def __init__(self, *, renderer: PdfPageRenderer, tuning: PipelineTuning | None = None) -> None:
        self.renderer = renderer
        self.tuning = tuning or PipelineTuning()

    def upgrade(
        self,
        document: Document,
        result: AnalysisResult,
        *,
        on_page: UpgradeProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> UpgradeReport:
        token = ensure_token(cancel_token)
        pages = selected_pages(result)
        report = UpgradeReport(result=result)
        if not pages:
            return report

        fallback_profile = RenderProfile(
            scale=self.tuning.high_quality_scale,
            quality=self.tuning.jpeg_fallback_quality,
        )
        total = len(pages)
        for index, page_number in enumerate(pages, start=1):
            token.raise_if_cancelled("high-quality render")
            if on_page is not None:
                on_page(index, total, page_number)

            if page_number < 1 or page_number > document.page_count:
                report.failed_pages.append(
                    PageRenderFailure(
                        page_number=page_number,
                        reason=f"Page {page_number} is out of range for a {document.page_count}-page PDF.",
                    )
                )
                continue

            try:
                image = self.renderer.render_page_png(document, page_number, self.tuning.high_quality_scale)
                if image.payload_chars > self.tuning.png_max_chars:
                    image = self.renderer.render_page(document, page_number, fallback_profile)
                    report.downgraded_pages.append(page_number)
            except DocumentError as exc:
                logger.info("High-quality render failed for page %d of %s: %s", page_number, document.name, exc)
                report.failed_pages.append(PageRenderFailure(page_number=page_number, reason=str(exc)))
                continue
            report.images_by_page[page_number] = image

        if report.images_by_page:
            report.result = AnalysisResult(
                metadata=dict(result.metadata),
                slides=[
                    replace(slide, image=report.images_by_page.get(slide.page_number, slide.image))
                    for slide in result.slides
                ],
            )

        if report.failed_pages:
            report.warnings.append(
                f"High-quality render failed for {len(report.failed_pages)} selected slide(s); "
                "using chunk-quality fallback for those pages."
            )
        if report.downgraded_pages:
            report.warnings.append(
                f"PNG output was oversized for {len(report.downgraded_pages)} selected slide(s); "
                "used high-quality JPEG fallback for those pages."
            )
        return report
