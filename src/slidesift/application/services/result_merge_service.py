from __future__ import annotations

from typing import Sequence

from slidesift.core.errors import ResultMergeError
from slidesift.domain.models.analysis import AnalysisResult, SelectedSlide


def first_non_empty(values: Sequence[str | None]) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def merge_chunk_results(results: Sequence[AnalysisResult]) -> AnalysisResult:
    """Combine per-chunk results in chunk order.

    Metadata: first non-empty value per key. Slides: the earliest chunk's slide
    for a page wins, output sorted by page number.
    """
    if not results:
        raise ResultMergeError("No chunk results to merge.")

    keys: list[str] = []
    for result in results:
        for key in result.metadata:
            if key not in keys:
                keys.append(key)
    metadata = {key: first_non_empty([result.metadata.get(key) for result in results]) for key in keys}

    slides_by_page: dict[int, SelectedSlide] = {}
    for result in results:
        for slide in result.slides:
            if slide.page_number not in slides_by_page:
                slides_by_page[slide.page_number] = slide

    return AnalysisResult(
        metadata=metadata,
        slides=[slides_by_page[page] for page in sorted(slides_by_page)],
    )
