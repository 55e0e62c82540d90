from dataclasses import replace

import pytest

from conftest import FakeAnalyzer, FakeRenderer, RecordingSleep, make_document, select_pages
from slidesift.application.services.chunk_executor_service import ChunkExecutor
from slidesift.application.services.document_analysis_service import DocumentAnalysisService
from slidesift.application.services.progress_service import ProgressAggregator
from slidesift.application.services.quality_upgrade_service import QualityUpgradeService
from slidesift.core.config import PipelineTuning
from slidesift.core.errors import AnalysisFailedError, FailureKind, PolicyBlockedError, UpstreamError
from slidesift.domain.models.analysis import AnalysisResult, SelectedSlide
from slidesift.domain.models.batch import Progress, ProgressStage
from slidesift.domain.models.document import ChunkRange


def _service(renderer: FakeRenderer, analyzer: FakeAnalyzer, tuning: PipelineTuning | None = None) -> DocumentAnalysisService:
    tuning = tuning or PipelineTuning()
    executor = ChunkExecutor(renderer=renderer, analyzer=analyzer, tuning=tuning, sleep=RecordingSleep())
    return DocumentAnalysisService(renderer=renderer, analyzer=analyzer, tuning=tuning, executor=executor)


def test_analyze_merges_chunks_and_upgrades_selected_pages() -> None:
    renderer = FakeRenderer()
    analyzer = FakeAnalyzer(select_pages(3, 9, 15))
    seen: list[Progress] = []

    report = _service(renderer, analyzer).analyze(make_document(20), progress=ProgressAggregator(seen.append))

    assert report.result.page_numbers() == [3, 9, 15]
    assert report.result.metadata["title"] == "Deck pages 13-20"
    assert report.result.metadata["speaker"] == "Ada"
    assert all(slide.image is not None and slide.image.mime_type == "image/png" for slide in report.result.slides)
    assert renderer.png_calls == [3, 9, 15]
    assert report.warnings == []
    assert report.stats is not None
    assert report.stats.planned_chunks == 2
    assert report.stats.remote_calls == 2

    percents = [progress.percent for progress in seen]
    assert percents == sorted(percents)
    assert seen[-1] == Progress(stage=ProgressStage.COMPLETE, message="Analysis complete.", percent=100)


def test_partial_failure_is_a_warning_not_an_error() -> None:
    def behaviour(chunk: ChunkRange, call_index: int) -> AnalysisResult:
        if chunk.start_page == 13:
            raise UpstreamError("AI did not return any selected slides.", kind=FailureKind.OTHER)
        return select_pages(2, 5, 7)(chunk, call_index)

    report = _service(FakeRenderer(), FakeAnalyzer(behaviour)).analyze(make_document(20))

    assert report.result.page_numbers() == [2, 5, 7]
    assert report.warnings == [
        "Partial analysis: 1 chunk(s) failed. Chunk 2/2 pages 13-20 failed: AI did not return any selected slides."
    ]
    assert report.warning_text == report.warnings[0]


def test_policy_block_fails_the_whole_document() -> None:
    def behaviour(chunk: ChunkRange, call_index: int) -> AnalysisResult:
        if chunk.start_page == 13:
            raise UpstreamError("provider location policy", kind=FailureKind.POLICY_BLOCKED)
        return select_pages(2)(chunk, call_index)

    analyzer = FakeAnalyzer(behaviour)
    with pytest.raises(PolicyBlockedError, match="Stop now and retry later"):
        _service(FakeRenderer(), analyzer).analyze(make_document(30))
    assert analyzer.calls == [ChunkRange(1, 12), ChunkRange(13, 24)]


def test_no_successful_chunk_raises_the_first_failure() -> None:
    def behaviour(chunk: ChunkRange, call_index: int) -> AnalysisResult:
        raise UpstreamError("Server returned invalid JSON.", kind=FailureKind.OTHER)

    with pytest.raises(AnalysisFailedError, match="Chunk 1/1 pages 1-5 failed: Server returned invalid JSON."):
        _service(FakeRenderer(), FakeAnalyzer(behaviour)).analyze(make_document(5))


def test_empty_selection_across_chunks_is_an_error() -> None:
    analyzer = FakeAnalyzer(lambda chunk, call_index: AnalysisResult(metadata={"title": "x"}, slides=[]))

    with pytest.raises(AnalysisFailedError, match="No valid insight slides"):
        _service(FakeRenderer(), analyzer).analyze(make_document(5))


def test_page_range_limits_the_analyzed_pages() -> None:
    analyzer = FakeAnalyzer(select_pages(4, 6, 30))

    report = _service(FakeRenderer(), analyzer).analyze(make_document(40), page_range=(4, 6))

    assert analyzer.calls == [ChunkRange(4, 6)]
    assert report.result.page_numbers() == [4, 6]
    assert report.stats is not None and report.stats.planned_chunks == 1


def test_upgrade_falls_back_to_jpeg_for_oversized_png_and_reports_failures() -> None:
    tuning = replace(PipelineTuning(), png_max_chars=5000)
    renderer = FakeRenderer(png_chars=6000, failing_pages={9})
    result = AnalysisResult(
        metadata={},
        slides=[SelectedSlide(9, "b"), SelectedSlide(3, "a"), SelectedSlide(25, "ghost")],
    )

    report = QualityUpgradeService(renderer=renderer, tuning=tuning).upgrade(make_document(20), result)

    assert renderer.png_calls == [3, 9]
    assert report.downgraded_pages == [3]
    assert [failure.page_number for failure in report.failed_pages] == [9, 25]
    assert report.images_by_page[3].mime_type == "image/jpeg"
    assert len(report.warnings) == 2
    assert report.warnings[0].startswith("High-quality render failed for 2 selected slide(s)")


def test_few_slides_are_called_out_in_the_completion_message() -> None:
    seen: list[Progress] = []
    _service(FakeRenderer(), FakeAnalyzer(select_pages(4))).analyze(
        make_document(10), progress=ProgressAggregator(seen.append)
    )

    assert seen[-1].message == "Analysis complete with 1 high-signal slide."


def test_unexpected_render_error_fails_only_that_chunk() -> None:
    class _BrokenTail(FakeRenderer):
        def render_range(self, document, chunk, profile, **kwargs):
            if chunk.start_page == 13:
                raise ValueError("not enough image data")
            return super().render_range(document, chunk, profile, **kwargs)

    analyzer = FakeAnalyzer(select_pages(3, 9, 15))
    report = _service(_BrokenTail(), analyzer).analyze(make_document(20))

    assert report.result.page_numbers() == [3, 9]
    assert analyzer.calls == [ChunkRange(1, 12)]
    assert report.warnings[0] == (
        "Partial analysis: 1 chunk(s) failed. Chunk 2/2 pages 13-20 failed: not enough image data"
    )


def test_failed_high_quality_stage_keeps_the_merged_result() -> None:
    class _OutOfMemory(FakeRenderer):
        def render_page_png(self, document, page_number, scale):
            raise MemoryError("pixmap allocation failed")

    report = _service(_OutOfMemory(), FakeAnalyzer(select_pages(3, 9, 15))).analyze(make_document(20))

    assert report.result.page_numbers() == [3, 9, 15]
    assert report.warnings == [
        "High-quality final render step failed (pixmap allocation failed); using analysis-quality slide images."
    ]
    assert report.stats is not None and report.stats.failed_upgrade_pages == 0


def test_non_positive_selected_pages_are_reported_as_out_of_range() -> None:
    renderer = FakeRenderer()
    result = AnalysisResult(metadata={}, slides=[SelectedSlide(0, "cover"), SelectedSlide(4, "chart")])

    report = QualityUpgradeService(renderer=renderer).upgrade(make_document(10), result)

    assert renderer.png_calls == [4]
    assert [failure.page_number for failure in report.failed_pages] == [0]
    assert report.failed_pages[0].reason == "Page 0 is out of range for a 10-page PDF."
    assert report.warnings[0].startswith("High-quality render failed for 1 selected slide(s)")
