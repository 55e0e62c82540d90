import pytest

from slidesift.application.services.progress_service import ProgressAggregator, batch_percent
from slidesift.application.services.result_merge_service import merge_chunk_results
from slidesift.core.errors import ResultMergeError
from slidesift.domain.models.analysis import AnalysisResult, SelectedSlide
from slidesift.domain.models.batch import Progress, ProgressStage


def test_merge_keeps_first_non_empty_metadata_and_first_slide_per_page() -> None:
    first = AnalysisResult(
        metadata={"title": "  ", "speaker": "Ada"},
        slides=[SelectedSlide(9, "from first"), SelectedSlide(3, "early")],
    )
    second = AnalysisResult(
        metadata={"title": "Quarterly review", "speaker": "Grace", "date": "2024-05-01"},
        slides=[SelectedSlide(9, "from second"), SelectedSlide(15, "late")],
    )

    merged = merge_chunk_results([first, second])

    assert merged.metadata == {"title": "Quarterly review", "speaker": "Ada", "date": "2024-05-01"}
    assert merged.page_numbers() == [3, 9, 15]
    assert merged.slides[1].context == "from first"


def test_merge_requires_at_least_one_result() -> None:
    with pytest.raises(ResultMergeError):
        merge_chunk_results([])


def test_progress_never_drops_when_a_split_grows_the_chunk_count() -> None:
    seen: list[Progress] = []
    aggregator = ProgressAggregator(seen.append)

    aggregator.chunk(chunk_index=0, total_chunks=2, local_percent=100, stage=ProgressStage.ANALYZING, message="a")
    aggregator.complete_unit()
    aggregator.chunk(chunk_index=1, total_chunks=4, local_percent=0, stage=ProgressStage.UPLOADING, message="b")
    aggregator.finalizing("merging", 93)
    aggregator.complete("done")

    percents = [progress.percent for progress in seen]
    assert percents == [45, 45, 93, 100]
    assert percents == sorted(percents)
    assert seen[-1].stage is ProgressStage.COMPLETE


def test_finalizing_is_bounded_below_completion() -> None:
    assert ProgressAggregator().finalizing("x", 150).percent == 99
    assert ProgressAggregator().finalizing("x", 10).percent == 90


def test_batch_percent_blends_item_progress() -> None:
    batch: list[Progress] = []
    aggregator = ProgressAggregator(item_index=1, total_items=2, batch_sink=batch.append)

    aggregator.complete("done")

    assert batch[-1].percent == 100
    assert batch_percent(1, 2, 50) == 75
    assert batch_percent(0, 4, 100) == 25


def test_a_failing_sink_does_not_break_reporting() -> None:
    def broken(progress: Progress) -> None:
        raise RuntimeError("ui went away")

    aggregator = ProgressAggregator(broken)

    assert aggregator.preparing("Preparing presentation...").percent == 8
