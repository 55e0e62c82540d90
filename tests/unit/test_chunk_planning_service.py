import pytest

from slidesift.application.services.chunk_planning_service import ChunkPlanningService, parse_page_range
from slidesift.core.errors import ValidationError
from slidesift.domain.models.document import ChunkRange


def test_plan_partitions_the_requested_range_in_order() -> None:
    plan = ChunkPlanningService().plan(page_count=30, byte_size=30 * 100 * 1024)

    assert plan.chunk_size == 12
    assert plan.ranges == [ChunkRange(1, 12), ChunkRange(13, 24), ChunkRange(25, 30)]
    assert sum(chunk.page_count for chunk in plan.ranges) == 30


def test_chunk_size_shrinks_for_dense_documents() -> None:
    planner = ChunkPlanningService()

    assert planner.chunk_size_for(page_count=10, byte_size=10 * 320 * 1024) == 12
    assert planner.chunk_size_for(page_count=10, byte_size=10 * 400 * 1024) == 8
    assert planner.chunk_size_for(page_count=10, byte_size=10 * 600 * 1024) == 6


def test_requested_end_is_truncated_to_the_document() -> None:
    plan = ChunkPlanningService().plan(page_count=10, byte_size=1000, page_range=(5, 40))

    assert plan.requested == ChunkRange(5, 10)
    assert plan.ranges == [ChunkRange(5, 10)]


@pytest.mark.parametrize("page_range", [(0, 3), (6, 2), (11, 12)])
def test_invalid_requested_ranges_are_rejected(page_range: tuple[int, int]) -> None:
    with pytest.raises(ValidationError):
        ChunkPlanningService().plan(page_count=10, byte_size=1000, page_range=page_range)


def test_documents_without_pages_cannot_be_planned() -> None:
    with pytest.raises(ValidationError, match="no pages"):
        ChunkPlanningService().plan(page_count=0, byte_size=0)


def test_parse_page_range_accepts_single_pages_and_spans() -> None:
    assert parse_page_range("7") == (7, 7)
    assert parse_page_range(" 3 - 10 ") == (3, 10)
    with pytest.raises(ValidationError):
        parse_page_range("10-3")
    with pytest.raises(ValidationError):
        parse_page_range("first")


def test_bisect_splits_at_the_midpoint() -> None:
    assert ChunkRange(1, 4).bisect() == (ChunkRange(1, 2), ChunkRange(3, 4))
    assert ChunkRange(13, 20).bisect() == (ChunkRange(13, 16), ChunkRange(17, 20))
    assert ChunkRange(5, 7).bisect() == (ChunkRange(5, 6), ChunkRange(7, 7))
    with pytest.raises(ValidationError):
        ChunkRange(3, 3).bisect()
