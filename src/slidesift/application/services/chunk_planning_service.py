from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from slidesift.core.config import PipelineTuning
from slidesift.core.errors import ValidationError
from slidesift.domain.models.document import ChunkRange

logger = logging.getLogger(__name__)

_PAGE_RANGE_RE = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")


@dataclass(slots=True)
class ChunkPlan:
    chunk_size: int
    requested: ChunkRange
    ranges: list[ChunkRange]

    @property
    def page_count(self) -> int:
        return self.requested.page_count


class ChunkPlanningService:
    def __init__(self, tuning: PipelineTuning | None = None) -> None:
        self.tuning = tuning or PipelineTuning()

    def chunk_size_for(self, *, page_count: int, byte_size: int) -> int:
        bytes_per_page = byte_size / max(1, page_count)
        if bytes_per_page > self.tuning.high_density_bytes_per_page:
            return self.tuning.small_chunk_size
        if bytes_per_page > self.tuning.medium_density_bytes_per_page:
            return self.tuning.medium_chunk_size
        return self.tuning.default_chunk_size

    def plan(
        self,
        *,
        page_count: int,
        byte_size: int,
        page_range: ChunkRange | tuple[int, int] | None = None,
    ) -> ChunkPlan:
        if page_count < 1:
            raise ValidationError("Document has no pages to analyze.")

        requested = self._resolve_range(page_count, page_range)
        chunk_size = self.chunk_size_for(page_count=page_count, byte_size=byte_size)

        ranges: list[ChunkRange] = []
        for start_page in range(requested.start_page, requested.end_page + 1, chunk_size):
            ranges.append(ChunkRange(start_page, min(requested.end_page, start_page + chunk_size - 1)))

        logger.debug(
            "Planned %d chunk(s) of up to %d pages for %s (%d bytes, %d pages)",
            len(ranges),
            chunk_size,
            requested.label,
            byte_size,
            page_count,
        )
        return ChunkPlan(chunk_size=chunk_size, requested=requested, ranges=ranges)

    @staticmethod
    def _resolve_range(
        page_count: int,
        page_range: ChunkRange | tuple[int, int] | None,
    ) -> ChunkRange:
        if page_range is None:
            return ChunkRange(1, page_count)
        if isinstance(page_range, ChunkRange):
            start_page, end_page = page_range.start_page, page_range.end_page
        else:
            start_page, end_page = int(page_range[0]), int(page_range[1])

        if start_page < 1 or start_page > end_page:
            raise ValidationError(f"Requested page range {start_page}-{end_page} is empty or inverted.")
        if start_page > page_count:
            raise ValidationError(
                f"Requested page range {start_page}-{end_page} starts past the last page ({page_count})."
            )
        return ChunkRange(start_page, min(end_page, page_count))


def parse_page_range(raw: str) -> tuple[int, int]:
    """Parse ``"3-10"`` or ``"7"`` into an inclusive (start, end) pair."""
    match = _PAGE_RANGE_RE.match(raw or "")
    if not match:
        raise ValidationError(f"Invalid page range '{raw}'. Use N or N-M.")
    start_page = int(match.group(1))
    end_page = int(match.group(2)) if match.group(2) else start_page
    if start_page < 1 or start_page > end_page:
        raise ValidationError(f"Invalid page range '{raw}': must be 1-indexed with start <= end.")
    return start_page, end_page
