from __future__ import annotations

import logging
from typing import Callable

from slidesift.domain.models.batch import Progress, ProgressStage, clamp_percent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]

PREPARING_PERCENT = 8
RENDER_START_PERCENT = 15
RENDER_SPAN_PERCENT = 55
ANALYZING_PERCENT = 78
FINALIZING_FLOOR = 90
FINALIZING_CEILING = 99


def batch_percent(item_index: int, total_items: int, item_percent: float) -> int:
    ratio = max(0.0, min(100.0, float(item_percent))) / 100.0
    return clamp_percent(((item_index + ratio) / max(1, total_items)) * 100)


def emit_safely(sink: ProgressCallback | None, progress: Progress) -> None:
    if sink is None:
        return
    try:
        sink(progress)
    except Exception:
        logger.warning("Progress sink raised; continuing analysis.", exc_info=True)


class ProgressAggregator:
    """Blends chunk-local progress into one item percent and, optionally, a batch percent.

    Chunk work fills ``0..chunk_scale``; finalizing (merge + upgrade) fills the
    remaining headroom up to 99 and completion reports 100. The value never
    drops below what was already reported, even when a split grows the chunk
    count.
    """

    def __init__(
        self,
        sink: ProgressCallback | None = None,
        *,
        chunk_scale: int = 90,
        item_index: int = 0,
        total_items: int = 1,
        batch_sink: ProgressCallback | None = None,
    ) -> None:
        self.sink = sink
        self.batch_sink = batch_sink
        self.chunk_scale = chunk_scale
        self.item_index = item_index
        self.total_items = total_items
        self._floor = 0
        self.last: Progress | None = None

    def preparing(self, message: str) -> Progress:
        return self._report(ProgressStage.PREPARING, message, max(self._floor, PREPARING_PERCENT))

    def chunk(
        self,
        *,
        chunk_index: int,
        total_chunks: int,
        local_percent: float,
        stage: ProgressStage,
        message: str,
    ) -> Progress:
        local_ratio = max(0.0, min(100.0, float(local_percent))) / 100.0
        percent = ((chunk_index + local_ratio) / max(1, total_chunks)) * self.chunk_scale
        return self._report(stage, message, max(float(self._floor), percent))

    def complete_unit(self) -> None:
        if self.last is not None:
            self._floor = max(self._floor, self.last.percent)

    def finalizing(self, message: str, percent: float) -> Progress:
        bounded = max(FINALIZING_FLOOR, min(FINALIZING_CEILING, percent))
        return self._report(ProgressStage.FINALIZING, message, max(self._floor, bounded))

    def complete(self, message: str) -> Progress:
        progress = self._report(ProgressStage.COMPLETE, message, 100)
        self._floor = 100
        return progress

    def error(self, message: str) -> Progress:
        return self._report(ProgressStage.ERROR, message, 100)

    def _report(self, stage: ProgressStage, message: str, percent: float) -> Progress:
        if self.last is not None and stage is not ProgressStage.ERROR:
            percent = max(percent, self.last.percent)
        progress = Progress(stage=stage, message=message, percent=clamp_percent(percent))
        self.last = progress
        emit_safely(self.sink, progress)
        if self.batch_sink is not None:
            emit_safely(
                self.batch_sink,
                Progress(
                    stage=stage,
                    message=message,
                    percent=batch_percent(self.item_index, self.total_items, progress.percent),
                ),
            )
        return progress


def render_local_percent(rendered: int, total: int) -> float:
    ratio = rendered / total if total > 0 else 0.0
    return RENDER_START_PERCENT + ratio * RENDER_SPAN_PERCENT
