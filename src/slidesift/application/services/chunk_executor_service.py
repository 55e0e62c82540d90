from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable

from slidesift.application.services.backoff_policy import BackoffPolicy
from slidesift.application.services.progress_service import (
    ANALYZING_PERCENT,
    RENDER_START_PERCENT,
    ProgressAggregator,
    render_local_percent,
)
from slidesift.application.services.render_profile_service import RenderProfileSelector
from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.config import PipelineTuning
from slidesift.core.errors import DocumentError, FailureKind, OperationCancelledError, UpstreamError
from slidesift.domain.models.analysis import AnalysisResult, ChunkOutcome, ChunkOutcomeKind
from slidesift.domain.models.batch import ProgressStage
from slidesift.domain.models.document import ChunkRange, Document
from slidesift.infrastructure.analysis.http_client import HttpAnalysisClient
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer

logger = logging.getLogger(__name__)

SleepFn = Callable[[CancellationToken, float], None]


def _token_sleep(token: CancellationToken, seconds: float) -> None:
    token.sleep(seconds, "retry backoff")


@dataclass(slots=True)
class ExecutionReport:
    results: list[AnalysisResult] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    outcomes: list[ChunkOutcome] = field(default_factory=list)
    processed_ranges: list[ChunkRange] = field(default_factory=list)
    delays: list[float] = field(default_factory=list)
    remote_calls: int = 0
    retries: int = 0
    splits: int = 0
    location_blocked: str | None = None

    @property
    def succeeded_chunks(self) -> int:
        return len(self.results)


@dataclass(slots=True)
class _ChunkContext:
    label: str
    position: int
    total: int


class ChunkExecutor:
    """Drives the chunk work queue through render, payload guard, remote call and outcome.

    The queue is a deque: ranges are popped from the front and the two halves
    of a split are pushed back onto the front, so a split range finishes before
    any later range starts. Every split strictly shrinks a range and
    single-page ranges never split, so the queue always drains.
    """

    def __init__(
        self,
        *,
        renderer: PdfPageRenderer,
        analyzer: HttpAnalysisClient,
        tuning: PipelineTuning | None = None,
        profile_selector: RenderProfileSelector | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.renderer = renderer
        self.analyzer = analyzer
        self.tuning = tuning or PipelineTuning()
        self.profile_selector = profile_selector or RenderProfileSelector(self.tuning.render_profiles)
        self.backoff = backoff or BackoffPolicy.from_tuning(self.tuning)
        self._sleep = sleep or _token_sleep

    def execute(
        self,
        document: Document,
        ranges: Iterable[ChunkRange],
        *,
        progress: ProgressAggregator | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionReport:
        token = ensure_token(cancel_token)
        aggregator = progress or ProgressAggregator(chunk_scale=self.tuning.chunk_progress_scale)
        queue: deque[ChunkRange] = deque(ranges)
        report = ExecutionReport()
        position = 0

        while queue:
            token.raise_if_cancelled("chunk queue")
            chunk = queue.popleft()
            report.processed_ranges.append(chunk)
            ctx = _ChunkContext(
                label=f"Chunk {position + 1}/{position + 1 + len(queue)}",
                position=position,
                total=position + 1 + len(queue),
            )
            outcome = self._run_chunk(document, chunk, ctx, aggregator, token, report)
            report.outcomes.append(outcome)

            if outcome.kind is ChunkOutcomeKind.SPLIT and outcome.split_into is not None:
                first, second = outcome.split_into
                queue.appendleft(second)
                queue.appendleft(first)
                report.splits += 1
                continue

            position += 1
            aggregator.complete_unit()

            if outcome.kind is ChunkOutcomeKind.SUCCESS and outcome.result is not None:
                report.results.append(outcome.result)
                continue
            if outcome.kind is ChunkOutcomeKind.LOCATION_BLOCKED:
                report.location_blocked = f"{ctx.label} {chunk.label}"
                logger.warning(
                    "%s: upstream location policy block on %s; abandoning %d queued range(s)",
                    document.name,
                    chunk.label,
                    len(queue),
                )
                break

            note = f"{ctx.label} {chunk.label} failed: {outcome.reason}"
            report.failures.append(note)
            logger.warning("%s: %s", document.name, note)

        return report

    def _run_chunk(
        self,
        document: Document,
        chunk: ChunkRange,
        ctx: _ChunkContext,
        aggregator: ProgressAggregator,
        token: CancellationToken,
        report: ExecutionReport,
    ) -> ChunkOutcome:
        max_retries = self.tuning.max_retries
        attempt = 0

        while True:
            profile = self.profile_selector.for_attempt(attempt)

            def on_page(rendered: int, total_pages: int) -> None:
                aggregator.chunk(
                    chunk_index=ctx.position,
                    total_chunks=ctx.total,
                    local_percent=render_local_percent(rendered, total_pages),
                    stage=ProgressStage.UPLOADING,
                    message=f"{ctx.label}: Converted page {rendered} of {total_pages}",
                )

            aggregator.chunk(
                chunk_index=ctx.position,
                total_chunks=ctx.total,
                local_percent=RENDER_START_PERCENT,
                stage=ProgressStage.UPLOADING,
                message=(
                    f"{ctx.label}: Converting {chunk.page_count} pages to images "
                    f"({chunk.label} of {document.page_count})..."
                ),
            )
            try:
                images = self.renderer.render_range(
                    document,
                    chunk,
                    profile,
                    cancel_token=token,
                    on_page=on_page,
                )
            except OperationCancelledError:
                raise
            except Exception as exc:
                if not isinstance(exc, DocumentError):
                    logger.warning("%s %s: unexpected render error", ctx.label, chunk.label, exc_info=True)
                return ChunkOutcome(
                    kind=ChunkOutcomeKind.FATAL_FAILURE,
                    chunk=chunk,
                    attempts=attempt + 1,
                    reason=str(exc) or type(exc).__name__,
                    failure_kind=FailureKind.OTHER,
                )

            payload_chars = sum(image.payload_chars for image in images)
            if payload_chars > self.tuning.max_payload_chars:
                logger.info(
                    "%s %s: rendered payload %d chars exceeds %d",
                    ctx.label,
                    chunk.label,
                    payload_chars,
                    self.tuning.max_payload_chars,
                )
                return self._split_or_too_large(
                    chunk,
                    ctx,
                    aggregator,
                    attempts=attempt + 1,
                    reason=f"{ctx.label} ({chunk.label}) is too large even for a single page.",
                    message=f"{ctx.label}: payload too large, splitting to smaller ranges...",
                )

            aggregator.chunk(
                chunk_index=ctx.position,
                total_chunks=ctx.total,
                local_percent=ANALYZING_PERCENT,
                stage=ProgressStage.ANALYZING,
                message=f"{ctx.label}: Analyzing slides with AI...",
            )
            report.remote_calls += 1
            try:
                result = self.analyzer.analyze(images, chunk, cancel_token=token)
            except UpstreamError as exc:
                kind = exc.kind
                logger.debug("%s %s attempt %d failed (%s): %s", ctx.label, chunk.label, attempt + 1, kind.value, exc)

                if kind is FailureKind.POLICY_BLOCKED:
                    return ChunkOutcome(
                        kind=ChunkOutcomeKind.LOCATION_BLOCKED,
                        chunk=chunk,
                        attempts=attempt + 1,
                        reason=str(exc),
                        failure_kind=kind,
                    )

                if kind is FailureKind.PAYLOAD_TOO_LARGE:
                    return self._split_or_too_large(
                        chunk,
                        ctx,
                        aggregator,
                        attempts=attempt + 1,
                        reason=str(exc),
                        message=f"{ctx.label}: upstream rejected payload size, splitting to smaller ranges...",
                    )

                if kind.is_retriable and attempt < max_retries:
                    retry_number = attempt + 1
                    delay = self.backoff.delay_for(kind, retry_number, exc.retry_after_seconds)
                    report.retries += 1
                    report.delays.append(delay)
                    reason_label = "rate limit reached" if kind is FailureKind.RATE_LIMITED else "transient error"
                    aggregator.chunk(
                        chunk_index=ctx.position,
                        total_chunks=ctx.total,
                        local_percent=ANALYZING_PERCENT,
                        stage=ProgressStage.ANALYZING,
                        message=(
                            f"{ctx.label}: {reason_label}, retrying in {max(1, math.ceil(delay))}s "
                            f"({retry_number}/{max_retries})..."
                        ),
                    )
                    logger.info(
                        "%s %s: %s, retry %d/%d in %.1fs",
                        ctx.label,
                        chunk.label,
                        reason_label,
                        retry_number,
                        max_retries,
                        delay,
                    )
                    self._sleep(token, delay)
                    attempt += 1
                    continue

                # Tuning point: repeated non-rate-limit failures are treated as evidence
                # that something inside the range is problematic.
                if kind is FailureKind.TRANSIENT and chunk.is_splittable:
                    return self._split(
                        chunk,
                        ctx,
                        aggregator,
                        attempts=attempt + 1,
                        failure_kind=kind,
                        message=f"{ctx.label}: splitting range due to repeated upstream failures...",
                    )

                return ChunkOutcome(
                    kind=ChunkOutcomeKind.RETRIABLE_FAILURE if kind.is_retriable else ChunkOutcomeKind.FATAL_FAILURE,
                    chunk=chunk,
                    attempts=attempt + 1,
                    reason=str(exc),
                    failure_kind=kind,
                )

            return ChunkOutcome(
                kind=ChunkOutcomeKind.SUCCESS,
                chunk=chunk,
                attempts=attempt + 1,
                result=result,
            )

    def _split_or_too_large(
        self,
        chunk: ChunkRange,
        ctx: _ChunkContext,
        aggregator: ProgressAggregator,
        *,
        attempts: int,
        reason: str,
        message: str,
    ) -> ChunkOutcome:
        if not chunk.is_splittable:
            return ChunkOutcome(
                kind=ChunkOutcomeKind.TOO_LARGE,
                chunk=chunk,
                attempts=attempts,
                reason=reason,
                failure_kind=FailureKind.PAYLOAD_TOO_LARGE,
            )
        return self._split(
            chunk,
            ctx,
            aggregator,
            attempts=attempts,
            failure_kind=FailureKind.PAYLOAD_TOO_LARGE,
            message=message,
        )

    @staticmethod
    def _split(
        chunk: ChunkRange,
        ctx: _ChunkContext,
        aggregator: ProgressAggregator,
        *,
        attempts: int,
        failure_kind: FailureKind,
        message: str,
    ) -> ChunkOutcome:
        halves = chunk.bisect()
        aggregator.chunk(
            chunk_index=ctx.position,
            total_chunks=ctx.total + 1,
            local_percent=0,
            stage=ProgressStage.UPLOADING,
            message=message,
        )
        logger.info("%s %s split into %s and %s", ctx.label, chunk.label, halves[0].label, halves[1].label)
        return ChunkOutcome(
            kind=ChunkOutcomeKind.SPLIT,
            chunk=chunk,
            attempts=attempts,
            failure_kind=failure_kind,
            split_into=halves,
        )
