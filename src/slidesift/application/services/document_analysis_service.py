from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from slidesift.application.services.chunk_executor_service import ChunkExecutor, ExecutionReport
from slidesift.application.services.chunk_planning_service import ChunkPlan, ChunkPlanningService
from slidesift.application.services.progress_service import ProgressAggregator
from slidesift.application.services.quality_upgrade_service import QualityUpgradeService, UpgradeReport
from slidesift.application.services.result_merge_service import merge_chunk_results
from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.config import PipelineTuning
from slidesift.core.errors import AnalysisFailedError, OperationCancelledError, PolicyBlockedError
from slidesift.domain.models.analysis import AnalysisResult
from slidesift.domain.models.document import ChunkRange, Document
from slidesift.infrastructure.analysis.http_client import HttpAnalysisClient
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AnalysisStats:
    planned_chunks: int
    chunk_size: int
    processed_ranges: int
    succeeded_chunks: int
    failed_chunks: int
    remote_calls: int
    retries: int
    splits: int
    downgraded_pages: int = 0
    failed_upgrade_pages: int = 0
    elapsed_seconds: float = 0.0


@dataclass(slots=True)
class AnalysisReport:
    result: AnalysisResult
    warnings: list[str] = field(default_factory=list)
    stats: AnalysisStats | None = None

    @property
    def warning_text(self) -> str | None:
        joined = " ".join(self.warnings).strip()
        return joined or None


class DocumentAnalysisService:
    """Plans, executes, merges and upgrades one document.

    Partial success is a normal outcome reported through warnings; only a
    policy block, zero successful chunks or zero merged slides end in an error.
    """

    def __init__(
        self,
        *,
        renderer: PdfPageRenderer,
        analyzer: HttpAnalysisClient,
        tuning: PipelineTuning | None = None,
        planner: ChunkPlanningService | None = None,
        executor: ChunkExecutor | None = None,
        upgrader: QualityUpgradeService | None = None,
    ) -> None:
        self.renderer = renderer
        self.analyzer = analyzer
        self.tuning = tuning or PipelineTuning()
        self.planner = planner or ChunkPlanningService(self.tuning)
        self.executor = executor or ChunkExecutor(renderer=renderer, analyzer=analyzer, tuning=self.tuning)
        self.upgrader = upgrader or QualityUpgradeService(renderer=renderer, tuning=self.tuning)

    def plan(self, document: Document, page_range: ChunkRange | tuple[int, int] | None = None) -> ChunkPlan:
        return self.planner.plan(
            page_count=document.page_count,
            byte_size=document.byte_size,
            page_range=page_range,
        )

    def analyze(
        self,
        document: Document,
        *,
        page_range: ChunkRange | tuple[int, int] | None = None,
        progress: ProgressAggregator | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisReport:
        started = time.perf_counter()
        token = ensure_token(cancel_token)
        aggregator = progress or ProgressAggregator(chunk_scale=self.tuning.chunk_progress_scale)

        aggregator.preparing("Preparing presentation...")
        plan = self.plan(document, page_range)
        logger.info(
            "%s: %d page(s) in %d chunk(s) of up to %d pages",
            document.name,
            plan.page_count,
            len(plan.ranges),
            plan.chunk_size,
        )

        execution = self.executor.execute(document, plan.ranges, progress=aggregator, cancel_token=token)

        if execution.location_blocked:
            raise PolicyBlockedError(
                "The analysis provider is temporarily blocked by its location policy for this "
                f"environment. Stop now and retry later. ({execution.location_blocked})"
            )
        if not execution.results:
            detail = (
                execution.failures[0]
                if execution.failures
                else "No analyzable chunks were produced for this presentation."
            )
            raise AnalysisFailedError(detail)

        merged = merge_chunk_results(execution.results)
        if not merged.slides:
            raise AnalysisFailedError("No valid insight slides were selected across chunks.")

        aggregator.finalizing("Finalizing: rendering selected slides in high quality...", 93)

        def on_upgrade_page(current: int, total: int, page_number: int) -> None:
            ratio = current / total if total > 0 else 1.0
            aggregator.finalizing(
                f"Finalizing: rendering high-quality slide {current}/{total} (page {page_number})...",
                93 + ratio * 6,
            )

        stage_warnings: list[str] = []
        try:
            upgrade = self.upgrader.upgrade(document, merged, on_page=on_upgrade_page, cancel_token=token)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.warning("%s: high-quality render stage failed", document.name, exc_info=True)
            upgrade = UpgradeReport(result=merged)
            stage_warnings.append(
                f"High-quality final render step failed ({str(exc) or type(exc).__name__}); "
                "using analysis-quality slide images."
            )

        warnings: list[str] = []
        if execution.failures:
            warnings.append(
                f"Partial analysis: {len(execution.failures)} chunk(s) failed. {execution.failures[0]}"
            )
        warnings.extend(stage_warnings)
        warnings.extend(upgrade.warnings)

        stats = self._stats(plan, execution)
        stats.downgraded_pages = len(upgrade.downgraded_pages)
        stats.failed_upgrade_pages = len(upgrade.failed_pages)
        stats.elapsed_seconds = time.perf_counter() - started

        slide_total = len(upgrade.result.slides)
        if slide_total < 3:
            completion = f"Analysis complete with {slide_total} high-signal slide{'' if slide_total == 1 else 's'}."
        elif warnings:
            completion = "Analysis complete with recoverable warnings."
        else:
            completion = "Analysis complete."
        aggregator.complete(completion)

        return AnalysisReport(result=upgrade.result, warnings=warnings, stats=stats)

    @staticmethod
    def _stats(plan: ChunkPlan, execution: ExecutionReport) -> AnalysisStats:
        return AnalysisStats(
            planned_chunks=len(plan.ranges),
            chunk_size=plan.chunk_size,
            processed_ranges=len(execution.processed_ranges),
            succeeded_chunks=execution.succeeded_chunks,
            failed_chunks=len(execution.failures),
            remote_calls=execution.remote_calls,
            retries=execution.retries,
            splits=execution.splits,
        )
