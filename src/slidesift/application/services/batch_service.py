from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

from slidesift.application.services.document_analysis_service import AnalysisReport, DocumentAnalysisService
from slidesift.application.services.progress_service import ProgressAggregator, emit_safely
from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.config import AppPaths, PipelineTuning, load_analyze_url, load_tuning
from slidesift.core.errors import BatchError, DocumentError, OperationCancelledError
from slidesift.core.ids import compute_bytes_digest, new_item_id
from slidesift.domain.models.batch import BatchItem, BatchItemStatus, Progress, ProgressStage
from slidesift.domain.models.document import ChunkRange, Document
from slidesift.infrastructure.analysis.http_client import HttpAnalysisClient
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer

logger = logging.getLogger(__name__)

INPUT_UNAVAILABLE_MESSAGE = "Original PDF is unavailable in this session. Re-upload the file to analyze."
UNSUPPORTED_FILE_MESSAGE = "Only PDF files are supported for presentations."

BatchProgressCallback = Callable[[Progress], None]
ItemProgressCallback = Callable[[BatchItem, Progress], None]


@dataclass(slots=True)
class BatchRunSummary:
    total: int
    completed: int
    failed: int
    cancelled: bool = False
    elapsed_seconds: float = 0.0
    item_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DirectoryScan:
    candidates: int
    already_processed: int
    added: list[BatchItem]


class BatchService:
    """Owns the batch items and runs them through the analysis pipeline one at a time."""

    def __init__(
        self,
        *,
        renderer: PdfPageRenderer,
        analysis_service: DocumentAnalysisService,
        tuning: PipelineTuning | None = None,
        state_path: Path | None = None,
        log_path: Path | None = None,
        output_dir: Path | None = None,
        release_inputs_on_complete: bool = False,
    ) -> None:
        self.renderer = renderer
        self.analysis_service = analysis_service
        self.tuning = tuning or PipelineTuning()
        self.state_path = state_path
        self.log_path = log_path
        self.output_dir = output_dir
        self.release_inputs_on_complete = release_inputs_on_complete
        self._items: list[BatchItem] = []
        self._lock = threading.RLock()
        self._run_lock = threading.Lock()
        self.batch_progress: Progress | None = None

    # ------------------------------------------------------------------
    # Item management
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def items(self) -> list[BatchItem]:
        with self._lock:
            return list(self._items)

    def get(self, item_id: str) -> BatchItem:
        with self._lock:
            for item in self._items:
                if item.id == item_id:
                    return item
        raise BatchError(f"Batch item not found: {item_id}")

    def add_document(self, name: str, data: bytes) -> BatchItem:
        item = BatchItem(id=new_item_id(name), name=name)
        with self._lock:
            self._items.append(item)

        if not self.renderer.supports(name):
            self._fail(item, UNSUPPORTED_FILE_MESSAGE)
            return item

        self._transition(item, BatchItemStatus.PARSING)
        try:
            document = self.renderer.load(name, data)
        except DocumentError as exc:
            self._fail(item, str(exc))
            return item

        with self._lock:
            item.data = document.data
            item.digest = compute_bytes_digest(document.data)
            item.page_count = document.page_count
        self._transition(item, BatchItemStatus.READY)
        return item

    def add_path(self, path: Path) -> BatchItem:
        path = path.expanduser().resolve()
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise BatchError(f"Unable to read {path}: {exc}") from exc
        return self.add_document(path.name, data)

    def find_candidates(self, root: Path) -> list[Path]:
        root = root.expanduser().resolve()
        if root.is_file():
            return [root]
        return sorted(p for p in root.rglob("*") if p.is_file() and self.renderer.supports(p.name))

    def add_directory(self, root: Path, *, max_files: int | None = None) -> DirectoryScan:
        candidates = self.find_candidates(root)
        completed_digests = self.load_state()
        added: list[BatchItem] = []
        already_processed = 0

        for candidate in candidates:
            if max_files is not None and len(added) >= max_files:
                break
            try:
                data = candidate.read_bytes()
            except OSError as exc:
                raise BatchError(f"Unable to read {candidate}: {exc}") from exc
            if compute_bytes_digest(data) in completed_digests:
                already_processed += 1
                continue
            added.append(self.add_document(candidate.name, data))

        return DirectoryScan(candidates=len(candidates), already_processed=already_processed, added=added)

    def remove(self, item_id: str) -> None:
        with self._lock:
            item = self.get(item_id)
            if item.status is BatchItemStatus.ANALYZING:
                raise BatchError(f"{item.name} is being analyzed and cannot be removed.")
            self._items.remove(item)

    def clear(self) -> None:
        if self.is_running:
            raise BatchError("Cannot clear the batch while a run is in progress.")
        with self._lock:
            self._items.clear()
            self.batch_progress = None

    def release_input(self, item_id: str) -> BatchItem:
        with self._lock:
            item = self.get(item_id)
            if item.status is BatchItemStatus.ANALYZING:
                raise BatchError(f"{item.name} is being analyzed; its input is still in use.")
            item.data = None
            return item

    def retry(self, item_id: str) -> BatchItem:
        if self.is_running:
            raise BatchError("Cannot retry items while a run is in progress.")
        with self._lock:
            item = self.get(item_id)
            if item.status not in (BatchItemStatus.ERROR, BatchItemStatus.COMPLETE):
                raise BatchError(f"{item.name} is {item.status.value}; only failed or completed items can be retried.")
            item.result = None
            item.warnings = []
            item.progress = None
            if not item.has_input or item.page_count is None:
                self._fail(item, INPUT_UNAVAILABLE_MESSAGE)
                return item
            item.error = None
            self._transition(item, BatchItemStatus.READY)
            return item

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            counts = {status.value: 0 for status in BatchItemStatus}
            for item in self._items:
                counts[item.status.value] += 1
            return {
                "running": self.is_running,
                "counts": counts,
                "progress": self.batch_progress.to_dict() if self.batch_progress else None,
                "items": [item.to_dict() for item in self._items],
            }

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(
        self,
        *,
        page_range: ChunkRange | tuple[int, int] | None = None,
        progress_callback: BatchProgressCallback | None = None,
        item_progress_callback: ItemProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BatchRunSummary:
        if not self._run_lock.acquire(blocking=False):
            raise BatchError("A batch run is already in progress.")
        try:
            return self._run_locked(
                page_range=page_range,
                progress_callback=progress_callback,
                item_progress_callback=item_progress_callback,
                token=ensure_token(cancel_token),
            )
        finally:
            self._run_lock.release()

    def _run_locked(
        self,
        *,
        page_range: ChunkRange | tuple[int, int] | None,
        progress_callback: BatchProgressCallback | None,
        item_progress_callback: ItemProgressCallback | None,
        token: CancellationToken,
    ) -> BatchRunSummary:
        started = time.perf_counter()
        with self._lock:
            worklist = [item for item in self._items if item.status is BatchItemStatus.READY]
        total = len(worklist)
        summary = BatchRunSummary(total=total, completed=0, failed=0, item_ids=[item.id for item in worklist])
        if total == 0:
            return summary

        def report_batch(progress: Progress) -> None:
            with self._lock:
                self.batch_progress = progress
            emit_safely(progress_callback, progress)

        report_batch(Progress(stage=ProgressStage.PREPARING, message="Starting presentation analysis...", percent=0))

        for index, item in enumerate(worklist):
            if token.cancelled:
                summary.cancelled = True
                break
            with self._lock:
                if item not in self._items or item.status is not BatchItemStatus.READY:
                    continue

            def report_item(progress: Progress, item: BatchItem = item) -> None:
                with self._lock:
                    item.progress = progress
                if item_progress_callback is not None:
                    item_progress_callback(item, progress)

            aggregator = ProgressAggregator(
                report_item,
                chunk_scale=self.tuning.chunk_progress_scale,
                item_index=index,
                total_items=total,
                batch_sink=report_batch,
            )
            item_started = time.perf_counter()
            outcome = self._analyze_item(item, aggregator, page_range, token)
            if outcome == "cancelled":
                summary.cancelled = True
                break
            if outcome == "complete":
                summary.completed += 1
            else:
                summary.failed += 1
            self._append_item_log(item, time.perf_counter() - item_started)

            done = index + 1
            report_batch(
                Progress(
                    stage=ProgressStage.PREPARING if done < total else ProgressStage.COMPLETE,
                    message="Loading next presentation..." if done < total else "Batch analysis complete.",
                    percent=round(done / total * 100),
                )
            )

        summary.elapsed_seconds = time.perf_counter() - started
        logger.info(
            "Batch run finished: %d complete, %d failed of %d%s",
            summary.completed,
            summary.failed,
            summary.total,
            " (cancelled)" if summary.cancelled else "",
        )
        return summary

    def _analyze_item(
        self,
        item: BatchItem,
        aggregator: ProgressAggregator,
        page_range: ChunkRange | tuple[int, int] | None,
        token: CancellationToken,
    ) -> str:
        with self._lock:
            data = item.data
            page_count = item.page_count
        if data is None or page_count is None:
            self._fail(item, INPUT_UNAVAILABLE_MESSAGE)
            return "error"

        self._transition(item, BatchItemStatus.ANALYZING)
        with self._lock:
            item.error = None
        document = Document(name=item.name, data=data, page_count=page_count, byte_size=len(data))

        try:
            report = self.analysis_service.analyze(
                document,
                page_range=page_range,
                progress=aggregator,
                cancel_token=token,
            )
        except OperationCancelledError:
            logger.info("Analysis of %s cancelled; returning it to ready.", item.name)
            with self._lock:
                item.progress = None
            self._transition(item, BatchItemStatus.READY)
            return "cancelled"
        except Exception as exc:
            logger.warning("Analysis of %s failed: %s", item.name, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            aggregator.error("Analysis failed.")
            self._fail(item, str(exc) or "Failed to analyze presentation.")
            return "error"

        with self._lock:
            item.result = report.result
            item.warnings = list(report.warnings)
            item.error = report.warning_text
        self._transition(item, BatchItemStatus.COMPLETE)
        self._persist_completion(item, report)
        if self.release_inputs_on_complete:
            self.release_input(item.id)
        return "complete"

    # ------------------------------------------------------------------
    # State, log and result files
    # ------------------------------------------------------------------

    def load_state(self) -> set[str]:
        if self.state_path is None or not self.state_path.exists():
            return set()
        try:
            payload = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Ignoring unreadable batch state file %s", self.state_path)
            return set()
        digests = payload.get("completed_digests", []) if isinstance(payload, dict) else []
        if not isinstance(digests, list):
            return set()
        return set(str(x) for x in digests)

    def save_state(self, completed_digests: set[str]) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"completed_digests": sorted(completed_digests)}
        self.state_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")

    def append_log(self, row: dict[str, object]) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=True) + "\n")

    def result_path_for(self, item: BatchItem) -> Path | None:
        if self.output_dir is None:
            return None
        stem = Path(item.name).stem or "document"
        suffix = (item.digest or item.id)[:8]
        return self.output_dir / f"{stem}-{suffix}.json"

    def _persist_completion(self, item: BatchItem, report: AnalysisReport) -> None:
        if item.digest:
            completed = self.load_state()
            completed.add(item.digest)
            self.save_state(completed)

        result_path = self.result_path_for(item)
        if result_path is None:
            return
        result_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "name": item.name,
            "digest": item.digest,
            "page_count": item.page_count,
            "warnings": list(report.warnings),
            "stats": asdict(report.stats) if report.stats else None,
            "result": report.result.to_dict(),
        }
        result_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def _append_item_log(self, item: BatchItem, elapsed_seconds: float) -> None:
        self.append_log(
            {
                "id": item.id,
                "name": item.name,
                "digest": item.digest,
                "status": item.status.value,
                "slides": len(item.result.slides) if item.result else 0,
                "warnings": list(item.warnings),
                "error": item.error if item.status is BatchItemStatus.ERROR else None,
                "elapsed_seconds": round(elapsed_seconds, 4),
            }
        )

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _transition(self, item: BatchItem, target: BatchItemStatus) -> None:
        with self._lock:
            if not item.can_transition(target):
                raise BatchError(f"Invalid status change for {item.name}: {item.status.value} -> {target.value}")
            item.status = target

    def _fail(self, item: BatchItem, message: str) -> None:
        with self._lock:
            self._transition(item, BatchItemStatus.ERROR)
            item.error = message
            if item.page_count is None:
                # Never parsed: nothing a retry could reuse.
                item.data = None


def build_batch_service(
    paths: AppPaths,
    *,
    kind: str = "presentation",
    analyze_url: str | None = None,
    model: str | None = None,
    output_dir: Path | None = None,
) -> BatchService:
    tuning = load_tuning(kind)
    renderer = PdfPageRenderer(max_workers=tuning.render_workers, max_document_bytes=tuning.max_document_bytes)
    analyzer = HttpAnalysisClient(analyze_url or load_analyze_url())
    if model:
        analyzer.model = model
    return BatchService(
        renderer=renderer,
        analysis_service=DocumentAnalysisService(renderer=renderer, analyzer=analyzer, tuning=tuning),
        tuning=tuning,
        state_path=paths.state_path,
        log_path=paths.log_path,
        output_dir=output_dir or paths.output_dir,
    )
