from __future__ import annotations

import argparse
import threading
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from slidesift.application.services.batch_service import BatchRunSummary, build_batch_service
from slidesift.application.services.chunk_planning_service import parse_page_range
from slidesift.cli.context import CLIContext
from slidesift.core.cancellation import CancellationToken
from slidesift.core.config import DOCUMENT_KINDS
from slidesift.core.errors import BatchError, SlidesiftError
from slidesift.domain.models.batch import BatchItem, BatchItemStatus
from slidesift.domain.models.batch import Progress as AnalysisProgress


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("analyze", help="Select high-signal slides from one PDF or a directory of PDFs")
    parser.add_argument("path", help="PDF file or directory to scan")
    parser.add_argument("--pages", default=None, help="Optional page range applied to every file, e.g. 3-40")
    parser.add_argument("--kind", choices=DOCUMENT_KINDS, default="presentation")
    parser.add_argument("--analyze-url", default=None, help="Analysis endpoint (default: $SLIDESIFT_ANALYZE_URL)")
    parser.add_argument("--model", default=None, help="Model name forwarded to the analysis endpoint")
    parser.add_argument("--max-files", type=int, help="Optional cap on new files for this run")
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Where result JSON files are written (default: <project>/.slidesift/results)",
    )
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    page_range = parse_page_range(args.pages) if args.pages else None
    output_dir = Path(args.output_dir).expanduser().resolve() if args.output_dir else None
    service = build_batch_service(
        ctx.paths,
        kind=args.kind,
        analyze_url=args.analyze_url,
        model=args.model,
        output_dir=output_dir,
    )

    target = Path(args.path).expanduser().resolve()
    if not target.exists():
        raise BatchError(f"Path not found: {target}")
    scan = service.add_directory(target, max_files=args.max_files)
    ctx.console.print(
        "[analyze] "
        f"candidates={scan.candidates} already_processed={scan.already_processed} queued={len(scan.added)}"
    )
    for item in scan.added:
        if item.status is BatchItemStatus.ERROR:
            ctx.console.print(f"[analyze] skipped {escape(item.name)}: {escape(item.error or 'unknown error')}")

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=ctx.console,
    )
    token = CancellationToken()
    outcome: dict[str, object] = {}

    with progress:
        overall_task = progress.add_task("Batch progress", total=100)
        current_task = progress.add_task("Waiting for first file...", total=100)

        def on_batch(update: AnalysisProgress) -> None:
            progress.update(overall_task, completed=update.percent)

        def on_item(item: BatchItem, update: AnalysisProgress) -> None:
            progress.update(
                current_task,
                description=f"{escape(item.name)}: {escape(update.message)}",
                completed=update.percent,
            )

        def worker() -> None:
            try:
                outcome["summary"] = service.run(
                    page_range=page_range,
                    progress_callback=on_batch,
                    item_progress_callback=on_item,
                    cancel_token=token,
                )
            except SlidesiftError as exc:
                outcome["error"] = exc

        thread = threading.Thread(target=worker, name="batch-run", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(timeout=0.2)
        except KeyboardInterrupt:
            ctx.console.print("[analyze] cancelling after the current step...")
            token.cancel()
            thread.join()

    error = outcome.get("error")
    if isinstance(error, SlidesiftError):
        raise error
    summary = outcome.get("summary")
    assert isinstance(summary, BatchRunSummary)

    table = Table(title="Results")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Slides", justify="right")
    table.add_column("Pages")
    table.add_column("Notes")
    for item in service.items():
        pages = ", ".join(str(page) for page in item.result.page_numbers()) if item.result else ""
        notes = item.error or ""
        table.add_row(
            escape(item.name),
            item.status.value,
            str(len(item.result.slides)) if item.result else "0",
            pages,
            escape(notes),
        )
    ctx.console.print(table)

    lines = [
        f"Analyzed this run: {summary.total}",
        f"  ├─ Complete: {summary.completed}",
        f"  └─ Failed: {summary.failed}",
        f"Already processed (state skip): {scan.already_processed}",
        f"Elapsed: {summary.elapsed_seconds:.1f}s",
    ]
    if summary.cancelled:
        lines.append("Run was cancelled; unfinished items stay ready for the next run.")
    lines.extend(
        [
            f"Results: {service.output_dir}",
            f"State file: {service.state_path}",
            f"Log file: {service.log_path}",
        ]
    )
    ctx.console.print(Panel.fit("\n".join(lines), title="Slide Analysis Summary"))

    if summary.cancelled:
        return 130
    return 0 if summary.failed == 0 else 1
