from __future__ import annotations

import argparse
from pathlib import Path

from rich.table import Table

from slidesift.application.services.chunk_planning_service import ChunkPlanningService, parse_page_range
from slidesift.cli.context import CLIContext
from slidesift.core.config import DOCUMENT_KINDS, load_tuning
from slidesift.infrastructure.rendering.pdf_renderer import PdfPageRenderer


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("plan", help="Show how a PDF would be chunked, without analyzing it")
    parser.add_argument("path", help="PDF file to inspect")
    parser.add_argument("--pages", default=None, help="Optional page range, e.g. 3-40")
    parser.add_argument("--kind", choices=DOCUMENT_KINDS, default="presentation")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    tuning = load_tuning(args.kind)
    renderer = PdfPageRenderer(max_workers=tuning.render_workers, max_document_bytes=tuning.max_document_bytes)
    document = renderer.load_path(Path(args.path))
    page_range = parse_page_range(args.pages) if args.pages else None

    plan = ChunkPlanningService(tuning).plan(
        page_count=document.page_count,
        byte_size=document.byte_size,
        page_range=page_range,
    )

    table = Table(title=f"Chunk plan: {document.name}")
    table.add_column("#", justify="right")
    table.add_column("Pages")
    table.add_column("Count", justify="right")
    for index, chunk in enumerate(plan.ranges, start=1):
        table.add_row(str(index), chunk.label, str(chunk.page_count))
    ctx.console.print(table)
    ctx.console.print(
        f"pages={document.page_count} bytes={document.byte_size} "
        f"bytes_per_page={document.bytes_per_page:.0f} chunk_size={plan.chunk_size} "
        f"requested={plan.requested.label} chunks={len(plan.ranges)}"
    )
    return 0
