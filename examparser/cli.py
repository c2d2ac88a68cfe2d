"""
CLI Interface
=============
Command-line interface for the exam question extractor.

Usage:
    python -m examparser extract <pdf_path> [options]
    python -m examparser info <pdf_path>
    python -m examparser crop <image_path> X Y WIDTH HEIGHT -o <output>
    python -m examparser status <run_id> [--db PATH]
    python -m examparser cleanup [--work-dir DIR] [--purge-run RUN_ID]
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .config import EXTRACTION_MODES, ExtractionConfig, configure_logging
from .database import SQLiteStore, count_run_questions, get_api_calls
from .diagrams import DiagramExtractor, crop_region, detect_watermarks
from .errors import ExtractionError
from .ledger import summarize_records
from .models import SourceDocument
from .pipeline import ExtractionPipeline
from .storage import delete_run_diagrams
from .store import MemoryStore
from .workspace import cleanup_stale_workspaces

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="examparser")
def cli():
    """Exam Parser: question extraction from exam-paper PDFs."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--mode", "-m",
    default=None,
    type=click.Choice(EXTRACTION_MODES),
    help="Extraction mode (auto picks vision when an API key is set)",
)
@click.option(
    "--document-id",
    default=None,
    help="Document identifier (defaults to the filename)",
)
@click.option("--title", "-t", default="", help="Paper title, e.g. 'NEET 2024' (defaults to the file name)")
@click.option(
    "--subject", "-s",
    default="full_length",
    help="Subject of every question, or full_length to detect per question",
)
@click.option("--output", "-o", default=None, help="Directory for the JSON report")
@click.option("--work-dir", default=None, help="Directory for run workspaces")
@click.option("--diagram-dir", default=None, help="Permanent diagram store")
@click.option("--db", "db_path", default=None, help="SQLite database to persist into")
@click.option("--dpi", default=None, type=int, help="Rasterization DPI")
@click.option(
    "--no-cli-tools",
    is_flag=True,
    default=False,
    help="Use PyMuPDF instead of pdftoppm/pdfimages",
)
@click.option(
    "--locate-diagrams",
    is_flag=True,
    default=False,
    help="Ask the vision provider to locate diagrams no embedded image covers",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def extract(
    pdf_path: str,
    mode: str,
    document_id: str,
    title: str,
    subject: str,
    output: str,
    work_dir: str,
    diagram_dir: str,
    db_path: str,
    dpi: int,
    no_cli_tools: bool,
    locate_diagrams: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Extract the questions of one exam PDF."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    config = ExtractionConfig.from_env(
        mode=mode,
        output_dir=output,
        work_dir=work_dir,
        diagram_store_dir=diagram_dir,
        dpi=dpi,
        log_level=log_level,
        log_file=log_file,
    )
    config.use_cli_tools = not no_cli_tools
    config.locate_missing_diagrams = locate_diagrams
    config.save_output = output is not None
    configure_logging(config.log_level, config.log_file)

    document = SourceDocument(
        document_id=document_id or Path(pdf_path).stem,
        path=pdf_path,
        title=title or Path(pdf_path).stem,
        subject=subject,
    )

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Exam Parser v{__version__}[/]\n"
                f"[dim]Extracting: {os.path.basename(pdf_path)} "
                f"({config.resolved_mode} mode)[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        store = SQLiteStore(db_path) if db_path else MemoryStore()
        pipeline = ExtractionPipeline(config, store=store)

        if not json_output:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Starting...", total=100)
                report = pipeline.run(
                    document,
                    progress_callback=lambda percent, step: progress.update(
                        task, completed=percent, description=step
                    ),
                )
            _display_report(report)
        else:
            report = pipeline.run(document)
            print(json.dumps(
                report.model_dump(),
                indent=2,
                ensure_ascii=False,
                default=str,
            ))

    except ExtractionError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--watermark-threshold",
    default=5,
    type=int,
    help="Pages an image size must repeat on to count as a watermark",
)
def info(pdf_path: str, watermark_threshold: int):
    """Display PDF page and embedded-image statistics."""

    import fitz  # PyMuPDF

    with fitz.open(pdf_path) as doc:
        page_count = doc.page_count
        metadata = doc.metadata or {}

    config = ExtractionConfig(watermark_page_threshold=watermark_threshold)
    images = DiagramExtractor(config).list_embedded_images(pdf_path)
    watermarks = detect_watermarks(images, page_threshold=watermark_threshold)

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(page_count))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
    )
    for key in ["title", "author", "subject", "creator", "producer"]:
        val = metadata.get(key, "")
        if val:
            table.add_row(key.title(), val)

    table.add_row("Embedded Images", str(len(images)))
    table.add_row(
        "Pages With Images",
        str(len({img.page_number for img in images})),
    )
    table.add_row("Watermark Signatures", str(len(watermarks)))
    console.print(table)
    console.print()

    if watermarks:
        wm_table = Table(title="Watermark Signatures", border_style="yellow")
        wm_table.add_column("Width", justify="right")
        wm_table.add_column("Height", justify="right")
        wm_table.add_column("Pages", justify="right")
        for width, height in sorted(watermarks):
            pages = {
                img.page_number for img in images
                if img.signature == (width, height)
            }
            wm_table.add_row(str(width), str(height), str(len(pages)))
        console.print(wm_table)
        console.print()


@cli.command()
@click.argument("image_path", type=click.Path(exists=True))
@click.argument("x", type=int)
@click.argument("y", type=int)
@click.argument("width", type=int)
@click.argument("height", type=int)
@click.option("--output", "-o", required=True, help="Path of the cropped PNG")
def crop(image_path: str, x: int, y: int, width: int, height: int, output: str):
    """Crop a region out of a page image."""
    try:
        path = crop_region(image_path, x, y, width, height, output)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    console.print(f"[green]✓[/] Cropped region saved to {path}")


@cli.command()
@click.argument("run_id")
@click.option("--db", "db_path", default=None, help="SQLite database (default: EXAMPARSER_DB_PATH)")
def status(run_id: str, db_path: str):
    """Show a stored run: progress, question counts and API usage."""
    store = SQLiteStore(db_path)
    run = store.get_run(run_id)
    if run is None:
        console.print(f"[red]Error:[/] Run not found: {run_id}")
        sys.exit(1)

    console.print()
    table = Table(title="Run Status", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Run ID", run.run_id)
    table.add_row("Document", run.source_document_id)
    table.add_row("Status", run.status.value)
    table.add_row("Progress", f"{run.progress_percent}%")
    table.add_row("Step", run.current_step or "-")
    if run.error_message:
        table.add_row("Error", f"[red]{run.error_message}[/]")
    total = count_run_questions(run_id, db_path=store.db_path)
    active = count_run_questions(run_id, active_only=True, db_path=store.db_path)
    table.add_row("Questions", f"{total} stored, {active} active")
    console.print(table)
    console.print()

    records = get_api_calls(run.source_document_id, db_path=store.db_path)
    if records:
        _display_cost_table(summarize_records(records))


@cli.command()
@click.option("--work-dir", default=None, help="Directory holding run workspaces")
@click.option(
    "--max-age-hours",
    default=24.0,
    type=float,
    help="Only remove workspaces untouched for this long",
)
@click.option(
    "--purge-run",
    default=None,
    help="Also delete the stored diagrams of this run",
)
@click.option("--diagram-dir", default=None, help="Permanent diagram store directory")
def cleanup(work_dir: str, max_age_hours: float, purge_run: str, diagram_dir: str):
    """Remove run workspaces left behind by crashed runs, optionally a run's stored diagrams."""
    config = ExtractionConfig.from_env()
    work_dir = work_dir or config.work_dir
    if purge_run:
        deleted = delete_run_diagrams(diagram_dir or config.diagram_store_dir, purge_run)
        console.print(f"[bold]{deleted}[/] stored diagrams deleted for run {purge_run}")
    removed = cleanup_stale_workspaces(work_dir, max_age_hours=max_age_hours)
    if removed:
        for name in removed:
            console.print(f"[dim]Removed {name}[/]")
    console.print(f"[bold]{len(removed)}[/] stale workspaces removed from {work_dir}")


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_report(report):
    """Display the extraction report in formatted tables."""
    console.print()

    run = report.run
    table = Table(title="Extraction Run", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Run ID", run.run_id)
    table.add_row("Document", run.source_document_id)
    table.add_row("Mode", report.mode)
    table.add_row("Status", run.status.value)
    table.add_row("Pages Processed", str(report.pages_processed))
    if report.pages_skipped:
        table.add_row(
            "Pages Skipped",
            ", ".join(str(p) for p in report.pages_skipped),
        )
    table.add_row("Elapsed", f"{report.elapsed_seconds:.2f}s")
    console.print(table)
    console.print()

    _display_questions_table(report)
    if report.cost.total_calls:
        _display_cost_table(report.cost)


def _display_questions_table(report):
    table = Table(title="Questions", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    table.add_row(
        "Total Records",
        str(report.total_questions),
        "[green]✓[/]" if report.total_questions > 0 else "[red]✗[/]",
    )
    table.add_row("Ready (active)", str(report.ready_count), "")
    table.add_row(
        "Incomplete (inactive)",
        str(report.incomplete_count),
        status_icon(report.incomplete_count),
    )
    table.add_row(
        "Placeholders",
        str(report.placeholder_count),
        status_icon(report.placeholder_count),
    )
    table.add_row(
        "Duplicate Question Numbers",
        str(len(report.duplicate_question_numbers)),
        status_icon(len(report.duplicate_question_numbers)),
    )
    table.add_row(
        "Diagrams Assigned",
        f"{report.diagrams_assigned}/{report.diagrams_extracted}",
        "",
    )
    console.print(table)
    console.print()


def _display_cost_table(cost):
    table = Table(title="API Usage", border_style="yellow")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Calls", f"{cost.successful_calls} ok / {cost.failed_calls} failed")
    table.add_row("Tokens", str(cost.total_tokens))
    table.add_row("Estimated Cost", f"${cost.total_cost_usd:.4f}")
    for operation, count in sorted(cost.by_operation.items()):
        table.add_row(f"  {operation}", str(count))
    console.print(table)
    console.print()


# ─── Entry point (for python -m examparser.cli) ───────────────────────────────


if __name__ == "__main__":
    cli()
