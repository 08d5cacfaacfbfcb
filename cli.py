#!/usr/bin/env python3
"""
notescan CLI - symptom/HRSN mention extraction from clinical notes

Command-line interface for loading notes, running background extraction
jobs and viewing aggregated statistics.
"""

from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from notescan.config import settings
from notescan.errors import LibraryLoadError, NotescanError
from notescan.patterns import PatternLibrary, normalize_header
from notescan.service import ExtractionService
from notescan.types import CountMode, JobStatus, Note, ProblemFlag
from notescan.utils import setup_logging

app = typer.Typer(
    name="notescan",
    help="Background symptom/HRSN mention extraction",
    add_completion=False,
)
console = Console()

NOTE_COLUMN_ALIASES = {
    "patient_id": "patient_id",
    "patient": "patient_id",
    "date_of_service": "date_of_service",
    "dos": "date_of_service",
    "note_date": "date_of_service",
    "text": "text",
    "note_text": "text",
    "note": "text",
    "provider_id": "provider_id",
    "provider": "provider_id",
    "note_id": "note_id",
}


def read_notes_table(path: Path) -> List[Note]:
    """Read a CSV of notes (patient id, date of service, text, optional provider/note id)."""
    frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    frame = frame.rename(columns=lambda c: NOTE_COLUMN_ALIASES.get(normalize_header(c), normalize_header(c)))
    missing = {"patient_id", "date_of_service", "text"} - set(frame.columns)
    if missing:
        raise typer.BadParameter(f"{path} is missing columns: {', '.join(sorted(missing))}")

    notes = []
    for row in frame.to_dict(orient="records"):
        if not row["patient_id"].strip():
            continue
        notes.append(Note(
            note_id=row.get("note_id") or None,
            patient_id=row["patient_id"].strip(),
            date_of_service=pd.to_datetime(row["date_of_service"]).date(),
            text=row["text"],
            provider_id=row.get("provider_id") or None,
        ))
    return notes


def _status_style(status: JobStatus) -> str:
    return {
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.STOPPED: "yellow",
    }.get(status, "cyan")


@app.command()
def patterns(
    source: Optional[Path] = typer.Argument(None, help="Pattern library file (default: configured candidates)"),
    rows: int = typer.Option(10, "-n", "--rows", help="Rows to show"),
):
    """Load the pattern library and show a summary."""
    try:
        library = PatternLibrary().load(source)
    except LibraryLoadError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    symptoms = sum(1 for p in library if not p.is_hrsn)
    console.print(f"\n[bold cyan]Pattern library[/bold cyan]: {len(library)} patterns "
                  f"({symptoms} symptom, {len(library) - symptoms} HRSN)\n")

    table = Table(title=f"First {min(rows, len(library))} patterns")
    table.add_column("ID", style="dim")
    table.add_column("Segment", style="cyan")
    table.add_column("Diagnosis")
    table.add_column("Category")
    table.add_column("Flag")
    for pattern in library[:rows]:
        table.add_row(
            pattern.symptom_id or pattern.pattern_id,
            pattern.segment,
            pattern.diagnosis,
            pattern.diagnostic_category,
            pattern.problem_flag.value,
        )
    console.print(table)


@app.command("import-notes")
def import_notes(
    owner_id: str = typer.Argument(..., help="Owner the notes belong to"),
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV of notes"),
    db: Path = typer.Option(settings.DB_PATH, "--db", help="SQLite database"),
):
    """Load notes from a CSV into the note store."""
    notes = read_notes_table(csv_path)
    service = ExtractionService(db_path=db, recover_interrupted=False)
    try:
        count = service.store.add_notes(owner_id, notes)
    finally:
        service.close()
    console.print(f"[green]Imported {count} notes for {owner_id}[/green]")


@app.command()
def extract(
    owner_id: str = typer.Argument(..., help="Owner whose notes to scan"),
    db: Path = typer.Option(settings.DB_PATH, "--db", help="SQLite database"),
    pattern_source: Optional[Path] = typer.Option(None, "-p", "--patterns", help="Pattern library file"),
    workers: Optional[int] = typer.Option(None, "-w", "--workers", help="Parallel workers"),
    boost: bool = typer.Option(False, "--boost", help="Start with boosted parallelism"),
    force_refresh: bool = typer.Option(False, "--force-refresh", help="Clear prior mentions for the scope first"),
    patient: Optional[List[str]] = typer.Option(None, "--patient", help="Restrict to patient id (repeatable)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose output"),
):
    """
    Run an extraction job and follow its progress.

    Example:
        python cli.py extract clinic-1 --workers 8 --force-refresh
    """
    if verbose:
        setup_logging(level="DEBUG")

    service = ExtractionService(db_path=db, library_source=pattern_source, workers=workers)
    try:
        subscription = service.orchestrator.subscribe(owner_id)
        result = service.start(owner_id, patient_ids=patient or None, force_refresh=force_refresh, boost=boost)
        if result.existing:
            console.print(f"[yellow]Job {result.job_id} already running ({result.progress:.0f}%)[/yellow]")

        final = None
        with subscription, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Queued", total=100)
            for snapshot in subscription:
                if snapshot.job_id != result.job_id:
                    continue
                stage = snapshot.stage.value if snapshot.stage else snapshot.status.value
                progress.update(task, completed=snapshot.progress, description=f"[{stage}] {snapshot.message}")
                if snapshot.is_terminal:
                    final = snapshot
                    break

        final = final or service.orchestrator.get_status(result.job_id)
    finally:
        service.close()

    style = _status_style(final.status)
    console.print(f"\n[bold {style}]{final.status.value}[/bold {style}] {final.message}")
    console.print(f"  Mentions written: {final.mentions_written}  Duplicates removed: {final.duplicates_removed}")
    if final.status != JobStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def aggregate(
    owner_id: str = typer.Argument(..., help="Owner whose mentions to aggregate"),
    db: Path = typer.Option(settings.DB_PATH, "--db", help="SQLite database"),
    mode: CountMode = typer.Option(CountMode.RAW, "-m", "--mode", help="raw or unique_patients"),
    group_by: str = typer.Option("diagnostic_category", "-g", "--group-by",
                                 help="diagnostic_category, diagnosis or segment"),
    family: Optional[ProblemFlag] = typer.Option(None, "-f", "--family", help="symptom or problem"),
):
    """Show per-category counts and percentages."""
    service = ExtractionService(db_path=db, recover_interrupted=False)
    try:
        rows = service.aggregate(owner_id, mode, group_by=group_by, family=family)
    except (NotescanError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    finally:
        service.close()

    if not rows:
        console.print(f"[yellow]No mentions for {owner_id}[/yellow]")
        return

    table = Table(title=f"{owner_id}: {group_by} ({mode.value})")
    table.add_column("Family", style="dim")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("%", justify="right", style="green")
    for row in rows:
        table.add_row(row.family.value, row.category, str(row.count), f"{row.percentage:.2f}")
    console.print(table)


@app.command()
def status(
    owner_id: str = typer.Argument(..., help="Owner to inspect"),
    db: Path = typer.Option(settings.DB_PATH, "--db", help="SQLite database"),
):
    """Show the latest job snapshot for an owner."""
    service = ExtractionService(db_path=db, recover_interrupted=False)
    try:
        job = service.status(owner_id)
        persisted = service.store.count(owner_id)
    finally:
        service.close()

    if job is None:
        console.print(f"[yellow]No jobs recorded for {owner_id}[/yellow]")
        return

    style = _status_style(job.status)
    table = Table(title=f"Job {job.job_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{job.status.value}[/{style}]")
    table.add_row("Stage", job.stage.value if job.stage else "-")
    table.add_row("Progress", f"{job.progress:.0f}%")
    table.add_row("Notes", f"{job.processed_notes}/{job.total_notes}")
    table.add_row("Workers", f"{job.worker_count}{' (boosted)' if job.boost_applied else ''}")
    table.add_row("Mentions written", str(job.mentions_written))
    table.add_row("Mentions stored", str(persisted))
    table.add_row("Message", job.message)
    if job.error:
        table.add_row("Error", f"[red]{job.error}[/red]")
    if job.partial:
        table.add_row("Partial", "[yellow]force-completed[/yellow]")
    console.print(table)


if __name__ == "__main__":
    app()
