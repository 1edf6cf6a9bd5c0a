"""
CLI interface for the recall embedding pipeline.

Usage:
    recall status
    recall search "what distracted me"
    recall cascade "overall trend in my energy" --intent "overall trend"
    recall run
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import EmbeddingManager
from .dedup import DeduplicationConfig, DedupStrategy
from .logging_config import configure_quiet_mode, enable_debug_mode
from .search import SearchFilters, SearchOptions
from .types import Level, RankedResult, RawSearchResult


# Configure quiet mode by default (suppress verbose library output)
# Set RECALL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"recall {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="recall",
    help="Embedding jobs and semantic search over sessions and cycles.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="RECALL_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Embedding jobs and semantic search over sessions and cycles."""


LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


def _get_manager() -> EmbeddingManager:
    """Open the store, exiting cleanly on failure."""
    import atexit

    try:
        mgr = EmbeddingManager(_store_override)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(mgr.close)
    return mgr


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _format_ranked(results: list[RankedResult]) -> str:
    lines = []
    for r in results:
        text = r.snippet or r.text
        text = text.replace("\n", " ")
        if len(text) > 100:
            text = text[:97] + "..."
        lines.append(f"{r.rank:>3}. [{r.level.value:<7}] {r.composite_score:.3f}  {text}")
    return "\n".join(lines)


def _format_raw(results: list[RawSearchResult]) -> str:
    lines = []
    for i, r in enumerate(results, 1):
        text = r.text.replace("\n", " ")
        if len(text) > 100:
            text = text[:97] + "..."
        lines.append(f"{i:>3}. [{Level(r.level).value:<7}] {r.vector_score:.3f}  {text}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def status():
    """Show embedding job counts."""
    mgr = _get_manager()
    if _json_output:
        _echo_json(mgr.detailed_status())
        return
    counts = mgr.status()
    typer.echo(
        f"pending: {counts['pending']}  processing: {counts['processing']}  "
        f"done: {counts['done']}  error: {counts['error']}  total: {counts['total']}"
    )


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    limit: LimitOption = 10,
    level: Annotated[Optional[list[Level]], typer.Option(
        "--level", "-l",
        help="Restrict to level (repeatable)",
    )] = None,
    strategy: Annotated[DedupStrategy, typer.Option(
        "--strategy",
        help="Deduplication strategy",
    )] = DedupStrategy.SEMANTIC,
    snippets: Annotated[bool, typer.Option(
        "--snippets",
        help="Show query-centred snippets",
    )] = False,
    context: Annotated[bool, typer.Option(
        "--context",
        help="Include session and cycle context",
    )] = False,
):
    """Ranked, de-duplicated semantic search."""
    mgr = _get_manager()
    options = SearchOptions(
        limit=limit,
        filters=SearchFilters(levels=tuple(level)) if level else None,
        deduplication=DeduplicationConfig(strategy=strategy),
        include_snippets=snippets,
        include_context=context,
        include_metadata=context,
    )
    results = mgr.search(query, options)
    if _json_output:
        _echo_json([r.to_dict() for r in results])
    elif results:
        typer.echo(_format_ranked(results))
    else:
        typer.echo("No results.", err=True)


@app.command()
def cascade(
    query: Annotated[str, typer.Argument(help="Search text")],
    intent: Annotated[str, typer.Option(
        "--intent", "-i",
        help="What the user is after; 'overall', 'trend' or 'summary' search sessions first",
    )] = "",
    k: Annotated[int, typer.Option(
        "-k",
        help="Results per level",
    )] = 8,
):
    """Search one level at a time, returning the first level with hits."""
    mgr = _get_manager()
    results = mgr.cascading_search(query, intent or None, k)
    if _json_output:
        _echo_json([
            {
                "id": r.id,
                "level": Level(r.level).value,
                "session_id": r.session_id,
                "cycle_id": r.cycle_id,
                "score": r.vector_score,
                "text": r.text,
            }
            for r in results
        ])
    elif results:
        typer.echo(_format_raw(results))
    else:
        typer.echo("No results.", err=True)


@app.command()
def process():
    """Run one processing pass over pending jobs."""
    mgr = _get_manager()
    report = mgr.process_once()
    if _json_output:
        _echo_json(report.to_dict())
    elif report.skipped:
        typer.echo(f"Skipped ({report.reason}).")
    else:
        typer.echo(f"Processed {report.processed}, errors {report.errors}.")


@app.command()
def run(
    interval: Annotated[Optional[float], typer.Option(
        "--interval",
        help="Seconds between processing passes (default from config)",
    )] = None,
):
    """Run the scheduler until interrupted."""
    import signal
    import threading

    mgr = _get_manager()
    if not mgr.config.ai_enabled:
        typer.echo("AI features are disabled in config; nothing to run.", err=True)
        raise typer.Exit(1)

    shutdown = threading.Event()

    def handle_signal(signum, frame):
        shutdown.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    mgr.start(interval)
    typer.echo("Scheduler running. Ctrl-C to stop.", err=True)
    try:
        while not shutdown.wait(1.0):
            pass
    finally:
        mgr.stop()
        typer.echo("Scheduler stopped.", err=True)


@app.command()
def backfill(
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Most recent sessions and cycles to scan",
    )] = 50,
):
    """Create jobs for recent records that were never embedded."""
    mgr = _get_manager()
    result = mgr.backfill(limit)
    if _json_output:
        _echo_json(result)
    else:
        typer.echo(
            f"Scanned {result['sessions_processed']} sessions and "
            f"{result['cycles_processed']} cycles; created {result['jobs_created']} jobs."
        )


@app.command()
def cleanup():
    """Delete old done and error jobs."""
    mgr = _get_manager()
    result = mgr.cleanup()
    if _json_output:
        _echo_json(result)
    else:
        typer.echo(
            f"Removed {result['completed_removed']} done and "
            f"{result['errors_removed']} error jobs."
        )


@app.command()
def retry(
    job_id: Annotated[Optional[list[str]], typer.Argument(
        help="Job ids to retry (default: all failed jobs)",
    )] = None,
    dry_run: Annotated[bool, typer.Option(
        "--dry-run", help="List failed jobs without resetting them",
    )] = False,
):
    """Return failed jobs to pending."""
    mgr = _get_manager()
    failed = mgr.failed_jobs()
    if job_id:
        failed = [job for job in failed if job.id in job_id]
    count = 0 if dry_run else mgr.retry_failed(job_id or None)
    if _json_output:
        _echo_json({
            "failed": [
                {"id": job.id, "attempts": job.attempts, "error": job.error_message}
                for job in failed
            ],
            "reset": count,
        })
        return
    for job in failed:
        typer.echo(f"  {job.id}  attempts={job.attempts}  {job.error_message or ''}".rstrip())
    if dry_run:
        typer.echo(f"{len(failed)} failed jobs.")
    else:
        typer.echo(f"Reset {count} jobs to pending.")


@app.command()
def config():
    """Show configuration."""
    from .config import get_default_store_path, load_or_create_config

    store_path = Path(_store_override).resolve() if _store_override else get_default_store_path()
    cfg = load_or_create_config(store_path)
    data = {
        "file": str(cfg.config_path),
        "store": str(cfg.path),
        "ai_enabled": cfg.ai_enabled,
        "embedding": {"name": cfg.embedding.name, **cfg.embedding.params},
        "summarization": {"name": cfg.summarization.name, **cfg.summarization.params},
        "scheduler": dict(cfg.scheduler.__dict__),
        "rate_limit": dict(cfg.rate_limit.__dict__),
        "records_database": str(cfg.records_database) if cfg.records_database else None,
    }
    if _json_output:
        _echo_json(data)
        return
    for key, value in data.items():
        typer.echo(f"{key}: {value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        from .errors import log_exception
        log_path = log_exception(e, context="recall CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
