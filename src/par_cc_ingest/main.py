"""Main CLI application for par_cc_ingest."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from . import __application_title__, __version__
from .config import Config, load_config
from .data_manager import DataManager
from .exceptions import DataUnavailableError, FileDiscoveryError, LoadCancelledError, SummaryStoreError
from .file_monitor import FileWatcher
from .loader import LoadOptions, load_usage_entries
from .models import AnalysisResult, LoadMetadata, UsageEntry
from .pricing import PricingCache, PricingProvider, format_cost
from .summary_cache import JsonSummaryStore, SummaryStore
from .token_calculator import format_token_count, get_model_display_name

app = typer.Typer(
    name="par_cc_ingest",
    help=f"{__application_title__}: cache-aware ingestion of Claude Code usage logs",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger(__name__)

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Configuration file path")]
PathOption = Annotated[Path | None, typer.Option("--path", "-p", help="Directory or JSONL file to load")]
HoursBackOption = Annotated[int | None, typer.Option("--hours-back", help="Only include entries from the last N hours")]
NoCacheOption = Annotated[bool, typer.Option("--no-cache", help="Do not read or write the file summary cache")]
NoDedupOption = Annotated[bool, typer.Option("--no-dedup", help="Keep duplicate messageID:requestID entries")]
DebugOption = Annotated[bool, typer.Option("--debug", help="Write debug logging to the cache directory")]


def _setup_logging(config: Config, debug: bool) -> None:
    """Configure logging for a CLI run."""
    if debug:
        log_file = config.cache_dir / "debug.log"
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(message)s",
            handlers=[logging.FileHandler(log_file, encoding="utf-8")],
        )
    else:
        logging.basicConfig(level=getattr(logging, config.log_level, logging.ERROR), format="%(message)s")


def _load_cli_config(
    config_file: Path | None,
    path: Path | None,
    hours_back: int | None,
    no_cache: bool,
    no_dedup: bool,
) -> Config:
    """Load configuration and apply command line overrides."""
    config = load_config(config_file)
    updates: dict[str, object] = {}
    if path is not None:
        updates["projects_dir"] = path.expanduser()
    if hours_back is not None:
        updates["hours_back"] = hours_back if hours_back > 0 else None
    if no_cache:
        updates["disable_cache"] = True
    if no_dedup:
        updates["enable_deduplication"] = False
    return config.model_copy(update=updates) if updates else config


def _build_summary_store(config: Config) -> SummaryStore | None:
    if config.disable_cache:
        return None
    return JsonSummaryStore(config.summary_cache_path)


def _build_pricing_provider(config: Config) -> PricingProvider | None:
    """Fetch LiteLLM pricing, falling back to built-in prices on failure."""
    if not config.fetch_pricing:
        return None
    pricing = PricingCache()
    if not pricing.load_sync():
        logger.warning("Using built-in pricing table")
        return None
    return pricing


def _metadata_table(metadata: LoadMetadata) -> Table:
    table = Table(title="Load Summary", show_header=False, title_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    stats = metadata.cache_stats
    table.add_row("Files processed", str(metadata.files_processed))
    table.add_row("Entries loaded", str(metadata.entries_loaded))
    table.add_row("Load time", f"{metadata.load_duration:.3f}s")
    table.add_row("Invalid lines", str(metadata.invalid_lines))
    table.add_row("Duplicates skipped", str(metadata.duplicates_skipped))
    table.add_row("Cache hits", str(stats.hits))
    table.add_row("Cache misses", str(stats.misses))
    table.add_row("Cache hit rate", f"{stats.hit_rate:.1%}")
    for reason, count in metadata.cache_miss_reasons.items():
        if count:
            table.add_row(f"  miss: {reason}", str(count))
    table.add_row("Processing errors", str(len(metadata.processing_errors)))
    return table


def _model_table(entries: list[UsageEntry]) -> Table:
    totals: dict[str, list[float]] = defaultdict(lambda: [0, 0, 0.0])
    for entry in entries:
        row = totals[entry.model]
        row[0] += 1
        row[1] += entry.total_tokens
        row[2] += entry.cost_usd

    table = Table(title="Usage by Model", title_style="bold cyan")
    table.add_column("Model", style="magenta")
    table.add_column("Entries", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right", style="green")
    for model, (count, tokens, cost) in sorted(totals.items(), key=lambda item: item[1][2], reverse=True):
        table.add_row(get_model_display_name(model), str(int(count)), format_token_count(int(tokens)), format_cost(cost))
    return table


def _print_status(manager: DataManager, data: AnalysisResult) -> None:
    block = data.active_block
    cache_age = manager.get_cache_age()
    if block is None:
        console.print(f"[yellow]No active session[/yellow]  ({data.metadata.blocks_created} blocks, cache age {cache_age:.0f}s)")
        return
    console.print(
        f"[bold]Active block[/bold] {block.start_time:%Y-%m-%d %H:%M} - {block.end_time:%H:%M} UTC  "
        f"tokens [cyan]{format_token_count(block.total_tokens)}[/cyan]  "
        f"cost [green]{format_cost(block.cost_usd)}[/green]  "
        f"models {', '.join(block.models)}  "
        f"window files {manager.tracker.count_in_window()}  cache age {cache_age:.0f}s"
    )
    for limit in block.limit_messages:
        console.print(f"[red]Limit:[/red] {limit.message}")


@app.command()
def load(
    config_file: ConfigOption = None,
    path: PathOption = None,
    hours_back: HoursBackOption = None,
    no_cache: NoCacheOption = False,
    no_dedup: NoDedupOption = False,
    debug: DebugOption = False,
) -> None:
    """Load usage entries once and print load statistics."""
    config = _load_cli_config(config_file, path, hours_back, no_cache, no_dedup)
    _setup_logging(config, debug)

    options = LoadOptions(
        data_path=config.projects_dir,
        hours_back=config.hours_back,
        cost_mode=config.cost_mode,
        summary_store=_build_summary_store(config),
        enable_deduplication=config.enable_deduplication,
        pricing_provider=_build_pricing_provider(config),
        max_workers=config.max_workers,
        project_name_prefixes=config.project_name_prefixes,
    )
    try:
        result = load_usage_entries(options)
    except FileDiscoveryError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(_metadata_table(result.metadata))
    if result.entries:
        console.print(_model_table(result.entries))
        total = sum(entry.cost_usd for entry in result.entries)
        console.print(f"[bold]Total cost:[/bold] [green]{format_cost(total)}[/green]")
    else:
        console.print("[yellow]No usage entries found[/yellow]")


@app.command()
def monitor(
    config_file: ConfigOption = None,
    path: PathOption = None,
    hours_back: HoursBackOption = None,
    no_cache: NoCacheOption = False,
    no_dedup: NoDedupOption = False,
    debug: DebugOption = False,
    interval: Annotated[int | None, typer.Option("--interval", "-i", help="Seconds between refreshes")] = None,
    snapshot: Annotated[bool, typer.Option("--snapshot", help="Print once and exit")] = False,
) -> None:
    """Keep the usage analysis current and print the active block."""
    config = _load_cli_config(config_file, path, hours_back, no_cache, no_dedup)
    _setup_logging(config, debug)

    manager = DataManager(
        data_path=config.projects_dir,
        hours_back=config.hours_back,
        summary_store=_build_summary_store(config),
        pricing_provider=_build_pricing_provider(config),
        enable_deduplication=config.enable_deduplication,
        cost_mode=config.cost_mode,
        max_workers=config.max_workers,
        refresh_interval=config.cache_refresh_interval,
        project_name_prefixes=config.project_name_prefixes,
    )
    cancel_event = threading.Event()
    changed = threading.Event()
    polling_interval = interval or config.polling_interval

    def on_change(file_path: Path) -> None:
        logger.debug("Detected change in %s", file_path)
        changed.set()

    try:
        data = manager.get_data()
        _print_status(manager, data)
        if snapshot:
            return
        manager.start(cancel_event)
        with FileWatcher([config.projects_dir], on_change):
            while True:
                # Refresh on the next file event, or after the polling interval at the latest
                changed.wait(polling_interval)
                changed.clear()
                data = manager.get_data(force_refresh=True)
                _print_status(manager, data)
    except DataUnavailableError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except (KeyboardInterrupt, LoadCancelledError):
        console.print("\n[yellow]Monitoring stopped[/yellow]")
    finally:
        cancel_event.set()
        manager.stop()


@app.command("clear-cache")
def clear_cache(
    config_file: ConfigOption = None,
) -> None:
    """Delete the on-disk file summary cache."""
    config = load_config(config_file)
    store = JsonSummaryStore(config.summary_cache_path)
    if not store.cache_file.exists():
        console.print("[yellow]No summary cache to clear[/yellow]")
        return
    try:
        store.clear()
    except SummaryStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Cleared summary cache {store.cache_file}[/green]")


@app.command()
def version() -> None:
    """Show the version."""
    console.print(f"{__application_title__} {__version__}")


if __name__ == "__main__":
    app()
