import logging
import os
import typer
from pathlib import Path
from typing import Optional

from rich.console import Console

from mediashift.config.loader import load_config
from mediashift.config.models import AppConfig
from mediashift.domain.errors import AuthSetupError, ConfigError, WorkListReadError
from mediashift.domain.events import ActionMessage
from mediashift.infrastructure.drive_store import DriveStore
from mediashift.infrastructure.error_log import ErrorLog
from mediashift.infrastructure.event_bus import EventBus
from mediashift.infrastructure.ffmpeg import TranscodeMonitor
from mediashift.infrastructure.housekeeping import HousekeepingService
from mediashift.infrastructure.logging import setup_logging
from mediashift.infrastructure.s3_store import S3SourceStore
from mediashift.pipeline.duplicate_resolver import (
    SUPPORTED_STRATEGIES,
    DuplicateResolver,
    ResolutionReport,
    parse_strategy,
)
from mediashift.pipeline.duplicate_scanner import DuplicateScanner
from mediashift.pipeline.orchestrator import Orchestrator
from mediashift.pipeline.work_list import partition_work_list, read_work_list, validate_shard
from mediashift.ui.console import ConsoleReporter, choose_strategy, confirm_action, duplicate_table

app = typer.Typer(help="mediashift - S3 to Google Drive transfer with ffmpeg transcoding")

DEFAULT_CONFIG = Path("conf/mediashift.yaml")


def _fatal(message: str) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _apply_common_overrides(config: AppConfig, log_path: Optional[Path], debug: bool) -> AppConfig:
    return config.with_section(
        "logging",
        log_path=str(log_path) if log_path else None,
        debug=True if debug else None,
    )


def _open_drive(config: AppConfig, required: bool, console: Console) -> Optional[DriveStore]:
    """DriveStore for the run, or None when Drive is off or unavailable and allowed to be."""
    logger = logging.getLogger(__name__)
    destination = config.destination
    if not destination.enabled and not required:
        logger.info("Google Drive destination disabled by config")
        return None
    if not destination.root_folder_id:
        if required:
            _fatal("No Google Drive folder configured (set GOOGLE_DRIVE_FOLDER_ID or destination.root_folder_id)")
        logger.warning("No Google Drive folder configured, continuing without Drive")
        console.print("[yellow]No Google Drive folder configured, continuing without Drive.[/yellow]")
        return None
    try:
        return DriveStore.from_config(destination)
    except AuthSetupError as exc:
        if required or not destination.allow_missing:
            _fatal(str(exc))
        logger.warning(f"Google Drive unavailable, continuing without it: {exc}")
        console.print(f"[yellow]Google Drive unavailable, continuing without it: {exc}[/yellow]")
        return None


def _run_dedupe(
    config: AppConfig,
    drive_store: DriveStore,
    bus: EventBus,
    console: Console,
    root_id: str,
    strategy_name: Optional[str],
    refresh: bool,
    assume_yes: bool,
) -> Optional[ResolutionReport]:
    scan = DuplicateScanner(drive_store, bus).scan(root_id)
    if not scan.has_duplicates:
        bus.publish(ActionMessage(message="No duplicate names found.", level="ok"))
        return None

    console.print(duplicate_table(scan.groups))
    if strategy_name is None:
        strategy_name = choose_strategy([s.value for s in SUPPORTED_STRATEGIES], console=console)
    strategy = parse_strategy(strategy_name)

    if assume_yes:
        def approve(summary: str) -> bool:
            return True
    else:
        def approve(summary: str) -> bool:
            return confirm_action(summary, console=console)

    resolver = DuplicateResolver(
        drive_store,
        approve,
        event_bus=bus,
        batch_size=config.dedupe.batch_size,
        batch_delay_s=config.dedupe.batch_delay_s,
        verify_timeout_s=config.dedupe.verify_timeout_s,
    )
    report = resolver.resolve(scan.groups, strategy, refresh=refresh)
    if not report.approved:
        bus.publish(ActionMessage(message="Cancelled, nothing was changed.", level="warning"))
    elif strategy.value != "list-only":
        r = report.result
        bus.publish(ActionMessage(
            message=f"{strategy.value}: {r.success} succeeded, {r.not_found} not found, "
            f"{r.permission_denied} permission denied, {r.other_errors} other errors",
            level="error" if r.other_errors or r.permission_denied else "ok",
        ))
    return report


@app.command()
def transfer(
    instance_index: Optional[int] = typer.Argument(None, help="Index of this instance (0-based)"),
    total_instances: Optional[int] = typer.Argument(None, help="Total number of parallel instances"),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    work_list: Optional[Path] = typer.Option(None, "--work-list", "-w", help="Comma separated list of source keys"),
    gpu: Optional[bool] = typer.Option(None, "--gpu/--cpu", help="Use the GPU or the CPU encoder"),
    retry_failed: bool = typer.Option(
        False, "--retry-failed", help="Process only the keys recorded in the error log, then rotate it (single instance)"
    ),
    retry_from: Optional[Path] = typer.Option(
        None, "--retry-from", help="Process only the keys recorded in this error log copy; safe for sharded runs"
    ),
    dedupe: Optional[bool] = typer.Option(
        None, "--dedupe/--no-dedupe", help="Reconcile duplicate names in Drive after the transfer"
    ),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Override log file path"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Fetch, transcode and publish this instance's share of the work list."""
    try:
        try:
            config = load_config(config_path, environ=os.environ)
            config = config.with_section(
                "shard", instance_index=instance_index, total_instances=total_instances
            )
            if gpu is not None:
                config = config.with_section("transcode", encoder="gpu" if gpu else "cpu")
            config = config.with_section("work", work_list_path=str(work_list) if work_list else None)
            config = config.with_section("dedupe", enabled=dedupe)
            config = _apply_common_overrides(config, log_path, debug)
            validate_shard(config.shard.instance_index, config.shard.total_instances)
            if not config.source.bucket:
                raise ConfigError("No source bucket configured (set BUCKET or source.bucket)")
            if config.dedupe.enabled and config.dedupe.strategy:
                parse_strategy(config.dedupe.strategy)
            if retry_failed and retry_from:
                raise ConfigError("Use either --retry-failed or --retry-from, not both")
            if retry_from and retry_from.resolve() == Path(config.work.error_log_path).resolve():
                raise ConfigError("--retry-from must point at a copy of the error log, not the live log")
            if retry_failed and config.shard.total_instances > 1:
                raise ConfigError(
                    "--retry-failed rotates the shared error log; with several instances move the log "
                    "aside once and start every instance with --retry-from <copy>"
                )
        except ConfigError as exc:
            _fatal(str(exc))

        logger = setup_logging(Path(config.logging.log_path), debug=config.logging.debug)
        logger.info(f"Config: {config_path} instance={config.shard.instance_index}/{config.shard.total_instances}")
        console = Console()

        work_dir = Path(config.work.work_dir)
        removed = HousekeepingService().cleanup_partial_downloads(work_dir)
        if removed:
            logger.info(f"Removed {removed} partial downloads from {work_dir}")

        error_log = ErrorLog(Path(config.work.error_log_path))
        try:
            if retry_from:
                if not retry_from.is_file():
                    raise WorkListReadError(f"Cannot read retry list {retry_from}")
                keys = ErrorLog(retry_from).failed_keys()
            elif retry_failed:
                keys = error_log.failed_keys()
                error_log.archive()
            else:
                keys = read_work_list(Path(config.work.work_list_path))
        except (WorkListReadError, OSError) as exc:
            _fatal(str(exc))
        shard_keys = partition_work_list(keys, config.shard.instance_index, config.shard.total_instances)
        logger.info(f"Work list: {len(keys)} keys, {len(shard_keys)} for this instance")

        drive_store = _open_drive(config, required=False, console=console)
        bus = EventBus()
        ConsoleReporter(bus, console)

        orchestrator = Orchestrator(
            config=config,
            event_bus=bus,
            source_store=S3SourceStore.from_config(config.source),
            transcoder=TranscodeMonitor(
                config.transcode.ffmpeg_path,
                progress_interval_s=config.transcode.progress_interval_s,
            ),
            error_log=error_log,
            drive_store=drive_store,
        )
        orchestrator.run(shard_keys, total_items=len(keys))

        if config.dedupe.enabled:
            if drive_store is None:
                bus.publish(ActionMessage(
                    message="Duplicate reconciliation skipped: Google Drive is not available.", level="warning"
                ))
            else:
                _run_dedupe(
                    config,
                    drive_store,
                    bus,
                    console,
                    root_id=config.destination.root_folder_id,
                    strategy_name=config.dedupe.strategy,
                    refresh=config.dedupe.refresh_before_resolve,
                    assume_yes=False,
                )

    except KeyboardInterrupt:
        typer.secho("\nTransfer stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except ConfigError as e:
        _fatal(str(e))

    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def dedupe(
    root: Optional[str] = typer.Option(None, "--root", help="Folder ID to scan (default: destination root)"),
    strategy: Optional[str] = typer.Option(
        None, "--strategy", "-s", help="keep-first-delete, keep-first-trash, rename-with-parent-suffix, list-only"
    ),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    no_refresh: bool = typer.Option(False, "--no-refresh", help="Skip the metadata refresh before mutating"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Override log file path"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Find files sharing a name under a Drive folder and resolve them."""
    try:
        try:
            config = load_config(config_path, environ=os.environ)
            config = _apply_common_overrides(config, log_path, debug)
            config = config.with_section("destination", root_folder_id=root)
            strategy = strategy or config.dedupe.strategy
            if strategy:
                parse_strategy(strategy)
        except ConfigError as exc:
            _fatal(str(exc))

        setup_logging(Path(config.logging.log_path), debug=config.logging.debug)
        console = Console()
        drive_store = _open_drive(config, required=True, console=console)
        bus = EventBus()
        ConsoleReporter(bus, console)
        refresh = config.dedupe.refresh_before_resolve and not no_refresh
        _run_dedupe(
            config,
            drive_store,
            bus,
            console,
            root_id=config.destination.root_folder_id,
            strategy_name=strategy,
            refresh=refresh,
            assume_yes=yes,
        )

    except KeyboardInterrupt:
        typer.secho("\nStopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except ConfigError as e:
        _fatal(str(e))

    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
