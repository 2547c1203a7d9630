from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from mediashift.domain.events import (
    ActionMessage,
    BatchProgress,
    ItemCompleted,
    ItemFailed,
    ItemSkipped,
    ItemStatusChanged,
    RunFinished,
    RunStarted,
    ScanFinished,
    TranscodeProgressUpdated,
)
from mediashift.domain.models import DuplicateGroups, ItemStatus
from mediashift.infrastructure.event_bus import EventBus

# Stages worth a console line; the rest only go to the log file
_ANNOUNCED = {
    ItemStatus.FETCHING: "Fetching",
    ItemStatus.TRANSCODING: "Transcoding",
    ItemStatus.PUBLISHING: "Publishing",
}

_LEVEL_STYLES = {"error": "red", "warning": "yellow", "ok": "green"}


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


class ConsoleReporter:
    """Subscribes to EventBus and prints run feedback with rich."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console()
        self._position = 0
        self._shard_items = 0
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(RunStarted, self.on_run_started)
        self.bus.subscribe(ItemStatusChanged, self.on_status_changed)
        self.bus.subscribe(TranscodeProgressUpdated, self.on_transcode_progress)
        self.bus.subscribe(ItemCompleted, self.on_item_completed)
        self.bus.subscribe(ItemSkipped, self.on_item_skipped)
        self.bus.subscribe(ItemFailed, self.on_item_failed)
        self.bus.subscribe(RunFinished, self.on_run_finished)
        self.bus.subscribe(ScanFinished, self.on_scan_finished)
        self.bus.subscribe(BatchProgress, self.on_batch_progress)
        self.bus.subscribe(ActionMessage, self.on_action_message)

    def on_run_started(self, event: RunStarted):
        self._shard_items = event.shard_items
        self._position = 0
        self.console.print(
            f"[bold]Instance {event.instance_index + 1}/{event.total_instances}[/bold]: "
            f"{event.shard_items} of {event.total_items} items"
        )

    def on_status_changed(self, event: ItemStatusChanged):
        if event.item.status == ItemStatus.CHECKING_DESTINATION:
            self._position += 1
            self.console.print(
                f"[cyan]({self._position}/{self._shard_items})[/cyan] {escape(event.item.source_key)}"
            )
            return
        label = _ANNOUNCED.get(event.item.status)
        if label:
            self.console.print(f"  {label}...")

    def on_transcode_progress(self, event: TranscodeProgressUpdated):
        p = event.progress
        self.console.print(
            f"  {p.percent_complete:5.1f}%  frame={p.frame_count} fps={p.fps:.0f} "
            f"speed={p.speed_multiplier:.2f}x  ETA {format_duration(p.estimated_time_remaining)}",
            highlight=False,
        )

    def on_item_completed(self, event: ItemCompleted):
        line = f"  [green]Done[/green] {event.item.category_key}/{event.item.destination_name}"
        if event.item.remote_link:
            line += f"  {event.item.remote_link}"
        self.console.print(line)

    def on_item_skipped(self, event: ItemSkipped):
        self.console.print(f"  [yellow]Skipped[/yellow] {event.item.destination_name} already exists")

    def on_item_failed(self, event: ItemFailed):
        self.console.print(f"  [red]Failed[/red] {escape(event.error_message)}")

    def on_run_finished(self, event: RunFinished):
        s = event.summary
        self.console.print(
            f"[bold]Finished:[/bold] {s.done} done, {s.skipped} skipped, "
            f"[red]{s.failed} failed[/red] of {s.total}"
        )

    def on_scan_finished(self, event: ScanFinished):
        self.console.print(
            f"Scanned {event.files_scanned} files in {event.folders_scanned} folders, "
            f"{event.duplicate_groups} duplicate names"
        )
        if not event.complete:
            self.console.print("[yellow]Some folders could not be listed; results are partial.[/yellow]")

    def on_batch_progress(self, event: BatchProgress):
        r = event.result
        self.console.print(
            f"{event.action}: {event.processed}/{event.total} "
            f"(ok={r.success} not_found={r.not_found} denied={r.permission_denied} errors={r.other_errors})"
        )

    def on_action_message(self, event: ActionMessage):
        style = _LEVEL_STYLES.get(event.level or "")
        message = escape(event.message)
        self.console.print(f"[{style}]{message}[/{style}]" if style else message)


def duplicate_table(groups: DuplicateGroups) -> Table:
    table = Table(title="Duplicate names", show_lines=False)
    table.add_column("Name")
    table.add_column("Copies", justify="right")
    table.add_column("Kept (first seen)")
    table.add_column("Others")
    for name, records in groups.items():
        table.add_row(
            name,
            str(len(records)),
            records[0].id,
            ", ".join(r.id for r in records[1:]),
        )
    return table


def confirm_action(summary: str, console: Optional[Console] = None) -> bool:
    """Asks once for a yes/no answer; anything but yes refuses."""
    return Confirm.ask(summary, default=False, console=console)


def choose_strategy(choices: List[str], console: Optional[Console] = None) -> str:
    return Prompt.ask("Resolution strategy", choices=choices, default="list-only", console=console)
