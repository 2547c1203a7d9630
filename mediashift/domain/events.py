"""Domain events for the transfer pipeline and the duplicate reconciler.

Events flow through the EventBus so the pipeline never talks to the console
directly. See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel
from .models import BatchMutationResult, ItemStatus, RunSummary, TranscodeProgress, WorkItem


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class ItemEvent(Event):
    """Base class for events related to a single work item."""

    item: WorkItem


class ItemStatusChanged(ItemEvent):
    """Emitted on every pipeline stage transition."""

    previous: ItemStatus


class ItemCompleted(ItemEvent):
    """Emitted when an item reaches DONE."""

    pass


class ItemSkipped(ItemEvent):
    """Emitted when the output already exists at the destination."""

    pass


class ItemFailed(ItemEvent):
    """Emitted when an item ends FAILED; an error log line was written."""

    error_message: str


class TranscodeProgressUpdated(ItemEvent):
    """Throttled ffmpeg progress (at most once per second)."""

    progress: TranscodeProgress


class RunStarted(Event):
    total_items: int
    shard_items: int
    instance_index: int
    total_instances: int


class RunFinished(Event):
    summary: RunSummary


class ScanFinished(Event):
    """Emitted once the destination tree walk is over."""

    files_scanned: int
    folders_scanned: int
    duplicate_groups: int
    complete: bool = True


class BatchProgress(Event):
    """Emitted after each mutation batch of the duplicate resolver."""

    action: str
    processed: int
    total: int
    result: BatchMutationResult


class ActionMessage(Event):
    """Free-form feedback line for the console."""

    message: str
    level: Optional[str] = None
