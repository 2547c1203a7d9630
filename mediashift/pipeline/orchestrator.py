"""Transfer pipeline: S3 source -> ffmpeg -> Google Drive destination.

Each work item walks a fixed sequence of stages:

    CHECKING_DESTINATION -> FETCHING -> TRANSCODING -> PUBLISHING -> CLEANING_UP

with terminal states DONE, SKIPPED_EXISTING and FAILED. Nothing is persisted
between runs; a rerun with the same work list is idempotent because every
item first checks whether its output already exists at the destination, and
a local copy left over from an interrupted run is reused instead of fetched
again.

Items are processed strictly one after another. Errors are contained at the
item boundary: they are logged, written to the error log, and the run moves on.
"""

import logging
import time
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, TYPE_CHECKING

from mediashift.config.models import AppConfig
from mediashift.domain.errors import MediaShiftError, RemoteStoreError, TranscodeError, TransientIOError
from mediashift.domain.events import (
    ItemCompleted,
    ItemFailed,
    ItemSkipped,
    ItemStatusChanged,
    RunFinished,
    RunStarted,
    TranscodeProgressUpdated,
)
from mediashift.domain.models import ItemStatus, RunSummary, TranscodeProgress, WorkItem
from mediashift.infrastructure.error_log import ErrorLog
from mediashift.infrastructure.event_bus import EventBus
from mediashift.infrastructure.ffmpeg import TranscodeMonitor
from mediashift.infrastructure.housekeeping import HousekeepingService, PARTIAL_SUFFIX
from mediashift.pipeline.naming import build_work_item

if TYPE_CHECKING:
    from mediashift.infrastructure.drive_store import DriveStore
    from mediashift.infrastructure.s3_store import S3SourceStore

CHUNK_SIZE = 8 * 1024 * 1024
FETCH_LOG_INTERVAL_S = 5.0


class Orchestrator:
    """Per-item transfer state machine.

    Args:
        config: Immutable run configuration.
        event_bus: EventBus for status transitions and progress.
        source_store: S3SourceStore (head_exists / get_stream / upload_file).
        transcoder: TranscodeMonitor running ffmpeg.
        error_log: ErrorLog receiving one line per item that did not complete.
        drive_store: Optional DriveStore; None runs without a hierarchical destination.
        housekeeper: Local file deletion helper.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        source_store: "S3SourceStore",
        transcoder: TranscodeMonitor,
        error_log: ErrorLog,
        drive_store: Optional["DriveStore"] = None,
        housekeeper: Optional[HousekeepingService] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.source_store = source_store
        self.transcoder = transcoder
        self.error_log = error_log
        self.drive_store = drive_store
        self.housekeeper = housekeeper or HousekeepingService()
        self.work_dir = Path(config.work.work_dir)
        self.logger = logging.getLogger(__name__)

        self._folder_ids: Dict[str, str] = {}
        self._claimed_outputs: Dict[Tuple[str, str], str] = {}

    # ------------------------------------------------------------------ paths

    def local_input_path(self, item: WorkItem) -> Path:
        return self.work_dir / item.source_key

    def partial_input_path(self, item: WorkItem) -> Path:
        local_path = self.local_input_path(item)
        return local_path.with_name(local_path.name + PARTIAL_SUFFIX)

    def local_output_path(self, item: WorkItem) -> Path:
        return self.work_dir / item.destination_key

    @property
    def _has_publish_target(self) -> bool:
        return self.drive_store is not None or self.config.transcode.publish_to_source_bucket

    # ------------------------------------------------------------------ driver

    def run(self, source_keys: Iterable[str], total_items: Optional[int] = None) -> RunSummary:
        """Processes keys sequentially. Never raises for per-item failures."""
        keys = list(source_keys)
        self.error_log.ensure_initialized()
        self.event_bus.publish(RunStarted(
            total_items=total_items if total_items is not None else len(keys),
            shard_items=len(keys),
            instance_index=self.config.shard.instance_index,
            total_instances=self.config.shard.total_instances,
        ))
        self.logger.info(
            f"RUN_START: instance={self.config.shard.instance_index}/{self.config.shard.total_instances} "
            f"items={len(keys)} drive={'ON' if self.drive_store else 'OFF'}"
        )

        summary = RunSummary(total=len(keys))
        for index, key in enumerate(keys, start=1):
            self.logger.info(f"Processing file {index}/{len(keys)}: {key}")
            item = build_work_item(key, self.config.work, self.config.transcode)
            self.process_item(item)
            if item.status == ItemStatus.DONE:
                summary.done += 1
            elif item.status == ItemStatus.SKIPPED_EXISTING:
                summary.skipped += 1
            else:
                summary.failed += 1
                summary.failed_keys.append(item.source_key)

        self.logger.info(
            f"RUN_END: done={summary.done} skipped={summary.skipped} failed={summary.failed}"
        )
        self.event_bus.publish(RunFinished(summary=summary))
        return summary

    def process_item(self, item: WorkItem) -> WorkItem:
        """Drives one item to a terminal state."""
        started = time.monotonic()
        try:
            self._process(item)
        except Exception as e:
            # Last line of defence: nothing crosses the item boundary
            self.logger.exception(f"Unexpected error processing {item.source_key}")
            self._fail(item, f"Error processing file: {e}")
        if self.config.logging.debug:
            self.logger.debug(
                f"ITEM_END: {item.source_key} status={item.status.value} "
                f"elapsed={time.monotonic() - started:.2f}s"
            )
        return item

    # ------------------------------------------------------------------ stages

    def _process(self, item: WorkItem) -> None:
        if self._check_collision(item):
            return

        self._transition(item, ItemStatus.CHECKING_DESTINATION)
        if self._destination_exists(item):
            self._skip_existing(item)
            return

        self._transition(item, ItemStatus.FETCHING)
        if not self._fetch(item):
            return

        self._transition(item, ItemStatus.TRANSCODING)
        try:
            self._transcode(item)
        except TranscodeError as e:
            message = f"Transcode error: {e}"
            if e.tail:
                message = f"{message} ({e.tail[-1]})"
            self._cleanup(item)
            self._fail(item, message)
            return

        if self._has_publish_target:
            self._transition(item, ItemStatus.PUBLISHING)
            self._publish(item)

        self._cleanup(item)
        self._transition(item, ItemStatus.DONE)
        self.event_bus.publish(ItemCompleted(item=item))

    def _check_collision(self, item: WorkItem) -> bool:
        slot = (item.category_key, item.destination_name)
        owner = self._claimed_outputs.setdefault(slot, item.source_key)
        if owner == item.source_key:
            return False
        self.logger.error(
            f"NAME_COLLISION: {item.source_key} and {owner} both map to "
            f"{item.category_key}/{item.destination_name}"
        )
        self._fail(item, f"Destination name collision with {owner}: {item.destination_name}")
        return True

    def _destination_exists(self, item: WorkItem) -> bool:
        if self.config.transcode.check_source_bucket:
            try:
                if self.source_store.head_exists(item.destination_key):
                    self.logger.info(f"Skip: {item.destination_key} already exists in S3")
                    return True
            except TransientIOError as e:
                self.logger.warning(f"S3 existence check failed for {item.destination_key}, assuming absent: {e}")

        if self.drive_store is not None:
            root_id = self.config.destination.root_folder_id
            try:
                folder = self.drive_store.find_child(root_id, item.category_key, folders_only=True)
                if folder is not None:
                    self._folder_ids[item.category_key] = folder.id
                    if self.drive_store.file_exists(folder.id, item.destination_name):
                        self.logger.info(
                            f"Skip: {item.destination_name} already exists in Google Drive folder {item.category_key}"
                        )
                        return True
            except RemoteStoreError as e:
                self.logger.warning(f"Drive existence check failed for {item.destination_name}, assuming absent: {e}")
        return False

    def _skip_existing(self, item: WorkItem) -> None:
        self.housekeeper.remove_file(self.local_input_path(item))
        self.housekeeper.remove_file(self.partial_input_path(item))
        self.housekeeper.remove_file(self.local_output_path(item))
        self._transition(item, ItemStatus.SKIPPED_EXISTING)
        self.event_bus.publish(ItemSkipped(item=item))

    def _fetch(self, item: WorkItem) -> bool:
        local_path = self.local_input_path(item)
        if local_path.exists():
            self.logger.info(f"Using existing local file: {local_path}")
            return True

        self.logger.info(f"Downloading: {item.source_key} from S3")
        partial = self.partial_input_path(item)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            body, total_bytes = self.source_store.get_stream(item.source_key)
            downloaded = self._stream_to_file(body, partial, total_bytes, item.source_key)
            partial.replace(local_path)
        except (MediaShiftError, OSError) as e:
            self.housekeeper.remove_file(partial)
            self._fail(item, f"Download error: {e}")
            return False

        item.fetched_this_run = True
        self.logger.info(f"Download complete: {item.source_key} ({downloaded / (1024 * 1024):.1f}MB)")
        return True

    def _stream_to_file(self, body, path: Path, total_bytes: int, key: str) -> int:
        downloaded = 0
        last_log = time.monotonic()
        try:
            with open(path, "wb") as f:
                for chunk in iter(lambda: body.read(CHUNK_SIZE), b""):
                    f.write(chunk)
                    downloaded += len(chunk)
                    now = time.monotonic()
                    if self.config.logging.debug and now - last_log >= FETCH_LOG_INTERVAL_S:
                        if total_bytes > 0:
                            self.logger.debug(f"FETCH_PROGRESS: {key} {downloaded / total_bytes * 100:.1f}%")
                        else:
                            self.logger.debug(f"FETCH_PROGRESS: {key} {downloaded} bytes")
                        last_log = now
        finally:
            close = getattr(body, "close", None)
            if close:
                close()
        return downloaded

    def _transcode(self, item: WorkItem) -> None:
        input_path = self.local_input_path(item)
        output_path = self.local_output_path(item)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        transcode = self.config.transcode

        def on_progress(progress: TranscodeProgress):
            self.event_bus.publish(TranscodeProgressUpdated(item=item, progress=progress))

        self.logger.info(f"FFMPEG_START: {item.source_key} encoder={transcode.encoder_name()}")
        self.transcoder.transcode(
            input_path,
            output_path,
            transcode.encoder_name(),
            encoder_args=transcode.encoder_args(),
            on_progress=on_progress,
        )
        item.transcoded = True

    def _category_folder_id(self, category: str) -> Optional[str]:
        cached = self._folder_ids.get(category)
        if cached:
            return cached
        try:
            folder_id = self.drive_store.find_or_create_folder(
                self.config.destination.root_folder_id, category
            )
        except RemoteStoreError as e:
            self.logger.error(f"Error finding/creating folder {category}: {e}")
            return None
        self._folder_ids[category] = folder_id
        return folder_id

    def _publish(self, item: WorkItem) -> None:
        output_path = self.local_output_path(item)
        item.publish_attempted = True
        failures = []

        if self.drive_store is not None:
            folder_id = self._category_folder_id(item.category_key)
            if folder_id is None:
                self.logger.error("Could not find or create category folder, uploading to root folder")
                folder_id = self.config.destination.root_folder_id
            try:
                result = self.drive_store.upload_file(folder_id, output_path, name=item.destination_name)
                item.remote_link = result.view_link
            except (MediaShiftError, OSError) as e:
                failures.append(f"Google Drive upload failed: {e}")

        if self.config.transcode.publish_to_source_bucket:
            try:
                self.source_store.upload_file(output_path, item.destination_key)
            except (MediaShiftError, OSError) as e:
                failures.append(f"S3 upload failed: {e}")

        item.published = not failures
        for failure in failures:
            self.error_log.append(item.source_key, failure)

    def _cleanup(self, item: WorkItem) -> None:
        self._transition(item, ItemStatus.CLEANING_UP)
        # A pre-existing input that failed to transcode stays for inspection
        if item.fetched_this_run or item.transcoded:
            self.housekeeper.remove_file(self.local_input_path(item))
        if item.publish_attempted or not item.transcoded:
            self.housekeeper.remove_file(self.local_output_path(item))

    # ------------------------------------------------------------------ status

    def _transition(self, item: WorkItem, status: ItemStatus) -> None:
        previous = item.status
        item.status = status
        if self.config.logging.debug:
            self.logger.debug(f"ITEM_STATE: {item.source_key} {previous.value} -> {status.value}")
        self.event_bus.publish(ItemStatusChanged(item=item.model_copy(), previous=previous))

    def _fail(self, item: WorkItem, message: str) -> None:
        item.error_message = message
        self.logger.error(f"{item.source_key}: {message}")
        self.error_log.append(item.source_key, message)
        self._transition(item, ItemStatus.FAILED)
        self.event_bus.publish(ItemFailed(item=item, error_message=message))
