"""Confirmation-gated mutations over duplicate groups found by the scanner.

The first-seen record of a group is the keeper under every strategy; only the
later records are ever targeted. Destructive strategies (delete, trash) ask the
injected ``approve`` collaborator once for the whole target list and then run
in small concurrent batches separated by a delay to stay under the Drive rate
limits. Each target's outcome is classified on its own, so one failure never
aborts its batch.
"""

import concurrent.futures
import logging
import posixpath
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel, Field

from mediashift.domain.errors import (
    RemoteNotFound,
    RemotePermissionDenied,
    UnsupportedStrategyError,
)
from mediashift.domain.events import BatchProgress
from mediashift.domain.models import BatchMutationResult, DuplicateGroups, MutationOutcome, RemoteFileRecord
from mediashift.infrastructure.event_bus import EventBus

if TYPE_CHECKING:
    from mediashift.infrastructure.drive_store import DriveStore

ApproveCallback = Callable[[str], bool]


class DuplicateStrategy(str, Enum):
    KEEP_FIRST_DELETE = "keep-first-delete"
    KEEP_FIRST_TRASH = "keep-first-trash"
    RENAME_WITH_PARENT_SUFFIX = "rename-with-parent-suffix"
    LIST_ONLY = "list-only"
    KEEP_NEWEST = "keep-newest"

    @property
    def is_destructive(self) -> bool:
        return self in (DuplicateStrategy.KEEP_FIRST_DELETE, DuplicateStrategy.KEEP_FIRST_TRASH)


SUPPORTED_STRATEGIES = [
    DuplicateStrategy.KEEP_FIRST_DELETE,
    DuplicateStrategy.KEEP_FIRST_TRASH,
    DuplicateStrategy.RENAME_WITH_PARENT_SUFFIX,
    DuplicateStrategy.LIST_ONLY,
]


def parse_strategy(value: str) -> DuplicateStrategy:
    try:
        strategy = DuplicateStrategy(value.strip().lower().replace("_", "-"))
    except ValueError:
        choices = ", ".join(s.value for s in SUPPORTED_STRATEGIES)
        raise UnsupportedStrategyError(f"Unknown strategy '{value}'. Use one of: {choices}")
    if strategy not in SUPPORTED_STRATEGIES:
        raise UnsupportedStrategyError(f"Strategy '{strategy.value}' is not supported")
    return strategy


def collect_targets(groups: DuplicateGroups) -> List[RemoteFileRecord]:
    """Every record except the first of each group, in group order."""
    targets: List[RemoteFileRecord] = []
    for records in groups.values():
        targets.extend(records[1:])
    return targets


def suffixed_name(name: str, suffix: str) -> str:
    """'clip.mp4' + 'B' -> 'clip_B.mp4'."""
    stem, ext = posixpath.splitext(name)
    return f"{stem}_{suffix}{ext}"


class ResolutionReport(BaseModel):
    strategy: DuplicateStrategy
    groups: int = 0
    targets: int = 0
    approved: bool = True
    result: BatchMutationResult = Field(default_factory=BatchMutationResult)


class DuplicateResolver:
    """Applies one strategy to a set of duplicate groups."""

    def __init__(
        self,
        drive_store: "DriveStore",
        approve: ApproveCallback,
        event_bus: Optional[EventBus] = None,
        batch_size: int = 10,
        batch_delay_s: float = 1.0,
        verify_timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.drive_store = drive_store
        self.approve = approve
        self.event_bus = event_bus
        self.batch_size = max(1, batch_size)
        self.batch_delay_s = batch_delay_s
        self.verify_timeout_s = verify_timeout_s
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ refresh

    def refresh(self, groups: DuplicateGroups) -> DuplicateGroups:
        """Drops records that no longer exist; drops groups left with one record.

        A timed out or failed lookup keeps the record.
        """
        refreshed: DuplicateGroups = {}
        records = [r for group in groups.values() for r in group]
        alive: Dict[str, bool] = {}
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.batch_size)
        try:
            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                futures = {r.id: executor.submit(self._still_exists, r) for r in batch}
                for record_id, future in futures.items():
                    try:
                        alive[record_id] = future.result(timeout=self.verify_timeout_s)
                    except concurrent.futures.TimeoutError:
                        self.logger.warning(f"REFRESH_TIMEOUT: {record_id}, assuming it still exists")
                        alive[record_id] = True
        finally:
            executor.shutdown(wait=False)

        for name, group in groups.items():
            survivors = [r for r in group if alive.get(r.id, True)]
            if len(survivors) >= 2:
                refreshed[name] = survivors
        dropped = len(groups) - len(refreshed)
        if dropped:
            self.logger.info(f"REFRESH: {dropped} groups no longer have duplicates")
        return refreshed

    def _still_exists(self, record: RemoteFileRecord) -> bool:
        try:
            metadata = self.drive_store.get_metadata(record.id)
        except RemoteNotFound:
            return False
        except Exception as e:
            self.logger.warning(f"REFRESH_ERROR: {record.id} ({e}), assuming it still exists")
            return True
        return not metadata.get("trashed", False)

    # ------------------------------------------------------------------ resolve

    def resolve(
        self,
        groups: DuplicateGroups,
        strategy: DuplicateStrategy,
        refresh: bool = True,
    ) -> ResolutionReport:
        if strategy not in SUPPORTED_STRATEGIES:
            raise UnsupportedStrategyError(
                f"Strategy '{strategy.value}' is not supported: the metadata field and tie-break "
                f"that define 'newest' are not decided"
            )

        if refresh and strategy != DuplicateStrategy.LIST_ONLY:
            groups = self.refresh(groups)

        targets = collect_targets(groups)
        report = ResolutionReport(strategy=strategy, groups=len(groups), targets=len(targets))
        if strategy == DuplicateStrategy.LIST_ONLY or not targets:
            return report

        if strategy == DuplicateStrategy.RENAME_WITH_PARENT_SUFFIX:
            report.result = self.rename_with_parent_suffix(targets)
            return report

        verb = "Delete permanently" if strategy == DuplicateStrategy.KEEP_FIRST_DELETE else "Move to trash"
        summary = f"{verb} {len(targets)} duplicate files across {len(groups)} groups?"
        if not self.approve(summary):
            self.logger.info(f"RESOLVE_DECLINED: {strategy.value} targets={len(targets)}")
            report.approved = False
            return report

        if strategy == DuplicateStrategy.KEEP_FIRST_DELETE:
            report.result = self.apply_batches(targets, self.drive_store.delete, "delete")
        else:
            report.result = self.apply_batches(
                targets, lambda file_id: self.drive_store.update_metadata(file_id, trashed=True), "trash"
            )
        return report

    # ------------------------------------------------------------------ mutations

    def apply_batches(
        self,
        targets: List[RemoteFileRecord],
        mutate: Callable[[str], None],
        action: str,
    ) -> BatchMutationResult:
        result = BatchMutationResult()
        total = len(targets)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for start in range(0, total, self.batch_size):
                if start:
                    self._sleep(self.batch_delay_s)
                batch = targets[start:start + self.batch_size]
                futures = [executor.submit(self._mutate_one, mutate, record, action) for record in batch]
                for future in futures:
                    result.record(future.result())
                processed = min(start + self.batch_size, total)
                self.logger.info(f"BATCH: {action} {processed}/{total}")
                if self.event_bus:
                    self.event_bus.publish(BatchProgress(
                        action=action, processed=processed, total=total, result=result.model_copy()
                    ))
        self.logger.info(
            f"BATCH_END: {action} success={result.success} not_found={result.not_found} "
            f"permission_denied={result.permission_denied} other_errors={result.other_errors}"
        )
        return result

    def _mutate_one(self, mutate: Callable[[str], None], record: RemoteFileRecord, action: str) -> MutationOutcome:
        try:
            mutate(record.id)
        except RemoteNotFound:
            self.logger.warning(f"{action.upper()}_NOT_FOUND: {record.name} ({record.id})")
            return MutationOutcome.NOT_FOUND
        except RemotePermissionDenied:
            self.logger.warning(f"{action.upper()}_DENIED: {record.name} ({record.id})")
            return MutationOutcome.PERMISSION_DENIED
        except Exception as e:
            self.logger.error(f"{action.upper()}_ERROR: {record.name} ({record.id}): {e}")
            return MutationOutcome.OTHER_ERROR
        return MutationOutcome.SUCCESS

    def rename_with_parent_suffix(self, targets: List[RemoteFileRecord]) -> BatchMutationResult:
        """Renames each target to '<stem>_<parent folder name><ext>'. Reversible, no confirmation."""
        result = BatchMutationResult()
        parent_names: Dict[str, str] = {}
        for record in targets:
            outcome = self._rename_one(record, parent_names)
            result.record(outcome)
        if self.event_bus:
            self.event_bus.publish(BatchProgress(
                action="rename", processed=len(targets), total=len(targets), result=result.model_copy()
            ))
        return result

    def _rename_one(self, record: RemoteFileRecord, parent_names: Dict[str, str]) -> MutationOutcome:
        def rename(file_id: str):
            if not record.parent_id:
                raise ValueError(f"{record.name} has no parent folder")
            if record.parent_id not in parent_names:
                parent_names[record.parent_id] = self.drive_store.get_metadata(record.parent_id)["name"]
            new_name = suffixed_name(record.name, parent_names[record.parent_id])
            self.drive_store.update_metadata(file_id, name=new_name)
            self.logger.info(f"RENAMED: {record.name} -> {new_name} ({file_id})")

        return self._mutate_one(rename, record, "rename")
