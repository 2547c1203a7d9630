import logging
from typing import Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel, Field

from mediashift.domain.errors import RemoteStoreError
from mediashift.domain.events import ScanFinished
from mediashift.domain.models import DuplicateGroups, RemoteFileRecord
from mediashift.infrastructure.drive_store import FOLDER_MIME
from mediashift.infrastructure.event_bus import EventBus

if TYPE_CHECKING:
    from mediashift.infrastructure.drive_store import DriveStore


class ScanResult(BaseModel):
    groups: DuplicateGroups = Field(default_factory=dict)
    files_scanned: int = 0
    folders_scanned: int = 0
    # False when some subtree listing failed; the groups are then non-exhaustive
    complete: bool = True

    @property
    def has_duplicates(self) -> bool:
        return bool(self.groups)

    @property
    def duplicate_count(self) -> int:
        return sum(len(records) - 1 for records in self.groups.values())


class DuplicateScanner:
    """Walks a Drive folder tree and groups files sharing a display name."""

    def __init__(self, drive_store: "DriveStore", event_bus: Optional[EventBus] = None):
        self.drive_store = drive_store
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def scan(self, root_folder_id: str) -> ScanResult:
        result = ScanResult()
        files: List[RemoteFileRecord] = []
        self._walk(root_folder_id, files, result)
        result.files_scanned = len(files)
        result.groups = self.group_by_name(files)

        self.logger.info(
            f"SCAN_END: files={result.files_scanned} folders={result.folders_scanned} "
            f"groups={len(result.groups)} complete={result.complete}"
        )
        if self.event_bus:
            self.event_bus.publish(ScanFinished(
                files_scanned=result.files_scanned,
                folders_scanned=result.folders_scanned,
                duplicate_groups=len(result.groups),
                complete=result.complete,
            ))
        return result

    def _walk(self, folder_id: str, files: List[RemoteFileRecord], result: ScanResult) -> None:
        result.folders_scanned += 1
        page_token = None
        while True:
            try:
                page = self.drive_store.list_children(folder_id, page_token=page_token)
            except RemoteStoreError as e:
                # Keep what this subtree produced so far
                self.logger.warning(f"Listing of folder {folder_id} failed, result is partial: {e}")
                result.complete = False
                return
            for record in page.records:
                if record.mime_type == FOLDER_MIME:
                    self._walk(record.id, files, result)
                else:
                    files.append(record)
            page_token = page.next_page_token
            if not page_token:
                return

    @staticmethod
    def group_by_name(files: List[RemoteFileRecord]) -> DuplicateGroups:
        """name -> records in first-seen order, only for names seen at least twice."""
        occurrences: Dict[str, List[RemoteFileRecord]] = {}
        groups: DuplicateGroups = {}
        for record in files:
            records = occurrences.setdefault(record.name, [])
            records.append(record)
            if len(records) == 2:
                groups[record.name] = records
        return groups
