from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    CHECKING_DESTINATION = "CHECKING_DESTINATION"
    FETCHING = "FETCHING"
    TRANSCODING = "TRANSCODING"
    PUBLISHING = "PUBLISHING"
    CLEANING_UP = "CLEANING_UP"
    DONE = "DONE"
    SKIPPED_EXISTING = "SKIPPED_EXISTING"
    FAILED = "FAILED"


class WorkItem(BaseModel):
    source_key: str
    category_key: str
    destination_key: str
    destination_name: str
    status: ItemStatus = ItemStatus.PENDING
    fetched_this_run: bool = False
    transcoded: bool = False
    publish_attempted: bool = False
    published: bool = False
    error_message: Optional[str] = None
    remote_link: Optional[str] = None


class RemoteFileRecord(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    mime_type: Optional[str] = None


# name -> records, first element is the first-seen instance
DuplicateGroups = Dict[str, List[RemoteFileRecord]]


class MutationOutcome(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    OTHER_ERROR = "other_error"


class BatchMutationResult(BaseModel):
    success: int = 0
    not_found: int = 0
    permission_denied: int = 0
    other_errors: int = 0

    @property
    def total(self) -> int:
        return self.success + self.not_found + self.permission_denied + self.other_errors

    def record(self, outcome: MutationOutcome) -> None:
        if outcome == MutationOutcome.SUCCESS:
            self.success += 1
        elif outcome == MutationOutcome.NOT_FOUND:
            self.not_found += 1
        elif outcome == MutationOutcome.PERMISSION_DENIED:
            self.permission_denied += 1
        else:
            self.other_errors += 1


class TranscodeProgress(BaseModel):
    percent_complete: float = 0.0
    elapsed_time: float = 0.0
    frame_count: int = 0
    fps: float = 0.0
    speed_multiplier: float = 0.0
    estimated_time_remaining: float = 0.0


class TranscodeResult(BaseModel):
    exit_code: int = 0
    duration: float = 0.0
    wall_seconds: float = 0.0


class RunSummary(BaseModel):
    total: int = 0
    done: int = 0
    skipped: int = 0
    failed: int = 0
    failed_keys: List[str] = Field(default_factory=list)
