"""Exception taxonomy for the transfer pipeline and the duplicate reconciler.

Run-fatal errors (``ConfigError``, ``WorkListReadError``) abort before any item
is processed. Everything else is caught at the item or batch boundary.
"""

from typing import List, Optional


class MediaShiftError(Exception):
    """Base class for all mediashift errors."""


class ConfigError(MediaShiftError):
    """Invalid run configuration (e.g. bad shard parameters)."""


class UnsupportedStrategyError(ConfigError):
    """Duplicate resolution strategy that is named but not implemented."""


class WorkListReadError(MediaShiftError):
    """Work list file is missing or unreadable."""


class TransientIOError(MediaShiftError):
    """Fetch or upload failure; logged per item, the batch continues."""


class AuthSetupError(MediaShiftError):
    """Destination store credentials could not be loaded or refreshed."""


class RemoteStoreError(MediaShiftError):
    """Remote store call failed for a reason we do not classify further."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RemoteNotFound(RemoteStoreError):
    """Remote object does not exist (or is no longer visible)."""


class RemotePermissionDenied(RemoteStoreError):
    """Caller is not allowed to read or mutate the remote object."""


class TranscodeError(MediaShiftError):
    """ffmpeg exited non-zero or could not be spawned."""

    def __init__(
        self,
        exit_code: Optional[int] = None,
        reason: Optional[str] = None,
        tail: Optional[List[str]] = None,
    ):
        self.exit_code = exit_code
        self.reason = reason
        self.tail = list(tail or [])
        if reason is not None:
            message = f"ffmpeg could not be started: {reason}"
        else:
            message = f"ffmpeg exited with code {exit_code}"
        super().__init__(message)
