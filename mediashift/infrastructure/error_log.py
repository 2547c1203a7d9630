import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

HEADER_PREFIX = "Transfer Error Log - Created at"


class ErrorLog:
    """Append-only ledger of source keys that did not complete.

    The file is human-inspectable and doubles as a work list for a retry run:
    first line is a creation header, then one ``key`` or ``key: message`` per line.
    """

    def __init__(self, path: Path, clock: Callable[[], datetime] = datetime.now):
        self.path = Path(path)
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    def ensure_initialized(self) -> bool:
        """Creates the file with a timestamped header if absent. Returns True if created."""
        if self.path.exists():
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{HEADER_PREFIX} {self._clock().isoformat()}\n")
        except OSError as e:
            self.logger.error(f"Failed to create error log {self.path}: {e}")
            return False
        self.logger.info(f"Created error log file: {self.path}")
        return True

    def append(self, source_key: str, message: Optional[str] = None) -> None:
        # Re-checked on every call: the file may be removed mid-run
        self.ensure_initialized()
        line = f"{source_key}: {message}" if message else source_key
        line = line.replace("\n", " ")
        try:
            with open(self.path, "a") as f:
                f.write(f"{line}\n")
        except OSError as e:
            self.logger.error(f"Failed to write to error log {self.path}: {e}")
            return
        self.logger.warning(f"ERROR_LOG: {line}")

    def failed_keys(self) -> List[str]:
        """Source keys recorded in the log, first-seen order, without duplicates."""
        if not self.path.exists():
            return []
        keys: List[str] = []
        seen = set()
        for raw in self.path.read_text().splitlines():
            if not raw.strip() or raw.startswith(HEADER_PREFIX):
                continue
            key = raw.split(": ", 1)[0].strip()
            if key and key not in seen:
                seen.add(key)
                keys.append(key)
        return keys

    def archive(self) -> Optional[Path]:
        """Moves the current log aside (``<name>.prev``) so a retry run starts a fresh one."""
        if not self.path.exists():
            return None
        target = self.path.with_name(self.path.name + ".prev")
        self.path.replace(target)
        self.logger.info(f"Archived error log to {target}")
        return target
