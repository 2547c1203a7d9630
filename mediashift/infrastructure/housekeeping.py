import logging
import os
from pathlib import Path

PARTIAL_SUFFIX = ".part"


class HousekeepingService:
    """Service for cleaning up local artifacts and leftovers of interrupted runs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_partial_downloads(self, directory: Path) -> int:
        """Recursively removes all .part files (interrupted fetches). Returns count removed."""
        removed = 0
        if not Path(directory).exists():
            return removed
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(PARTIAL_SUFFIX):
                    try:
                        (Path(root) / file).unlink()
                        removed += 1
                    except OSError:
                        pass
        return removed

    def remove_file(self, path: Path) -> bool:
        """Deletes a local artifact if present. Returns True if a file was removed."""
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Failed to delete local file {path}: {e}")
            return False
        self.logger.info(f"Deleted local file: {path}")
        return True
