from pathlib import Path
from typing import List, Sequence, TypeVar

from mediashift.domain.errors import ConfigError, WorkListReadError

T = TypeVar("T")


def parse_work_list(text: str) -> List[str]:
    """Comma separated keys; tokens are trimmed and empty ones dropped. Order and repeats are kept."""
    return [token.strip() for token in text.split(",") if token.strip()]


def read_work_list(path: Path) -> List[str]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise WorkListReadError(f"Cannot read work list {path}: {exc}") from exc
    return parse_work_list(text)


def validate_shard(instance_index: int, total_instances: int) -> None:
    if total_instances < 1:
        raise ConfigError(f"total_instances must be >= 1 (got {total_instances})")
    if not 0 <= instance_index < total_instances:
        raise ConfigError(
            f"instance_index must be in [0, {total_instances}) (got {instance_index})"
        )


def partition_work_list(items: Sequence[T], instance_index: int, total_instances: int) -> List[T]:
    """Items whose original index modulo total_instances equals instance_index.

    Over all instances the partitions are disjoint and together cover the input.
    """
    validate_shard(instance_index, total_instances)
    return [item for index, item in enumerate(items) if index % total_instances == instance_index]
