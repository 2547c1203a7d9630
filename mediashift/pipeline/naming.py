import posixpath
import re
from typing import Optional

from mediashift.config.models import TranscodeConfig, WorkConfig
from mediashift.domain.models import WorkItem


def derive_category(source_key: str, pattern: str, template: str, fallback: str) -> str:
    """Destination subfolder for a key. Pure: the same key always routes the same way."""
    match = re.search(pattern, source_key)
    if not match:
        return fallback
    return template.format(*match.groups()) if match.groups() else match.group(0)


def derive_destination_key(source_key: str, suffix: str = "_converted", extension: str = ".mp4") -> str:
    """'videos/a.mov' -> 'videos/a_converted.mp4'; directories are kept."""
    directory, filename = posixpath.split(source_key)
    stem = filename.rsplit(".", 1)[0] if "." in filename.lstrip(".") else filename
    return posixpath.join(directory, f"{stem}{suffix}{extension}")


def build_work_item(
    source_key: str,
    work: Optional[WorkConfig] = None,
    transcode: Optional[TranscodeConfig] = None,
) -> WorkItem:
    work = work or WorkConfig()
    transcode = transcode or TranscodeConfig()
    destination_key = derive_destination_key(
        source_key, transcode.output_suffix, transcode.output_extension
    )
    return WorkItem(
        source_key=source_key,
        category_key=derive_category(
            source_key, work.category_pattern, work.category_template, work.fallback_category
        ),
        destination_key=destination_key,
        destination_name=posixpath.basename(destination_key),
    )
