import io
import pytest
import yaml
from pathlib import Path
from mediashift.config.models import AppConfig
from mediashift.domain import events as ev
from mediashift.domain.errors import RemoteNotFound, TranscodeError
from mediashift.domain.models import RemoteFileRecord, TranscodeProgress, TranscodeResult
from mediashift.infrastructure.drive_store import UploadResult
from mediashift.infrastructure.error_log import ErrorLog
from mediashift.infrastructure.event_bus import EventBus
from mediashift.pipeline.orchestrator import Orchestrator

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig with a temporary work dir and error log."""
    return AppConfig(
        source={"bucket": "media-bucket", "region": "eu-west-1"},
        destination={"root_folder_id": "root-folder"},
        work={
            "work_dir": str(tmp_path / "work"),
            "error_log_path": str(tmp_path / "error_transcode.txt"),
        },
        logging={"log_path": str(tmp_path / "logs" / "mediashift.log")},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Writes a small YAML config and returns its path."""
    config_file = tmp_path / "mediashift.yaml"
    config_file.write_text(yaml.safe_dump({
        "source": {"bucket": "yaml-bucket"},
        "transcode": {"encoder": "CPU", "cpu_args": ["-preset", "fast"]},
        "shard": {"instance_index": 1, "total_instances": 3},
        "dedupe": {"batch_size": 5},
    }))
    return config_file


# ============================================================================
# Event Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()


ALL_EVENT_TYPES = [
    ev.ItemStatusChanged, ev.ItemCompleted, ev.ItemSkipped, ev.ItemFailed,
    ev.TranscodeProgressUpdated, ev.RunStarted, ev.RunFinished,
    ev.ScanFinished, ev.BatchProgress, ev.ActionMessage,
]


@pytest.fixture
def recorded_events(event_bus):
    """List that receives every event published on event_bus."""
    received = []
    for event_type in ALL_EVENT_TYPES:
        event_bus.subscribe(event_type, received.append)
    return received


# ============================================================================
# Store / transcoder fakes
# ============================================================================

class FakeSourceStore:
    """In-memory S3 stand-in recording every call."""

    def __init__(self, objects=None, existing=None):
        self.objects = dict(objects or {})
        self.existing = set(existing or [])
        self.head_calls = []
        self.fetches = []
        self.uploads = []

    def head_exists(self, key):
        self.head_calls.append(key)
        return key in self.existing

    def get_stream(self, key):
        self.fetches.append(key)
        if key not in self.objects:
            raise RemoteNotFound(f"s3://bucket/{key} not found", status=404)
        data = self.objects[key]
        return io.BytesIO(data), len(data)

    def upload_file(self, path, key, content_type="video/mp4"):
        self.uploads.append((Path(path), key))
        self.existing.add(key)


class FakeDriveStore:
    """Category folders by name under one root; files as (folder_id, name)."""

    def __init__(self, folders=None, files=None):
        self.folders = dict(folders or {})
        self.files = set(files or [])
        self.uploads = []
        self.created_folders = []

    def find_child(self, parent_id, name, folders_only=False):
        if folders_only:
            if name in self.folders:
                return RemoteFileRecord(id=self.folders[name], name=name, parent_id=parent_id)
            return None
        if (parent_id, name) in self.files:
            return RemoteFileRecord(id=f"{parent_id}/{name}", name=name, parent_id=parent_id)
        return None

    def file_exists(self, parent_id, name):
        return (parent_id, name) in self.files

    def find_or_create_folder(self, parent_id, name):
        if name not in self.folders:
            self.folders[name] = f"folder-{name}"
            self.created_folders.append(name)
        return self.folders[name]

    def upload_file(self, parent_id, path, name=None, mime_hint=None):
        name = name or Path(path).name
        self.uploads.append((parent_id, name))
        self.files.add((parent_id, name))
        return UploadResult(id=f"id-{name}", view_link=f"https://drive.example/{name}")


class FakeTranscoder:
    """Writes a small output file, or fails with the configured exit code."""

    def __init__(self, exit_code=0):
        self.exit_code = exit_code
        self.calls = []

    def transcode(self, input_path, output_path, encoder, encoder_args=None, on_progress=None):
        self.calls.append((Path(input_path), Path(output_path), encoder, list(encoder_args or [])))
        if self.exit_code != 0:
            Path(output_path).write_bytes(b"half")
            raise TranscodeError(exit_code=self.exit_code, tail=["Conversion failed!"])
        Path(output_path).write_bytes(b"converted")
        if on_progress:
            on_progress(TranscodeProgress(percent_complete=100.0))
        return TranscodeResult(exit_code=0, duration=10.0, wall_seconds=1.0)


@pytest.fixture
def source_store():
    return FakeSourceStore(objects={
        "camera-1/a.mov": b"a-bytes",
        "camera-2/b.mov": b"b-bytes",
        "misc/c.mov": b"c-bytes",
    })


@pytest.fixture
def drive_store():
    return FakeDriveStore()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def failing_transcoder():
    return FakeTranscoder(exit_code=1)


@pytest.fixture
def error_log(app_config):
    return ErrorLog(Path(app_config.work.error_log_path))


@pytest.fixture
def make_orchestrator(app_config, event_bus, source_store, transcoder, error_log, drive_store):
    """Factory building an Orchestrator from the fakes; keyword overrides replace parts."""
    def _make(**overrides):
        parts = {
            "config": app_config,
            "event_bus": event_bus,
            "source_store": source_store,
            "transcoder": transcoder,
            "error_log": error_log,
            "drive_store": drive_store,
        }
        parts.update(overrides)
        return Orchestrator(**parts)
    return _make
