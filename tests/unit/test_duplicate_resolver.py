import threading
import pytest
from unittest.mock import MagicMock
from mediashift.domain.errors import (
    RemoteNotFound,
    RemotePermissionDenied,
    RemoteStoreError,
    UnsupportedStrategyError,
)
from mediashift.domain.events import BatchProgress
from mediashift.domain.models import RemoteFileRecord
from mediashift.pipeline.duplicate_resolver import (
    DuplicateResolver,
    DuplicateStrategy,
    collect_targets,
    parse_strategy,
    suffixed_name,
)


def rec(id, name="clip.mp4", parent="P"):
    return RemoteFileRecord(id=id, name=name, parent_id=parent, mime_type="video/mp4")


@pytest.fixture
def drive():
    store = MagicMock()
    store.get_metadata.side_effect = lambda file_id: {"id": file_id, "name": f"name-{file_id}", "trashed": False}
    return store


def make_resolver(drive, approve=None, **kwargs):
    kwargs.setdefault("sleep", MagicMock())
    return DuplicateResolver(drive, approve or (lambda summary: True), **kwargs)


def test_collect_targets_never_includes_first_record():
    groups = {
        "clip.mp4": [rec("id1"), rec("id2"), rec("id3")],
        "other.mp4": [rec("o1", "other.mp4"), rec("o2", "other.mp4")],
    }
    assert [r.id for r in collect_targets(groups)] == ["id2", "id3", "o2"]


def test_delete_targets_all_but_first(drive):
    groups = {"clip.mp4": [rec("id1"), rec("id2"), rec("id3")]}

    report = make_resolver(drive).resolve(groups, DuplicateStrategy.KEEP_FIRST_DELETE, refresh=False)

    deleted = sorted(call.args[0] for call in drive.delete.call_args_list)
    assert deleted == ["id2", "id3"]
    assert report.result.success == 2
    assert report.targets == 2


def test_trash_sets_trashed_flag(drive):
    groups = {"clip.mp4": [rec("id1"), rec("id2")]}

    make_resolver(drive).resolve(groups, DuplicateStrategy.KEEP_FIRST_TRASH, refresh=False)

    drive.update_metadata.assert_called_once_with("id2", trashed=True)
    drive.delete.assert_not_called()


def test_declined_confirmation_mutates_nothing(drive):
    approve = MagicMock(return_value=False)
    groups = {"clip.mp4": [rec("id1"), rec("id2"), rec("id3")]}

    report = make_resolver(drive, approve).resolve(groups, DuplicateStrategy.KEEP_FIRST_DELETE, refresh=False)

    approve.assert_called_once()
    assert "2 duplicate files" in approve.call_args.args[0]
    assert report.approved is False
    assert report.result.total == 0
    drive.delete.assert_not_called()
    drive.update_metadata.assert_not_called()


def test_outcomes_are_classified_per_item(drive):
    errors = {
        "id2": RemoteNotFound("gone", status=404),
        "id3": RemotePermissionDenied("nope", status=403),
        "id4": RemoteStoreError("boom", status=500),
    }

    def delete(file_id):
        if file_id in errors:
            raise errors[file_id]

    drive.delete.side_effect = delete
    groups = {"clip.mp4": [rec("id1"), rec("id2"), rec("id3"), rec("id4"), rec("id5")]}

    result = make_resolver(drive).resolve(groups, DuplicateStrategy.KEEP_FIRST_DELETE, refresh=False).result

    assert (result.success, result.not_found, result.permission_denied, result.other_errors) == (1, 1, 1, 1)
    assert result.total == 4


def test_batches_are_delayed_and_reported(drive, event_bus):
    progress = []
    event_bus.subscribe(BatchProgress, progress.append)
    sleep = MagicMock()
    groups = {"clip.mp4": [rec("keep")] + [rec(f"t{i}") for i in range(5)]}

    resolver = make_resolver(drive, event_bus=event_bus, batch_size=2, batch_delay_s=0.5, sleep=sleep)
    result = resolver.resolve(groups, DuplicateStrategy.KEEP_FIRST_DELETE, refresh=False).result

    assert result.success == 5
    assert [p.processed for p in progress] == [2, 4, 5]
    assert progress[-1].result.success == 5
    assert sleep.call_count == 2
    sleep.assert_called_with(0.5)


def test_refresh_drops_vanished_records(drive):
    def metadata(file_id):
        if file_id == "id1":
            raise RemoteNotFound("gone", status=404)
        return {"id": file_id, "trashed": file_id == "s2"}

    drive.get_metadata.side_effect = metadata
    groups = {
        "clip.mp4": [rec("id1"), rec("id2"), rec("id3")],
        "solo.mp4": [rec("s1", "solo.mp4"), rec("s2", "solo.mp4")],
    }

    refreshed = make_resolver(drive).refresh(groups)

    assert list(refreshed) == ["clip.mp4"]
    assert [r.id for r in refreshed["clip.mp4"]] == ["id2", "id3"]


def test_refresh_keeps_records_on_lookup_errors(drive):
    drive.get_metadata.side_effect = RemoteStoreError("timeout", status=503)
    groups = {"clip.mp4": [rec("id1"), rec("id2")]}

    assert make_resolver(drive).refresh(groups) == groups


def test_refresh_keeps_records_whose_lookup_times_out(drive):
    release = threading.Event()

    def metadata(file_id):
        if file_id == "id2":
            release.wait(5)
        return {"id": file_id, "trashed": False}

    drive.get_metadata.side_effect = metadata
    groups = {"clip.mp4": [rec("id1"), rec("id2")]}

    try:
        refreshed = make_resolver(drive, verify_timeout_s=0.05).refresh(groups)
    finally:
        release.set()

    assert refreshed == groups


def test_resolve_refreshes_before_mutating(drive):
    drive.get_metadata.side_effect = lambda file_id: {"id": file_id, "trashed": file_id == "id1"}
    groups = {"clip.mp4": [rec("id1"), rec("id2"), rec("id3")]}

    make_resolver(drive).resolve(groups, DuplicateStrategy.KEEP_FIRST_DELETE)

    # id1 was trashed meanwhile, so id2 becomes the keeper
    drive.delete.assert_called_once_with("id3")


def test_group_shrunk_to_one_is_not_touched(drive):
    drive.get_metadata.side_effect = lambda file_id: {"id": file_id, "trashed": file_id == "id2"}
    approve = MagicMock(return_value=True)

    report = make_resolver(drive, approve).resolve(
        {"clip.mp4": [rec("id1"), rec("id2")]}, DuplicateStrategy.KEEP_FIRST_DELETE
    )

    assert report.groups == 0
    approve.assert_not_called()
    drive.delete.assert_not_called()


def test_list_only_mutates_nothing(drive):
    approve = MagicMock()
    groups = {"clip.mp4": [rec("id1"), rec("id2")]}

    report = make_resolver(drive, approve).resolve(groups, DuplicateStrategy.LIST_ONLY)

    assert report.targets == 1
    approve.assert_not_called()
    drive.get_metadata.assert_not_called()
    drive.delete.assert_not_called()
    drive.update_metadata.assert_not_called()


def test_rename_with_parent_suffix(drive):
    folders = {"A": "camera-1", "B": "camera-2"}
    drive.get_metadata.side_effect = lambda file_id: {"id": file_id, "name": folders[file_id]}
    approve = MagicMock()
    groups = {"clip.mp4": [rec("id1", parent="A"), rec("id2", parent="B"), rec("id3", parent="B")]}

    result = make_resolver(drive, approve).resolve(
        groups, DuplicateStrategy.RENAME_WITH_PARENT_SUFFIX, refresh=False
    ).result

    assert result.success == 2
    assert [c.args for c in drive.update_metadata.call_args_list] == [("id2",), ("id3",)]
    assert [c.kwargs["name"] for c in drive.update_metadata.call_args_list] == [
        "clip_camera-2.mp4", "clip_camera-2.mp4"
    ]
    # Parent name is looked up once
    assert drive.get_metadata.call_count == 1
    approve.assert_not_called()


def test_rename_without_parent_counts_as_error(drive):
    groups = {"clip.mp4": [rec("id1"), rec("id2", parent=None)]}
    result = make_resolver(drive).rename_with_parent_suffix(collect_targets(groups))
    assert result.other_errors == 1


def test_keep_newest_is_unsupported(drive):
    with pytest.raises(UnsupportedStrategyError):
        make_resolver(drive).resolve({"a": [rec("1"), rec("2")]}, DuplicateStrategy.KEEP_NEWEST)
    drive.delete.assert_not_called()


def test_parse_strategy():
    assert parse_strategy("keep-first-trash") == DuplicateStrategy.KEEP_FIRST_TRASH
    assert parse_strategy(" LIST_ONLY ") == DuplicateStrategy.LIST_ONLY
    with pytest.raises(UnsupportedStrategyError):
        parse_strategy("keep-newest")
    with pytest.raises(UnsupportedStrategyError):
        parse_strategy("shred-everything")


def test_suffixed_name():
    assert suffixed_name("clip.mp4", "B") == "clip_B.mp4"
    assert suffixed_name("noext", "B") == "noext_B"
