import json
import threading
import httplib2
import pytest
from unittest.mock import MagicMock, patch
from google.auth.exceptions import TransportError
from googleapiclient.errors import HttpError
from mediashift.domain.errors import (
    AuthSetupError,
    RemoteNotFound,
    RemotePermissionDenied,
    RemoteStoreError,
    TransientIOError,
)
from mediashift.infrastructure.drive_store import (
    FOLDER_MIME,
    DriveStore,
    escape_query_value,
    load_credentials,
)


def http_error(status):
    return HttpError(MagicMock(status=status, reason="reason"), b"")


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def store(service):
    return DriveStore(lambda: service, page_size=100, sleep=MagicMock())


def test_escape_query_value():
    assert escape_query_value("O'Brien\\clip") == "O\\'Brien\\\\clip"


def test_list_children_maps_records(store, service):
    files = service.files.return_value
    files.list.return_value.execute.return_value = {
        "files": [
            {"id": "f1", "name": "a.mp4", "mimeType": "video/mp4", "parents": ["root"]},
            {"id": "d1", "name": "camera-1", "mimeType": FOLDER_MIME},
        ],
        "nextPageToken": "tok2",
    }

    page = store.list_children("root", page_token="tok1")

    assert [r.id for r in page.records] == ["f1", "d1"]
    assert page.records[1].parent_id == "root"
    assert page.records[1].mime_type == FOLDER_MIME
    assert page.next_page_token == "tok2"
    kwargs = files.list.call_args.kwargs
    assert kwargs["q"] == "'root' in parents and trashed=false"
    assert kwargs["pageToken"] == "tok1"
    assert kwargs["pageSize"] == 100
    assert kwargs["supportsAllDrives"] is True


def test_find_child_query_filters(store, service):
    files = service.files.return_value
    files.list.return_value.execute.return_value = {"files": []}

    assert store.find_child("root", "camera-1", folders_only=True) is None

    q = files.list.call_args.kwargs["q"]
    assert "name='camera-1'" in q
    assert f"mimeType='{FOLDER_MIME}'" in q


def test_file_exists(store, service):
    service.files.return_value.list.return_value.execute.return_value = {
        "files": [{"id": "f1", "name": "a_converted.mp4"}]
    }
    assert store.file_exists("folder", "a_converted.mp4") is True


@pytest.mark.parametrize("status,error_type", [
    (404, RemoteNotFound),
    (403, RemotePermissionDenied),
])
def test_http_errors_are_classified(store, service, status, error_type):
    service.files.return_value.delete.return_value.execute.side_effect = http_error(status)
    with pytest.raises(error_type):
        store.delete("f1")


def test_other_http_errors_are_generic(store, service):
    service.files.return_value.get.return_value.execute.side_effect = http_error(500)
    with pytest.raises(RemoteStoreError) as excinfo:
        store.get_metadata("f1")
    assert not isinstance(excinfo.value, (RemoteNotFound, RemotePermissionDenied))
    assert excinfo.value.status == 500


@pytest.mark.parametrize("error", [
    ConnectionResetError("reset by peer"),
    TimeoutError("timed out"),
    TransportError("token endpoint unreachable"),
    httplib2.ServerNotFoundError("www.googleapis.com"),
])
def test_network_errors_become_remote_store_errors(store, service, error):
    service.files.return_value.list.return_value.execute.side_effect = error
    with pytest.raises(RemoteStoreError) as excinfo:
        store.list_children("root")
    assert excinfo.value.status is None
    assert not isinstance(excinfo.value, (RemoteNotFound, RemotePermissionDenied))


def test_find_or_create_folder_reuses_existing(store, service):
    files = service.files.return_value
    files.list.return_value.execute.return_value = {"files": [{"id": "d1", "name": "camera-1"}]}

    assert store.find_or_create_folder("root", "camera-1") == "d1"
    files.create.assert_not_called()


def test_find_or_create_folder_creates_missing(store, service):
    files = service.files.return_value
    files.list.return_value.execute.return_value = {"files": []}
    files.create.return_value.execute.return_value = {"id": "new-id", "name": "camera-9"}

    assert store.find_or_create_folder("root", "camera-9") == "new-id"
    body = files.create.call_args.kwargs["body"]
    assert body == {"name": "camera-9", "mimeType": FOLDER_MIME, "parents": ["root"]}


def test_update_metadata(store, service):
    files = service.files.return_value
    store.update_metadata("f1", trashed=True)
    assert files.update.call_args.kwargs["body"] == {"trashed": True}

    store.update_metadata("f2", name="clip_B.mp4")
    assert files.update.call_args.kwargs["body"] == {"name": "clip_B.mp4"}


def test_update_metadata_without_changes_is_noop(store, service):
    store.update_metadata("f1")
    service.files.return_value.update.assert_not_called()


@patch("mediashift.infrastructure.drive_store.MediaFileUpload")
def test_upload_retries_transient_errors(mock_media, store, service, tmp_path):
    path = tmp_path / "a_converted.mp4"
    path.write_bytes(b"data")
    request = service.files.return_value.create.return_value
    request.next_chunk.side_effect = [
        http_error(503),
        (None, {"id": "f1", "webViewLink": "https://drive/f1"}),
    ]

    result = store.upload_file("folder", path)

    assert result.id == "f1"
    assert result.view_link == "https://drive/f1"
    store._sleep.assert_called_once_with(2)
    assert service.files.return_value.create.call_args.kwargs["body"] == {
        "name": "a_converted.mp4", "parents": ["folder"]
    }
    assert mock_media.call_args.kwargs["mimetype"] == "video/mp4"


@patch("mediashift.infrastructure.drive_store.MediaFileUpload")
def test_upload_permanent_error(mock_media, store, service, tmp_path):
    service.files.return_value.create.return_value.next_chunk.side_effect = http_error(400)
    with pytest.raises(TransientIOError):
        store.upload_file("folder", tmp_path / "a.mp4")


@patch("mediashift.infrastructure.drive_store.MediaFileUpload")
def test_upload_gives_up_after_retries(mock_media, service, tmp_path):
    store = DriveStore(lambda: service, upload_retries=2, sleep=MagicMock())
    service.files.return_value.create.return_value.next_chunk.side_effect = http_error(429)

    with pytest.raises(TransientIOError):
        store.upload_file("folder", tmp_path / "a.mp4")
    assert store._sleep.call_count == 2


def test_one_service_per_thread():
    built = []

    def factory():
        service = MagicMock()
        built.append(service)
        return service

    store = DriveStore(factory)
    first = store.service
    assert store.service is first

    seen = []
    thread = threading.Thread(target=lambda: seen.append(store.service))
    thread.start()
    thread.join()

    assert len(built) == 2
    assert seen[0] is not first


def test_load_credentials_service_account(tmp_path):
    key = tmp_path / "sa.json"
    key.write_text(json.dumps({"type": "service_account", "client_email": "x@y"}))

    with patch("mediashift.infrastructure.drive_store.service_account.Credentials") as sa:
        creds = load_credentials(key, tmp_path / "tokens.json")

    assert creds is sa.from_service_account_info.return_value


def test_load_credentials_without_tokens(tmp_path):
    with pytest.raises(AuthSetupError):
        load_credentials(tmp_path / "missing.json", tmp_path / "tokens.json")


def test_load_credentials_refreshes_expired_tokens(tmp_path):
    tokens = tmp_path / "tokens.json"
    tokens.write_text("{}")
    creds = MagicMock(valid=False, expired=True, refresh_token="r")
    creds.to_json.return_value = '{"token": "new"}'

    with patch("mediashift.infrastructure.drive_store.Credentials") as cls, \
            patch("mediashift.infrastructure.drive_store.Request"):
        cls.from_authorized_user_file.return_value = creds
        assert load_credentials(tmp_path / "missing.json", tokens) is creds

    creds.refresh.assert_called_once()
    assert tokens.read_text() == '{"token": "new"}'


def test_load_credentials_unrefreshable_tokens(tmp_path):
    tokens = tmp_path / "tokens.json"
    tokens.write_text("{}")
    creds = MagicMock(valid=False, expired=False, refresh_token=None)

    with patch("mediashift.infrastructure.drive_store.Credentials") as cls:
        cls.from_authorized_user_file.return_value = creds
        with pytest.raises(AuthSetupError):
            load_credentials(tmp_path / "missing.json", tokens)
