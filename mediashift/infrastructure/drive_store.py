"""Google Drive adapter for the hierarchical destination store.

Only the calls the pipeline and the reconciler need are wrapped. HTTP errors
are mapped onto the remote error taxonomy (404 -> RemoteNotFound,
403 -> RemotePermissionDenied). googleapiclient service objects are not
thread-safe, so one service is built per thread from the shared credentials.
"""

import json
import logging
import mimetypes
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httplib2
from pydantic import BaseModel, Field
from google.auth.exceptions import GoogleAuthError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from mediashift.config.models import DestinationConfig
from mediashift.domain.errors import (
    AuthSetupError,
    RemoteNotFound,
    RemotePermissionDenied,
    RemoteStoreError,
    TransientIOError,
)
from mediashift.domain.models import RemoteFileRecord

SCOPES = ["https://www.googleapis.com/auth/drive"]
FOLDER_MIME = "application/vnd.google-apps.folder"
DEFAULT_MIME = "video/mp4"
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}
# Raised by the transport below HttpError (socket, httplib2, auth refresh)
NETWORK_ERRORS = (OSError, TransportError, httplib2.HttpLib2Error)
LIST_FIELDS = "nextPageToken, files(id, name, mimeType, parents)"


class ListPage(BaseModel):
    records: List[RemoteFileRecord] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class UploadResult(BaseModel):
    id: str
    view_link: Optional[str] = None


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def classify_http_error(error: HttpError, context: str) -> RemoteStoreError:
    status = getattr(error.resp, "status", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        status = None
    message = f"{context}: {error}"
    if status == 404:
        return RemoteNotFound(message, status=status)
    if status == 403:
        return RemotePermissionDenied(message, status=status)
    return RemoteStoreError(message, status=status)


def load_credentials(credentials_path: Path, token_path: Path):
    """Service account key, or stored OAuth tokens refreshed when expired.

    Raises AuthSetupError when neither yields usable credentials. Interactive
    authorization is not done here.
    """
    credentials_path = Path(credentials_path)
    token_path = Path(token_path)
    try:
        if credentials_path.exists():
            info = json.loads(credentials_path.read_text())
            if info.get("type") == "service_account":
                return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)

        if not token_path.exists():
            raise AuthSetupError(
                f"No stored OAuth tokens at {token_path} and no service account key at {credentials_path}"
            )
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        if not creds.valid:
            if creds.expired and creds.refresh_token:
                creds.refresh(Request())
                token_path.write_text(creds.to_json())
            else:
                raise AuthSetupError("Stored OAuth tokens are invalid and cannot be refreshed")
        return creds
    except AuthSetupError:
        raise
    except (OSError, ValueError, GoogleAuthError) as e:
        raise AuthSetupError(f"Google Drive credential setup failed: {e}") from e


class DriveStore:
    """Destination store on Google Drive (shared drives supported)."""

    def __init__(
        self,
        service_factory: Callable[[], Any],
        page_size: int = 1000,
        upload_chunk_mb: int = 20,
        upload_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._service_factory = service_factory
        self._local = threading.local()
        self.page_size = page_size
        self.chunk_size = upload_chunk_mb * 1024 * 1024
        self.upload_retries = upload_retries
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: DestinationConfig) -> "DriveStore":
        creds = load_credentials(Path(config.credentials_path), Path(config.token_path))

        def factory():
            return build("drive", "v3", credentials=creds, cache_discovery=False)

        store = cls(
            factory,
            page_size=config.page_size,
            upload_chunk_mb=config.upload_chunk_mb,
            upload_retries=config.upload_retries,
        )
        try:
            store.service  # fail early on discovery problems
        except Exception as e:
            raise AuthSetupError(f"Google Drive API initialization failed: {e}") from e
        return store

    @property
    def service(self):
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_factory()
            self._local.service = service
        return service

    def _execute(self, request, context: str):
        try:
            return request.execute()
        except HttpError as e:
            raise classify_http_error(e, context) from e
        except NETWORK_ERRORS as e:
            raise RemoteStoreError(f"{context}: {e}") from e

    @staticmethod
    def _to_record(raw: Dict[str, Any], parent_id: Optional[str] = None) -> RemoteFileRecord:
        parents = raw.get("parents") or []
        return RemoteFileRecord(
            id=raw["id"],
            name=raw.get("name", ""),
            parent_id=parents[0] if parents else parent_id,
            mime_type=raw.get("mimeType"),
        )

    def list_children(
        self,
        parent_id: str,
        page_token: Optional[str] = None,
        name: Optional[str] = None,
        folders_only: bool = False,
    ) -> ListPage:
        """One page of non-trashed children of a folder."""
        query = f"'{escape_query_value(parent_id)}' in parents and trashed=false"
        if name is not None:
            query += f" and name='{escape_query_value(name)}'"
        if folders_only:
            query += f" and mimeType='{FOLDER_MIME}'"
        request = self.service.files().list(
            q=query,
            fields=LIST_FIELDS,
            spaces="drive",
            pageSize=self.page_size,
            pageToken=page_token,
            supportsAllDrives=True,
            includeItemsFromAllDrives=True,
        )
        response = self._execute(request, f"list children of {parent_id}")
        records = [self._to_record(raw, parent_id) for raw in response.get("files", [])]
        return ListPage(records=records, next_page_token=response.get("nextPageToken"))

    def find_child(self, parent_id: str, name: str, folders_only: bool = False) -> Optional[RemoteFileRecord]:
        page = self.list_children(parent_id, name=name, folders_only=folders_only)
        return page.records[0] if page.records else None

    def file_exists(self, parent_id: str, name: str) -> bool:
        return self.find_child(parent_id, name) is not None

    def create_folder(self, parent_id: str, name: str) -> str:
        body = {"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]}
        request = self.service.files().create(body=body, fields="id, name", supportsAllDrives=True)
        folder = self._execute(request, f"create folder {name}")
        self.logger.info(f"Created folder '{name}' with ID '{folder['id']}'")
        return folder["id"]

    def find_or_create_folder(self, parent_id: str, name: str) -> str:
        """Lookup by name and parent before any create, so reruns reuse the folder."""
        existing = self.find_child(parent_id, name, folders_only=True)
        if existing:
            self.logger.debug(f"Found existing folder '{name}' with ID '{existing.id}'")
            return existing.id
        return self.create_folder(parent_id, name)

    def upload_file(
        self,
        parent_id: str,
        path: Path,
        name: Optional[str] = None,
        mime_hint: Optional[str] = None,
    ) -> UploadResult:
        """Resumable upload; transient HTTP errors are retried with backoff."""
        path = Path(path)
        name = name or path.name
        mime_type = mime_hint or mimetypes.guess_type(path.name)[0] or DEFAULT_MIME
        media = MediaFileUpload(str(path), mimetype=mime_type, chunksize=self.chunk_size, resumable=True)
        request = self.service.files().create(
            body={"name": name, "parents": [parent_id]},
            media_body=media,
            fields="id, webViewLink",
            supportsAllDrives=True,
        )

        response = None
        attempt = 0
        while response is None:
            try:
                status, response = request.next_chunk()
                if status:
                    self.logger.debug(f"UPLOAD_PROGRESS: {name} {int(status.progress() * 100)}%")
                    attempt = 0
            except HttpError as e:
                code = getattr(e.resp, "status", None)
                try:
                    code = int(code)
                except (TypeError, ValueError):
                    code = None
                if code in TRANSIENT_STATUSES and attempt < self.upload_retries:
                    attempt += 1
                    wait_time = 2 ** attempt
                    self.logger.warning(f"Transient error {code} uploading {name}. Retrying in {wait_time}s...")
                    self._sleep(wait_time)
                    continue
                raise TransientIOError(f"Upload of {name} failed: {e}") from e
            except NETWORK_ERRORS as e:
                raise TransientIOError(f"Upload of {name} failed: {e}") from e

        self.logger.info(f"Uploaded to Google Drive: {response.get('webViewLink')}")
        return UploadResult(id=response["id"], view_link=response.get("webViewLink"))

    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        request = self.service.files().get(
            fileId=file_id,
            fields="id, name, mimeType, parents, trashed, modifiedTime",
            supportsAllDrives=True,
        )
        return self._execute(request, f"get metadata of {file_id}")

    def update_metadata(self, file_id: str, trashed: Optional[bool] = None, name: Optional[str] = None) -> None:
        body: Dict[str, Any] = {}
        if trashed is not None:
            body["trashed"] = trashed
        if name is not None:
            body["name"] = name
        if not body:
            return
        request = self.service.files().update(fileId=file_id, body=body, supportsAllDrives=True)
        self._execute(request, f"update {file_id}")

    def delete(self, file_id: str) -> None:
        request = self.service.files().delete(fileId=file_id, supportsAllDrives=True)
        self._execute(request, f"delete {file_id}")
