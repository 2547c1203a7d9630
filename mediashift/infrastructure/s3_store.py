import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from mediashift.config.models import SourceConfig
from mediashift.domain.errors import RemoteNotFound, TransientIOError

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3SourceStore:
    """Blob store holding the original assets (and optionally the outputs)."""

    def __init__(self, bucket: str, client: Any = None, region: Optional[str] = None):
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: SourceConfig) -> "S3SourceStore":
        boto_config = Config(
            connect_timeout=config.connect_timeout_s,
            read_timeout=config.read_timeout_s,
            retries={"max_attempts": config.max_attempts, "mode": "standard"},
        )
        client = boto3.client("s3", region_name=config.region, config=boto_config)
        return cls(bucket=config.bucket, client=client)

    def head_exists(self, key: str) -> bool:
        """True if the key exists. Raises TransientIOError for anything but not-found."""
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise TransientIOError(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"head_object failed for {key}: {e}") from e

    def get_stream(self, key: str):
        """Returns (body, content_length). Body is a readable byte stream."""
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise RemoteNotFound(f"s3://{self.bucket}/{key} not found", status=404) from e
            raise TransientIOError(f"get_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"get_object failed for {key}: {e}") from e
        return response["Body"], int(response.get("ContentLength") or 0)

    def upload_file(self, path: Path, key: str, content_type: str = "video/mp4") -> None:
        try:
            self.client.upload_file(
                str(path), self.bucket, key, ExtraArgs={"ContentType": content_type}
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise TransientIOError(f"upload to s3://{self.bucket}/{key} failed: {e}") from e
        self.logger.info(f"Uploaded {path} to s3://{self.bucket}/{key}")
