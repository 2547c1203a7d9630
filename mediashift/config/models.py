from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

_FROZEN = ConfigDict(frozen=True)

ENCODER_CHOICES = ("gpu", "cpu")


class SourceConfig(BaseModel):
    """S3 bucket holding the original assets."""
    model_config = _FROZEN

    bucket: Optional[str] = None
    region: Optional[str] = None
    connect_timeout_s: float = Field(default=10.0, gt=0)
    read_timeout_s: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)


class DestinationConfig(BaseModel):
    """Google Drive tree that receives the transcoded outputs."""
    model_config = _FROZEN

    enabled: bool = True
    root_folder_id: Optional[str] = None
    credentials_path: str = "oauth-credentials.json"
    token_path: str = "oauth-tokens.json"
    # Keep transferring without Drive when auth setup fails.
    allow_missing: bool = True
    page_size: int = Field(default=1000, ge=1, le=1000)
    upload_chunk_mb: int = Field(default=20, ge=1)
    upload_retries: int = Field(default=3, ge=0)


class TranscodeConfig(BaseModel):
    model_config = _FROZEN

    encoder: Literal["gpu", "cpu"] = "gpu"
    gpu_encoder: str = "h264_nvenc"
    cpu_encoder: str = "libx264"
    gpu_args: List[str] = Field(default_factory=lambda: ["-preset", "p5"])
    cpu_args: List[str] = Field(default_factory=lambda: ["-preset", "medium", "-crf", "23"])
    ffmpeg_path: str = "ffmpeg"
    output_suffix: str = "_converted"
    output_extension: str = ".mp4"
    check_source_bucket: bool = True
    publish_to_source_bucket: bool = False
    progress_interval_s: float = Field(default=1.0, gt=0)

    @field_validator("encoder", mode="before")
    @classmethod
    def normalize_encoder(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("output_extension")
    @classmethod
    def validate_extension(cls, v: str) -> str:
        if not v:
            raise ValueError("output_extension must not be empty")
        return v if v.startswith(".") else f".{v}"

    def encoder_name(self) -> str:
        return self.gpu_encoder if self.encoder == "gpu" else self.cpu_encoder

    def encoder_args(self) -> List[str]:
        return list(self.gpu_args if self.encoder == "gpu" else self.cpu_args)


class WorkConfig(BaseModel):
    model_config = _FROZEN

    work_list_path: str = "id_list.txt"
    work_dir: str = "."
    error_log_path: str = "error_transcode.txt"
    category_pattern: str = r"camera-(\d+)"
    category_template: str = "camera-{0}"
    fallback_category: str = "other-videos"


class ShardConfig(BaseModel):
    """Static partitioning; validated by the partitioner, not here."""
    model_config = _FROZEN

    instance_index: int = 0
    total_instances: int = 1


class DedupeConfig(BaseModel):
    model_config = _FROZEN

    enabled: bool = False
    strategy: Optional[str] = None
    refresh_before_resolve: bool = True
    verify_timeout_s: float = Field(default=10.0, gt=0)
    batch_size: int = Field(default=10, ge=1, le=100)
    batch_delay_s: float = Field(default=1.0, ge=0.0)


class LoggingConfig(BaseModel):
    model_config = _FROZEN

    log_path: str = "/tmp/mediashift/mediashift.log"
    debug: bool = False


class AppConfig(BaseModel):
    model_config = _FROZEN

    source: SourceConfig = Field(default_factory=SourceConfig)
    destination: DestinationConfig = Field(default_factory=DestinationConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    work: WorkConfig = Field(default_factory=WorkConfig)
    shard: ShardConfig = Field(default_factory=ShardConfig)
    dedupe: DedupeConfig = Field(default_factory=DedupeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def with_section(self, section: str, **changes) -> "AppConfig":
        """Returns a copy with fields of one section replaced (CLI overrides)."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        current = getattr(self, section)
        return self.model_copy(update={section: current.model_copy(update=changes)})


ENV_OVERRIDES: Dict[str, tuple] = {
    "BUCKET": ("source", "bucket"),
    "REGION": ("source", "region"),
    "GOOGLE_DRIVE_FOLDER_ID": ("destination", "root_folder_id"),
}
