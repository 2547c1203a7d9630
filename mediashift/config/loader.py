import yaml
from pathlib import Path
from typing import Mapping, Optional
from pydantic import ValidationError
from mediashift.domain.errors import ConfigError
from .models import AppConfig, ENV_OVERRIDES

def load_config(config_path: Optional[Path], environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Loads YAML config into AppConfig, then applies BUCKET/REGION/GOOGLE_DRIVE_FOLDER_ID.

    A missing file is not an error: defaults plus environment are enough for a run.
    The environment mapping is passed in explicitly by the CLI.
    """
    data: dict = {}
    if config_path is not None and Path(config_path).exists():
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_path} must be a mapping at top level")

    for env_key, (section, field) in ENV_OVERRIDES.items():
        value = (environ or {}).get(env_key)
        if value:
            if not isinstance(data.get(section), dict):
                data[section] = {}
            data[section][field] = value

    try:
        return AppConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config: {exc}") from exc
