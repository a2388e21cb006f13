import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import TranscoderConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# env var -> dotted config path
ENV_OVERRIDES = {
    "TRANSCODER_DB": "db_path",
    "TRANSCODER_SCRATCH_DIR": "scratch_root",
    "TRANSCODER_STORAGE_BACKEND": "storage.backend",
    "TRANSCODER_S3_BUCKET": "storage.s3_bucket",
    "TRANSCODER_PUBLIC_BASE_URL": "storage.public_base_url",
    "FFMPEG_PATH": "runner.ffmpeg_path",
    "FFPROBE_PATH": "runner.ffprobe_path",
}

# CLI/keyword override -> dotted config path
OVERRIDE_KEYS = {
    "concurrency": "queue.concurrency",
    "max_retries": "queue.max_retries",
    "retry_base_delay_s": "queue.retry_base_delay_s",
    "stale_after_s": "queue.stale_after_s",
    "chunk_size": "batch.chunk_size",
    "db_path": "db_path",
    "scratch_root": "scratch_root",
    "storage_backend": "storage.backend",
}


def get_config_value(config: Union[TranscoderConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: TranscoderConfig model or dict
        path: Dot-separated path like "queue.concurrency"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, TranscoderConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect config overrides from TRANSCODER_* environment variables."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            _set_path(data, path, value)
    return data


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> TranscoderConfig:
    """
    Resolve config: Default < Local < Environment < explicit overrides.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    overrides = overrides or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    for key, path in OVERRIDE_KEYS.items():
        if overrides.get(key) is not None:
            _set_path(config_data, path, overrides[key])

    return TranscoderConfig.from_dict(config_data)
