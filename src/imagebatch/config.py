import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .models import ImageBatchConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def get_config_value(config: Union[ImageBatchConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: ImageBatchConfig model or dict
        path: Dot-separated path like "queue.max_jobs"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, ImageBatchConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
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


def resolve_config(cli_args: Dict[str, Any] = None) -> ImageBatchConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ImageBatchConfig model.

    Raises pydantic.ValidationError if the merged config is invalid.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    local_data = load_yaml(LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    # The API key is never committed to YAML
    api_key = os.environ.get("IMAGEBATCH_API_KEY")
    if api_key:
        config_data = merge_dicts(config_data, {"backend": {"api_key": api_key}})

    config = ImageBatchConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
