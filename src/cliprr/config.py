import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .models import CliprrConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def get_config_value(config: Union[CliprrConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: CliprrConfig model or dict
        path: Dot-separated path like "detection.similarity_threshold"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, CliprrConfig):
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


def resolve_config(cli_args: Dict[str, Any] = None, config_path: Path = None) -> CliprrConfig:
    """
    Resolve config: Default < Local (or explicit file) < CLI
    Returns validated Pydantic CliprrConfig model.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    override_path = Path(config_path) if config_path else LOCAL_CONFIG_PATH
    config_data = merge_dicts(config_data, load_yaml(override_path))

    config = CliprrConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
