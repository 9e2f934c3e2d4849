import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import ClipflowConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
DB_ENV_VAR = "CLIPFLOW_DB"


def get_config_value(config: Union[ClipflowConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: ClipflowConfig model or dict
        path: Dot-separated path like "queue.lease_seconds"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, ClipflowConfig):
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


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None
) -> ClipflowConfig:
    """
    Resolve config: Default < Local < CLIPFLOW_DB env < CLI
    Returns validated Pydantic ClipflowConfig model.

    ``config_path`` replaces the local override file (``--config``).
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    local_data = load_yaml(Path(config_path) if config_path else LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    # 3. Environment
    if os.environ.get(DB_ENV_VAR):
        config_data.setdefault("queue", {})["db_path"] = os.environ[DB_ENV_VAR]

    # 4. Validate, then apply CLI overrides
    config = ClipflowConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(config: ClipflowConfig) -> None:
    """Configure the root logger from the ``logging`` section."""
    handlers = [logging.StreamHandler()]
    if config.logging.file:
        Path(config.logging.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.logging.file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format=config.logging.format,
        handlers=handlers,
        force=True,
    )
