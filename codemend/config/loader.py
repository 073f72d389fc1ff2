import collections.abc
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from .defaults import DEFAULT_CONFIG, CodemendConfig

logger = structlog.get_logger()

PROJECT_CONFIG_NAME = ".codemend.yaml"


def deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Recursively merges two dictionaries.
    'override' values take precedence over 'base' values.
    Lists are overridden, not merged.
    """
    result = base.copy()
    for key, value in override.items():
        if (
            isinstance(value, collections.abc.Mapping)
            and key in result
            and isinstance(result[key], collections.abc.Mapping)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def load_raw_config(project_path: str = ".", global_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads and merges configurations from default, global, and project-specific files.
    """
    config = DEFAULT_CONFIG.copy()

    global_config_path = (global_dir or Path.home() / ".codemend") / "config.yaml"
    if global_config_path.is_file():
        try:
            config = deep_merge(config, _read_yaml(global_config_path))
        except yaml.YAMLError as e:
            logger.warning("global_config_unreadable", path=str(global_config_path), error=str(e))

    project_config_path = Path(project_path) / PROJECT_CONFIG_NAME
    if project_config_path.is_file():
        try:
            config = deep_merge(config, _read_yaml(project_config_path))
        except yaml.YAMLError as e:
            raise ValueError(
                f"Error parsing project config file at {project_config_path}: {e}"
            ) from e

    return config


def load_config(project_path: str = ".", global_dir: Optional[Path] = None) -> CodemendConfig:
    raw = load_raw_config(project_path, global_dir=global_dir)
    try:
        return CodemendConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid codemend configuration: {e}") from e
