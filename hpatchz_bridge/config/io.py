"""Config I/O utilities."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "HPATCHZ_BRIDGE_CONFIG"
DEFAULT_CONFIG_NAME = "hpatchz_bridge.json"

PathLike = Union[str, "os.PathLike[str]"]


def get_config_path() -> str:
    """Config location: ``$HPATCHZ_BRIDGE_CONFIG`` or ``./hpatchz_bridge.json``."""
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return override
    return os.path.join(os.getcwd(), DEFAULT_CONFIG_NAME)


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in (".yaml", ".yml")


def load_config(config_path: Optional[PathLike] = None) -> Dict[str, Any]:
    """Read a JSON or YAML config document.

    Raises:
        ConfigurationError: the file cannot be read or parsed, or the
            document is not a mapping.
    """
    path = Path(config_path if config_path is not None else get_config_path())
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file: {exc}", file_path=str(path)) from exc

    try:
        data = yaml.safe_load(raw) if _is_yaml(path) else json.loads(raw)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse config file: {exc}", "CONFIG_PARSE_ERROR", str(path)) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config document must be a mapping", "CONFIG_PARSE_ERROR", str(path))
    return data


def save_config(config_data: Dict[str, Any], config_path: Optional[PathLike] = None) -> Path:
    path = Path(config_path if config_path is not None else get_config_path())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            if _is_yaml(path):
                yaml.safe_dump(dict(config_data or {}), f, sort_keys=False)
            else:
                json.dump(dict(config_data or {}), f, indent=2)
    except OSError as exc:
        raise ConfigurationError(f"Cannot write config file: {exc}", file_path=str(path)) from exc
    logger.debug("Config written to %s", path)
    return path
