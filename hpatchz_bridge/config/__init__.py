# -*-coding: utf-8-*-
"""hpatchz-bridge configuration package.

Settings come from a JSON or YAML document, are checked against the bundled
JSON schema and then parsed into a pydantic ``PatcherSettings`` model.
"""

import logging
from pathlib import Path
from typing import Optional

import pydantic

from ..exceptions import ValidationError
from .io import CONFIG_ENV_VAR, PathLike, get_config_path, load_config, save_config
from .models import DEFAULT_ALLOW_LIST, LoggingSettings, PatcherSettings, validate_settings
from .schema import validate_config_schema

logger = logging.getLogger(__name__)


def load_settings(config_path: Optional[PathLike] = None) -> PatcherSettings:
    """Load and validate settings.

    Without an explicit path a missing default file yields the defaults; an
    explicit path must exist.
    """
    if config_path is None:
        default_path = Path(get_config_path())
        if not default_path.exists():
            logger.debug("No config at %s, using defaults", default_path)
            return PatcherSettings()
        config_path = default_path

    data = load_config(config_path)
    ok, error = validate_config_schema(data)
    if not ok:
        raise ValidationError(f"Config schema validation failed: {error}", file_path=str(config_path))

    data.pop("_metadata", None)
    try:
        return validate_settings(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field_name = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Invalid config value: {first.get('msg', exc)}",
            field_name=field_name or None,
            file_path=str(config_path),
        ) from exc


def save_settings(settings: PatcherSettings, config_path: Optional[PathLike] = None) -> Path:
    return save_config(settings.model_dump(), config_path)


__all__ = [
    'CONFIG_ENV_VAR',
    'DEFAULT_ALLOW_LIST',
    'LoggingSettings',
    'PatcherSettings',
    'get_config_path',
    'load_config',
    'load_settings',
    'save_config',
    'save_settings',
    'validate_config_schema',
    'validate_settings',
]
