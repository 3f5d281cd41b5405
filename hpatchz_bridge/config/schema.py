"""Config schema validation helpers."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

import jsonschema

DEFAULT_SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config-schema.json")


@lru_cache(maxsize=4)
def _load_schema(schema_path: str) -> Dict[str, Any]:
    with open(schema_path, "r", encoding="utf-8") as f:
        return json.load(f)


def validate_config_schema(config_data: Dict[str, Any], schema_path: Optional[str] = None) -> Tuple[bool, Optional[str]]:
    """Validate a raw config document; returns ``(ok, error_message)``."""
    schema = _load_schema(schema_path or DEFAULT_SCHEMA_PATH)
    try:
        jsonschema.validate(instance=config_data, schema=schema)
        return True, None
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        return False, f"{location}: {exc.message}"
