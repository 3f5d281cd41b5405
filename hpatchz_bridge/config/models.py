from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..variants import PatcherVariant

DEFAULT_ALLOW_LIST = ("Patch inited", "begin patch file", "end patch file")
DEFAULT_COPY_BUFFER_SIZE = 1024 * 1024


class _BaseConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LoggingSettings(_BaseConfigModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    structured_json: bool = False
    colors: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return normalized


class PatcherSettings(_BaseConfigModel):
    temp_root: Optional[str] = None
    variant_qualified_paths: bool = True
    payload_paths: Dict[str, str] = Field(default_factory=dict)
    extra_args: List[str] = Field(default_factory=list)
    strict_decode: bool = False
    allow_truncated_slice: bool = True
    wait_timeout_sec: Optional[float] = None
    stdout_allow_list: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("payload_paths")
    @classmethod
    def _check_payload_variants(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {PatcherVariant.parse(key).value: path for key, path in value.items()}

    @field_validator("wait_timeout_sec")
    @classmethod
    def _check_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("wait_timeout_sec must be positive")
        return value

    @field_validator("stdout_allow_list")
    @classmethod
    def _check_allow_list(cls, value: List[str]) -> List[str]:
        markers = [marker for marker in value if marker.strip()]
        if not markers:
            raise ValueError("stdout_allow_list needs at least one non-blank marker")
        return markers

    @field_validator("copy_buffer_size")
    @classmethod
    def _check_buffer(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("copy_buffer_size must be positive")
        return value

    def payload_path_for(self, variant: PatcherVariant) -> Optional[str]:
        return self.payload_paths.get(variant.value)


def validate_settings(payload: Dict[str, Any]) -> PatcherSettings:
    return PatcherSettings.model_validate(payload or {})
