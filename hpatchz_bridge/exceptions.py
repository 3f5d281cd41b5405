#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
hpatchz-bridge - Consolidated Exception Classes

All exception classes raised by the bridge live here so callers can catch
one stage precisely (payload, slice, spawn, wait, decode) or the whole
subsystem through PatcherError.
"""

from datetime import datetime
from typing import Dict, Any, Optional


class BaseError(Exception):
    """Base class for all project-specific errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code or "ERROR"
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Converts the exception to a dictionary for structured logging."""
        return {
            'error_code': self.error_code,
            'message': str(self),
            'details': self.details,
            'timestamp': self.timestamp.isoformat()
        }


# =====================================================================================================
# Configuration errors
# =====================================================================================================

class ConfigurationError(BaseError):
    """Base class for configuration errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        config_details = details or {}
        if file_path:
            config_details['file_path'] = str(file_path)
        super().__init__(message, error_code or "CONFIG_ERROR", config_details)


class ValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, field_name: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        validation_details = details or {}
        if field_name:
            validation_details['field_name'] = field_name
        super().__init__(message, "VALIDATION_ERROR", file_path, validation_details)


# =====================================================================================================
# Patcher errors
# =====================================================================================================

class PatcherError(BaseError):
    """Base class for errors raised while preparing or running the patcher."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "PATCHER_ERROR", details)


class PatcherIOError(PatcherError):
    """Raised when a payload, slice or cleanup file operation fails."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 operation: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None,
                 error_code: Optional[str] = None):
        file_details = details or {}
        if file_path:
            file_details['file_path'] = str(file_path)
        if operation:
            file_details['operation'] = operation
        super().__init__(message, error_code or "IO_ERROR", file_details)

    @property
    def file_path(self) -> Optional[str]:
        return self.details.get('file_path')


class PayloadNotFoundError(PatcherIOError):
    """Raised when no executable image can be located for a variant."""

    def __init__(self, message: str, variant: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        payload_details = details or {}
        if variant:
            payload_details['variant'] = variant
        super().__init__(message, operation="load_payload", details=payload_details,
                         error_code="PAYLOAD_NOT_FOUND")


class SliceTruncatedError(PatcherIOError):
    """Raised in strict mode when a combined diff ends before offset + length."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 requested: int = 0, actual: int = 0):
        super().__init__(
            message,
            file_path=file_path,
            operation="slice",
            details={'requested': requested, 'actual': actual},
            error_code="SLICE_TRUNCATED",
        )
        self.requested = requested
        self.actual = actual


class SpawnError(PatcherError):
    """Raised when the patcher executable cannot be launched."""

    def __init__(self, message: str, executable: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        spawn_details = details or {}
        if executable:
            spawn_details['executable'] = str(executable)
        super().__init__(message, "SPAWN_ERROR", spawn_details)


class WaitError(PatcherError):
    """Raised when the child process cannot be waited on."""

    def __init__(self, message: str, pid: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        wait_details = details or {}
        if pid is not None:
            wait_details['pid'] = pid
        super().__init__(message, "WAIT_ERROR", wait_details)


class DecodeError(PatcherError):
    """Raised in strict decode mode when an output line is not valid UTF-8."""

    def __init__(self, message: str, stream: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        decode_details = details or {}
        if stream:
            decode_details['stream'] = stream
        super().__init__(message, "DECODE_ERROR", decode_details)


class PatcherClosedError(PatcherError):
    """Raised when a closed PatcherHandle is used."""

    def __init__(self, message: str = "patcher handle is closed"):
        super().__init__(message, "HANDLE_CLOSED")
