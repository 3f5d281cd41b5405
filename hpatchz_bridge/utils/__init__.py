"""Shared helpers for hpatchz-bridge."""

from .cancel import CancelToken, CancelTokenProtocol, is_cancelled

__all__ = ["CancelToken", "CancelTokenProtocol", "is_cancelled"]
