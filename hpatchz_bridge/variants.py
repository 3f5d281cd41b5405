"""Patcher variants and the executable image bundled for each."""

from __future__ import annotations

from enum import Enum


class PatcherVariant(Enum):
    """Selects which bundled hpatchz build to materialize and run."""

    HOYO = "hoyo"
    KURO = "kuro"

    @property
    def image_name(self) -> str:
        """File name of the bundled executable image under ``hpatchz_bridge/payloads``."""
        return _IMAGE_NAMES[self]

    @classmethod
    def parse(cls, value: "str | PatcherVariant") -> "PatcherVariant":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if member.value == key:
                return member
        names = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown patcher variant {value!r} (expected one of: {names})")


_IMAGE_NAMES = {
    PatcherVariant.HOYO: "hpatchz_4.6.9.exe",
    PatcherVariant.KURO: "hpatchz_4.8.0.exe",
}
