"""Materializes bundled hpatchz images as runnable files.

Each variant owns a fixed slot under the temp root. A slot that already
exists is reused as-is: the image is never re-checked or rewritten for the
rest of the process lifetime.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
import threading
from importlib import resources
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Union

from ..exceptions import PatcherIOError, PayloadNotFoundError
from ..variants import PatcherVariant

if TYPE_CHECKING:
    from ..config.models import PatcherSettings

logger = logging.getLogger(__name__)

PAYLOAD_PACKAGE = "hpatchz_bridge.payloads"
LEGACY_FILE_NAME = "hpatchz.tmp"

PathLike = Union[str, "os.PathLike[str]"]

# Leases are keyed by path and shared by every store in the process, so handles
# opened through separate stores still see each other.
_lock = threading.Lock()
_leases: Dict[Path, int] = {}


class PayloadStore:
    """Writes patcher images to disk once and tracks who still uses them."""

    def __init__(
        self,
        temp_root: Optional[PathLike] = None,
        *,
        variant_qualified: bool = True,
        payload_paths: Optional[Mapping[PatcherVariant, PathLike]] = None,
        payloads: Optional[Mapping[PatcherVariant, bytes]] = None,
    ) -> None:
        """
        Args:
            temp_root: Directory holding the materialized images (default: system temp dir)
            variant_qualified: Give every variant its own file name; False shares one
                legacy slot across variants
            payload_paths: Executable images on disk, per variant
            payloads: Raw image bytes, per variant (takes precedence over everything else)
        """
        self.temp_root = Path(temp_root) if temp_root else Path(tempfile.gettempdir())
        self.variant_qualified = variant_qualified
        self._payload_paths = {variant: Path(p) for variant, p in (payload_paths or {}).items()}
        self._payloads = dict(payloads or {})

    @classmethod
    def from_settings(
        cls,
        settings: "PatcherSettings",
        payloads: Optional[Mapping[PatcherVariant, bytes]] = None,
    ) -> "PayloadStore":
        configured = {variant: settings.payload_path_for(variant) for variant in PatcherVariant}
        return cls(
            settings.temp_root,
            variant_qualified=settings.variant_qualified_paths,
            payload_paths={variant: path for variant, path in configured.items() if path},
            payloads=payloads,
        )

    def payload_path(self, variant: PatcherVariant) -> Path:
        if not self.variant_qualified:
            return self.temp_root / LEGACY_FILE_NAME
        suffix = ".exe" if os.name == "nt" else ""
        return self.temp_root / f"hpatchz_{variant.value}{suffix}"

    def load_payload(self, variant: PatcherVariant) -> bytes:
        """Return the executable image bytes for a variant."""
        if variant in self._payloads:
            return self._payloads[variant]

        configured = self._payload_paths.get(variant)
        if configured is not None:
            try:
                return configured.read_bytes()
            except OSError as exc:
                raise PatcherIOError(
                    f"Cannot read configured payload for {variant.value}: {exc}",
                    file_path=str(configured),
                    operation="load_payload",
                ) from exc

        resource = resources.files(PAYLOAD_PACKAGE).joinpath(variant.image_name)
        if not resource.is_file():
            raise PayloadNotFoundError(
                f"No bundled payload {variant.image_name} for variant {variant.value}",
                variant=variant.value,
            )
        return resource.read_bytes()

    def materialize(self, variant: PatcherVariant) -> Path:
        """Ensure the variant's image exists on disk and return its path.

        Raises:
            PatcherIOError: the image cannot be loaded or written.
        """
        with _lock:
            return self._materialize_locked(variant)

    def _materialize_locked(self, variant: PatcherVariant) -> Path:
        target = self.payload_path(variant)
        if target.exists():
            logger.debug("Reusing materialized %s payload at %s", variant.value, target)
            return target
        self._write_payload(target, self.load_payload(variant))
        logger.debug("Materialized %s payload at %s", variant.value, target)
        return target

    def _write_payload(self, target: Path, data: bytes) -> None:
        tmp = target.with_name(f"{target.name}.{os.getpid()}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if os.name != "nt":
                mode = tmp.stat().st_mode
                tmp.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            os.replace(tmp, target)
        except OSError as exc:
            raise PatcherIOError(
                f"Cannot write patcher payload: {exc}",
                file_path=str(target),
                operation="materialize",
            ) from exc
        finally:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError as exc:
                    logger.debug("Failed to remove partial payload %s: %s", tmp, exc)

    def acquire(self, variant: PatcherVariant) -> Path:
        """Materialize the variant and take one lease on its file."""
        with _lock:
            path = self._materialize_locked(variant)
            key = _lease_key(path)
            _leases[key] = _leases.get(key, 0) + 1
        return path

    def lease_count(self, path: PathLike) -> int:
        with _lock:
            return _leases.get(_lease_key(path), 0)

    def release(self, path: PathLike) -> None:
        """Drop one lease; delete the file once nobody holds it.

        Leases are shared by all stores in the process. Paths that were never
        leased are deleted directly.

        Raises:
            PatcherIOError: the file could not be deleted (missing, or still
                locked by a running process).
        """
        path = Path(path)
        key = _lease_key(path)
        with _lock:
            remaining = _leases.get(key, 0) - 1
            if remaining > 0:
                _leases[key] = remaining
                logger.debug("Released lease on %s (%d remaining)", path, remaining)
                return
            _leases.pop(key, None)
            try:
                path.unlink()
            except OSError as exc:
                raise PatcherIOError(
                    f"Unable to delete materialized payload: {exc}",
                    file_path=str(path),
                    operation="release",
                ) from exc
        logger.debug("Deleted materialized payload %s", path)


def _lease_key(path: PathLike) -> Path:
    return Path(os.path.abspath(path))
