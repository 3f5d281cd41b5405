"""Extracts one patch record from a combined diff file.

A combined diff packs independent hpatchz records back to back. The patcher
only accepts a whole file, so each record is copied out into
``{diff_name}_{offset}_{length}.diff`` next to the destination first.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Union

from ..config.models import DEFAULT_COPY_BUFFER_SIZE
from ..exceptions import PatcherIOError, SliceTruncatedError

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def slice_name(combined_diff: PathLike, offset: int, length: int) -> str:
    return f"{Path(combined_diff).name}_{offset}_{length}.diff"


class DiffSlicer:
    """Copies byte ranges out of combined diff files."""

    def __init__(self, *, allow_truncated: bool = True, buffer_size: int = DEFAULT_COPY_BUFFER_SIZE) -> None:
        """
        Args:
            allow_truncated: Keep a short slice when the file ends before
                offset + length; False deletes it and raises SliceTruncatedError
            buffer_size: Copy chunk size in bytes
        """
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.allow_truncated = allow_truncated
        self.buffer_size = buffer_size

    def slice(self, combined_diff: PathLike, offset: int, length: int, dest_dir: PathLike) -> Path:
        """Write ``combined_diff[offset:offset + length]`` to a new file in dest_dir.

        The caller owns the returned file and must delete it.

        Raises:
            ValueError: negative offset or length
            PatcherIOError: the source cannot be read, offset lies past the
                end of the file, or the slice cannot be written
            SliceTruncatedError: strict mode and fewer than length bytes remain
        """
        if offset < 0 or length < 0:
            raise ValueError(f"offset and length must be non-negative (got {offset}, {length})")

        source = Path(combined_diff)
        target = Path(dest_dir) / slice_name(source, offset, length)

        logger.debug("Init new patch for offset %d - %d from %s", offset, length, source)

        try:
            src = open(source, "rb")
        except OSError as exc:
            raise PatcherIOError(f"Cannot open combined diff: {exc}", str(source), "slice") from exc

        with src:
            try:
                size = os.fstat(src.fileno()).st_size
            except OSError as exc:
                raise PatcherIOError(f"Cannot stat combined diff: {exc}", str(source), "slice") from exc
            if offset > size:
                raise PatcherIOError(
                    f"Offset {offset} lies beyond end of {source.name} ({size} bytes)",
                    str(source),
                    "seek",
                    details={'offset': offset, 'size': size},
                )

            try:
                src.seek(offset)
                written = self._copy_range(src, target, length)
            except OSError as exc:
                self._discard(target)
                raise PatcherIOError(f"Unable to write diff patch offset: {exc}", str(target), "slice") from exc

        if written < length:
            if not self.allow_truncated:
                self._discard(target)
                raise SliceTruncatedError(
                    f"{source.name} holds only {written} of {length} bytes at offset {offset}",
                    file_path=str(source),
                    requested=length,
                    actual=written,
                )
            logger.warning(
                "Short read from %s at offset %d: %d of %d bytes", source.name, offset, written, length
            )

        logger.debug("Diff patch is written to %s", target)
        return target

    def _copy_range(self, src, target: Path, length: int) -> int:
        written = 0
        with open(target, "wb") as dst:
            while written < length:
                chunk = src.read(min(self.buffer_size, length - written))
                if not chunk:
                    break
                dst.write(chunk)
                written += len(chunk)
            dst.flush()
        return written

    @staticmethod
    def _discard(target: Path) -> None:
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove incomplete slice %s: %s", target, exc)
