"""hpatchz handle - applies whole-file and offset patches to game assets.

Usage::

    with open_patcher(PatcherVariant.KURO, ["-s-64m"]) as patcher:
        code = patcher.patch_offset(src_dir, dest_dir, combined_diff, 4096, 1_048_576)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..config.models import PatcherSettings
from ..exceptions import PatcherClosedError
from ..utils.cancel import CancelTokenProtocol
from ..variants import PatcherVariant
from .payload_store import PathLike, PayloadStore
from .process_runner import (
    LogCallback,
    OffsetPatchRequest,
    PatchOutcome,
    PatchRequest,
    ProcessRunner,
)

logger = logging.getLogger(__name__)


class PatcherHandle:
    """A runnable hpatchz executable with the caller's extra arguments.

    Holds one lease on the materialized executable until ``close()``.
    """

    def __init__(
        self,
        variant: PatcherVariant,
        path: Path,
        extra_args: Sequence[str],
        store: PayloadStore,
        runner: ProcessRunner,
    ) -> None:
        self._variant = variant
        self._path = Path(path)
        self._extra_args = tuple(str(arg) for arg in extra_args)
        self._store = store
        self._runner = runner
        self._closed = False

    @property
    def variant(self) -> PatcherVariant:
        return self._variant

    @property
    def path(self) -> Path:
        return self._path

    @property
    def extra_args(self) -> Sequence[str]:
        return self._extra_args

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise PatcherClosedError()

    def run(
        self,
        request: Union[PatchRequest, OffsetPatchRequest],
        *,
        cancel_token: Optional[CancelTokenProtocol] = None,
        timeout_sec: Optional[float] = None,
        log_cb: LogCallback = None,
    ) -> PatchOutcome:
        self._check_open()
        if isinstance(request, OffsetPatchRequest):
            return self._runner.invoke_offset(
                self, request, cancel_token=cancel_token, timeout_sec=timeout_sec, log_cb=log_cb
            )
        return self._runner.invoke(self, request, cancel_token=cancel_token, timeout_sec=timeout_sec, log_cb=log_cb)

    def patch(
        self,
        source: PathLike,
        dest: PathLike,
        diff: PathLike,
        *,
        cancel_token: Optional[CancelTokenProtocol] = None,
        timeout_sec: Optional[float] = None,
        log_cb: LogCallback = None,
    ) -> int:
        """Apply a whole diff file; returns the patcher exit code (-99 if abnormal)."""
        outcome = self.run(
            PatchRequest(source=source, dest=dest, diff=diff),
            cancel_token=cancel_token,
            timeout_sec=timeout_sec,
            log_cb=log_cb,
        )
        return outcome.code

    def patch_offset(
        self,
        source: PathLike,
        dest: PathLike,
        diff: PathLike,
        offset: int,
        length: int,
        *,
        cancel_token: Optional[CancelTokenProtocol] = None,
        timeout_sec: Optional[float] = None,
        log_cb: LogCallback = None,
    ) -> int:
        """Apply ``length`` bytes at ``offset`` of a combined diff file."""
        outcome = self.run(
            OffsetPatchRequest(source=source, dest=dest, diff=diff, offset=offset, length=length),
            cancel_token=cancel_token,
            timeout_sec=timeout_sec,
            log_cb=log_cb,
        )
        return outcome.code

    def close(self) -> None:
        """Release the materialized executable. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._store.release(self._path)

    def __enter__(self) -> "PatcherHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"PatcherHandle({self._variant.value}, {str(self._path)!r}, {state})"


def open_patcher(
    variant: Union[PatcherVariant, str],
    extra_args: Optional[Sequence[str]] = None,
    *,
    settings: Optional[PatcherSettings] = None,
    store: Optional[PayloadStore] = None,
    runner: Optional[ProcessRunner] = None,
) -> PatcherHandle:
    """Materialize the variant's executable and return a handle for it.

    Settings ``extra_args`` come first, the caller's ``extra_args`` after them.

    Raises:
        PatcherIOError: the executable could not be materialized
    """
    settings = settings or PatcherSettings()
    variant = PatcherVariant.parse(variant)
    store = store or PayloadStore.from_settings(settings)
    runner = runner or ProcessRunner.from_settings(settings)

    args: List[str] = list(settings.extra_args)
    args.extend(extra_args or ())

    path = store.acquire(variant)
    logger.debug("Opened %s patcher at %s", variant.value, path)
    return PatcherHandle(variant, path, args, store, runner)
