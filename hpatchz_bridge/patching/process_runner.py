"""Runs hpatchz and turns its termination into an exit code.

Both output pipes are drained on their own thread while the caller blocks on
the child. The drain threads are joined before ``invoke`` returns, so the
last lines the patcher printed are always logged.
"""

from __future__ import annotations

import logging
import os
import subprocess  # nosec B404
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, IO, Callable, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from ..config.models import DEFAULT_ALLOW_LIST
from ..exceptions import DecodeError, PatcherIOError, SpawnError, WaitError
from ..utils.cancel import CancelTokenProtocol, is_cancelled
from .diff_slicer import DiffSlicer
from .output_classifier import classify

if TYPE_CHECKING:
    from ..config.models import PatcherSettings

logger = logging.getLogger(__name__)

ABNORMAL_EXIT = -99
FORCE_FLAG = "-f"
POLL_INTERVAL_SEC = 0.05
TERMINATE_GRACE_SEC = 2.0

PathLike = Union[str, "os.PathLike[str]"]
LogCallback = Optional[Callable[[str], None]]


class PatcherExecutable(Protocol):
    @property
    def path(self) -> Path: ...

    @property
    def extra_args(self) -> Sequence[str]: ...


@dataclass(frozen=True)
class PatchRequest:
    """Whole-file patch: apply ``diff`` to ``source``, writing into ``dest``."""

    source: PathLike
    dest: PathLike
    diff: PathLike


@dataclass(frozen=True)
class OffsetPatchRequest:
    """Patch using ``length`` bytes at ``offset`` of a combined diff file."""

    source: PathLike
    dest: PathLike
    diff: PathLike
    offset: int
    length: int

    def __post_init__(self) -> None:
        if self.offset < 0 or self.length < 0:
            raise ValueError(f"offset and length must be non-negative (got {self.offset}, {self.length})")


@dataclass(frozen=True)
class PatchOutcome:
    code: int
    timed_out: bool = False
    cancelled: bool = False

    @property
    def abnormal(self) -> bool:
        return self.code == ABNORMAL_EXIT

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.timed_out and not self.cancelled


def _terminate_process_tree(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    if os.name == "nt":
        try:
            subprocess.run(  # nosec B603 B607
                ["taskkill", "/T", "/F", "/PID", str(process.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
            process.wait(timeout=TERMINATE_GRACE_SEC)
            return
        except (OSError, subprocess.TimeoutExpired):
            logger.exception("hpatchz: taskkill failed")
    try:
        process.terminate()
    except OSError:
        logger.exception("hpatchz: terminate failed")
    try:
        process.wait(timeout=TERMINATE_GRACE_SEC)
        return
    except subprocess.TimeoutExpired:
        logger.debug("hpatchz: pid %d ignored terminate, killing", process.pid)
    try:
        process.kill()
        process.wait(timeout=TERMINATE_GRACE_SEC)
    except (OSError, subprocess.TimeoutExpired):
        logger.exception("hpatchz: kill failed")


class ProcessRunner:
    """Spawns the patcher and drains its output into log records."""

    def __init__(
        self,
        *,
        strict_decode: bool = False,
        wait_timeout_sec: Optional[float] = None,
        allow_list: Iterable[str] = DEFAULT_ALLOW_LIST,
        slicer: Optional[DiffSlicer] = None,
        tool_label: str = "hpatchz",
    ) -> None:
        """
        Args:
            strict_decode: Raise DecodeError for non UTF-8 output or a failed
                pipe read instead of decoding with replacement characters
            wait_timeout_sec: Default limit on child runtime (None waits forever)
            allow_list: stdout substrings that get surfaced at INFO
            slicer: DiffSlicer used by invoke_offset
            tool_label: Prefix for log lines
        """
        self.strict_decode = strict_decode
        self.wait_timeout_sec = wait_timeout_sec
        self.allow_list = tuple(allow_list)
        self.slicer = slicer or DiffSlicer()
        self.tool_label = tool_label

    @classmethod
    def from_settings(cls, settings: "PatcherSettings") -> "ProcessRunner":
        return cls(
            strict_decode=settings.strict_decode,
            wait_timeout_sec=settings.wait_timeout_sec,
            allow_list=settings.stdout_allow_list,
            slicer=DiffSlicer(
                allow_truncated=settings.allow_truncated_slice,
                buffer_size=settings.copy_buffer_size,
            ),
        )

    def build_args(self, handle: PatcherExecutable, request: PatchRequest) -> List[str]:
        """``[source, diff, dest, -f, *extra_args]``; extra args may override -f."""
        args = [
            os.fspath(request.source),
            os.fspath(request.diff),
            os.fspath(request.dest),
            FORCE_FLAG,
        ]
        args.extend(str(arg) for arg in handle.extra_args)
        return args

    def invoke(
        self,
        handle: PatcherExecutable,
        request: PatchRequest,
        *,
        cancel_token: Optional[CancelTokenProtocol] = None,
        timeout_sec: Optional[float] = None,
        log_cb: LogCallback = None,
    ) -> PatchOutcome:
        """Run the patcher once and wait for it.

        Raises:
            SpawnError: the executable could not be started
            WaitError: the child could not be waited on
            DecodeError: strict decoding and an output line was not UTF-8,
                or a pipe could not be read
        """
        label = self.tool_label
        if is_cancelled(cancel_token):
            logger.debug("%s: cancelled before start", label)
            return PatchOutcome(ABNORMAL_EXIT, cancelled=True)

        args = self.build_args(handle, request)
        logger.debug("%s: with args %s", label, args)

        try:
            process = subprocess.Popen(  # nosec B603
                [os.fspath(handle.path), *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"Unable to run {label}: {exc}", executable=str(handle.path)) from exc

        decode_errors: List[DecodeError] = []
        threads = [
            threading.Thread(
                target=self._drain,
                args=(process.stdout, "stdout", decode_errors, log_cb),
                name=f"{label}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._drain,
                args=(process.stderr, "stderr", decode_errors, log_cb),
                name=f"{label}-stderr",
                daemon=True,
            ),
        ]
        for t in threads:
            t.start()

        forced = True
        try:
            returncode, timed_out, cancelled = self._wait(
                process,
                cancel_token,
                timeout_sec if timeout_sec is not None else self.wait_timeout_sec,
            )
            forced = timed_out or cancelled
        except BaseException:
            _terminate_process_tree(process)
            raise
        finally:
            for t in threads:
                # A killed child may leave grandchildren holding the pipes.
                t.join(timeout=TERMINATE_GRACE_SEC if forced else None)

        logger.debug("%s: exit status %s", label, process.returncode)

        if cancelled:
            outcome = PatchOutcome(ABNORMAL_EXIT, cancelled=True)
        elif timed_out:
            outcome = PatchOutcome(ABNORMAL_EXIT, timed_out=True)
        elif returncode is None or returncode < 0:
            logger.debug("%s: was killed by signal", label)
            outcome = PatchOutcome(ABNORMAL_EXIT)
        else:
            outcome = PatchOutcome(returncode)

        if decode_errors and self.strict_decode:
            raise decode_errors[0]
        return outcome

    def _wait(
        self,
        process: subprocess.Popen,
        cancel_token: Optional[CancelTokenProtocol],
        timeout_sec: Optional[float],
    ) -> Tuple[Optional[int], bool, bool]:
        label = self.tool_label
        deadline = time.monotonic() + timeout_sec if timeout_sec is not None else None
        try:
            if cancel_token is None and deadline is None:
                return process.wait(), False, False

            while True:
                try:
                    return process.wait(timeout=POLL_INTERVAL_SEC), False, False
                except subprocess.TimeoutExpired:
                    pass

                if is_cancelled(cancel_token):
                    logger.info("%s: cancelled, terminating pid %d", label, process.pid)
                    _terminate_process_tree(process)
                    return process.returncode, False, True

                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning("%s: timed out after %.1fs, terminating pid %d", label, timeout_sec, process.pid)
                    _terminate_process_tree(process)
                    return process.returncode, True, False
        except OSError as exc:
            raise WaitError(f"Unable to wait for {label} to complete: {exc}", pid=process.pid) from exc

    def _drain(
        self,
        stream: Optional[IO[bytes]],
        stream_name: str,
        decode_errors: List[DecodeError],
        log_cb: LogCallback,
    ) -> None:
        if stream is None:
            return
        label = self.tool_label
        try:
            # Keep reading after a bad line so the child never blocks on a full pipe.
            for raw in iter(stream.readline, b""):
                line = self._decode(raw, stream_name, decode_errors)
                if line is None:
                    continue
                line = line.rstrip("\r\n")

                if stream_name == "stdout":
                    trimmed = line.strip()
                    level = classify(trimmed, self.allow_list)
                    if level is None:
                        continue
                    message = f"{label}: {trimmed}"
                    logger.log(level, "%s", message)
                else:
                    message = f"{label} [err]: {line}"
                    logger.warning("%s", message)

                if log_cb is not None:
                    try:
                        log_cb(message)
                    except Exception:
                        logger.exception("%s: log callback failed", label)
        except (OSError, ValueError) as exc:
            logger.error("%s: reading %s failed: %s", label, stream_name, exc)
            if self.strict_decode:
                decode_errors.append(
                    DecodeError(f"Unable to read {label} {stream_name}: {exc}", stream=stream_name)
                )
        finally:
            try:
                stream.close()
            except OSError:
                logger.exception("%s: %s close failed", label, stream_name)

    def _decode(self, raw: bytes, stream_name: str, decode_errors: List[DecodeError]) -> Optional[str]:
        if not self.strict_decode:
            return raw.decode("utf-8", errors="replace")
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.error("%s: undecodable %s line: %s", self.tool_label, stream_name, exc)
            decode_errors.append(
                DecodeError(
                    f"{self.tool_label} wrote a non UTF-8 line to {stream_name}: {exc}",
                    stream=stream_name,
                )
            )
            return None

    def invoke_offset(
        self,
        handle: PatcherExecutable,
        request: OffsetPatchRequest,
        *,
        cancel_token: Optional[CancelTokenProtocol] = None,
        timeout_sec: Optional[float] = None,
        log_cb: LogCallback = None,
    ) -> PatchOutcome:
        """Slice one record out of a combined diff, patch with it, delete the slice.

        Raises:
            PatcherIOError: slicing failed, or the slice could not be deleted
                after a completed invocation
            SpawnError, WaitError, DecodeError: see ``invoke``
        """
        if is_cancelled(cancel_token):
            logger.debug("%s: cancelled before slicing", self.tool_label)
            return PatchOutcome(ABNORMAL_EXIT, cancelled=True)

        sliced = self.slicer.slice(request.diff, request.offset, request.length, request.dest)
        whole = PatchRequest(source=request.source, dest=request.dest, diff=sliced)
        try:
            outcome = self.invoke(handle, whole, cancel_token=cancel_token, timeout_sec=timeout_sec, log_cb=log_cb)
        except BaseException:
            self._remove_slice(sliced, propagate=False)
            raise
        self._remove_slice(sliced)
        return outcome

    def _remove_slice(self, sliced: Path, *, propagate: bool = True) -> None:
        logger.debug("%s: removing %s", self.tool_label, sliced)
        try:
            sliced.unlink()
        except OSError as exc:
            if not propagate:
                logger.error("%s: unable to delete diff patch offset %s: %s", self.tool_label, sliced, exc)
                return
            raise PatcherIOError(
                f"Unable to delete diff patch offset: {exc}",
                file_path=str(sliced),
                operation="cleanup",
            ) from exc
