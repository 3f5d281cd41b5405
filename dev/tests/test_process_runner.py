import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import pytest

from conftest import posix_only
from hpatchz_bridge.exceptions import DecodeError, PatcherIOError, SpawnError
from hpatchz_bridge.patching import (
    ABNORMAL_EXIT,
    DiffSlicer,
    OffsetPatchRequest,
    PatchOutcome,
    PatchRequest,
    ProcessRunner,
    process_runner,
)
from hpatchz_bridge.utils import CancelToken
from hpatchz_bridge.variants import PatcherVariant

pytestmark = [pytest.mark.integration, posix_only]

RUNNER_LOGGER = "hpatchz_bridge.patching.process_runner"
DATA = bytes(i % 253 for i in range(1000))


@dataclass
class _Exe:
    path: Path
    extra_args: Sequence[str] = field(default_factory=tuple)


@pytest.fixture
def exe(store):
    def make(*extra):
        return _Exe(store.materialize(PatcherVariant.KURO), tuple(extra))

    return make


@pytest.fixture
def diff_file(tmp_path):
    path = tmp_path / "update.diff"
    path.write_bytes(b"whole diff")
    return path


@pytest.fixture
def combined(tmp_path):
    path = tmp_path / "combined.diff"
    path.write_bytes(DATA)
    return path


def _runner_messages(caplog, level=None):
    return [
        r.getMessage()
        for r in caplog.records
        if r.name == RUNNER_LOGGER and (level is None or r.levelno == level)
    ]


def test_build_args_order():
    runner = ProcessRunner()
    request = PatchRequest(source="src", dest="out", diff="d.diff")
    args = runner.build_args(_Exe(Path("hpatchz"), ("-s-64m", "-n")), request)
    assert args == ["src", "d.diff", "out", "-f", "-s-64m", "-n"]


def test_outcome_flags():
    assert PatchOutcome(0).success
    assert not PatchOutcome(3).success
    assert PatchOutcome(ABNORMAL_EXIT).abnormal
    assert not PatchOutcome(ABNORMAL_EXIT, cancelled=True).success


def test_offset_request_rejects_negative_values():
    with pytest.raises(ValueError):
        OffsetPatchRequest(source="s", dest="d", diff="x", offset=-1, length=4)


def test_invoke_success_copies_diff(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    outcome = runner.invoke(exe(), PatchRequest(source, dest, diff_file))

    assert outcome == PatchOutcome(0)
    assert (dest / "patched.out").read_bytes() == b"whole diff"


def test_exit_code_is_passed_through(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    outcome = runner.invoke(exe("--exit=7"), PatchRequest(source, dest, diff_file))
    assert outcome.code == 7
    assert not outcome.abnormal


def test_signal_termination_maps_to_abnormal(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    outcome = runner.invoke(exe("--kill-self"), PatchRequest(source, dest, diff_file))
    assert outcome.code == ABNORMAL_EXIT
    assert not outcome.timed_out
    assert not outcome.cancelled


def test_stdout_milestones_and_stderr_levels(runner, exe, workdirs, diff_file, caplog):
    caplog.set_level(logging.DEBUG, logger="hpatchz_bridge")
    source, dest = workdirs

    runner.invoke(exe("--stderr=disk almost full"), PatchRequest(source, dest, diff_file))

    info = _runner_messages(caplog, logging.INFO)
    assert info == [
        "hpatchz: Patch inited",
        "hpatchz: begin patch file update.diff",
        "hpatchz: end patch file",
    ]
    assert "hpatchz [err]: disk almost full" in _runner_messages(caplog, logging.WARNING)
    assert not any("HDiffPatch" in m for m in _runner_messages(caplog))


def test_args_logged_at_debug(runner, exe, workdirs, diff_file, caplog):
    caplog.set_level(logging.DEBUG, logger="hpatchz_bridge")
    source, dest = workdirs
    runner.invoke(exe(), PatchRequest(source, dest, diff_file))

    debug = _runner_messages(caplog, logging.DEBUG)
    assert any(m.startswith("hpatchz: with args") and "-f" in m for m in debug)
    assert any(m == "hpatchz: exit status 0" for m in debug)


def test_log_callback_receives_surfaced_lines(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    seen = []
    runner.invoke(exe("--stderr=warn"), PatchRequest(source, dest, diff_file), log_cb=seen.append)

    assert "hpatchz: Patch inited" in seen
    assert "hpatchz [err]: warn" in seen
    assert len(seen) == 4


def test_failing_log_callback_does_not_stop_draining(runner, exe, workdirs, diff_file, caplog):
    caplog.set_level(logging.INFO, logger="hpatchz_bridge")
    source, dest = workdirs

    def broken(_message):
        raise RuntimeError("ui gone")

    outcome = runner.invoke(exe(), PatchRequest(source, dest, diff_file), log_cb=broken)

    assert outcome.code == 0
    assert "hpatchz: end patch file" in _runner_messages(caplog, logging.INFO)


def test_invalid_utf8_is_replaced_by_default(runner, exe, workdirs, diff_file, caplog):
    caplog.set_level(logging.INFO, logger="hpatchz_bridge")
    source, dest = workdirs
    outcome = runner.invoke(exe("--bad-bytes"), PatchRequest(source, dest, diff_file))

    assert outcome.code == 0
    assert any("\ufffd" in m and "begin patch file" in m for m in _runner_messages(caplog, logging.INFO))


def test_invalid_utf8_raises_in_strict_mode(exe, workdirs, diff_file):
    source, dest = workdirs
    runner = ProcessRunner(strict_decode=True)
    with pytest.raises(DecodeError) as exc:
        runner.invoke(exe("--bad-bytes"), PatchRequest(source, dest, diff_file))

    assert exc.value.details["stream"] == "stdout"
    # The child still ran to completion.
    assert (dest / "patched.out").exists()


def test_timeout_terminates_child(exe, workdirs, diff_file):
    source, dest = workdirs
    runner = ProcessRunner()
    started = time.monotonic()
    outcome = runner.invoke(exe("--sleep=20"), PatchRequest(source, dest, diff_file), timeout_sec=0.5)

    assert outcome.code == ABNORMAL_EXIT
    assert outcome.timed_out
    assert time.monotonic() - started < 10
    assert not (dest / "patched.out").exists()


def test_default_timeout_from_runner(exe, workdirs, diff_file):
    source, dest = workdirs
    runner = ProcessRunner(wait_timeout_sec=0.5)
    outcome = runner.invoke(exe("--sleep=20"), PatchRequest(source, dest, diff_file))
    assert outcome.timed_out


def test_cancel_terminates_child(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    token = CancelToken()
    timer = threading.Timer(0.3, token.cancel)
    timer.start()
    try:
        outcome = runner.invoke(exe("--sleep=20"), PatchRequest(source, dest, diff_file), cancel_token=token)
    finally:
        timer.cancel()

    assert outcome.code == ABNORMAL_EXIT
    assert outcome.cancelled
    assert not outcome.timed_out


def test_cancelled_token_skips_spawn(runner, exe, workdirs, diff_file):
    source, dest = workdirs
    token = CancelToken()
    token.cancel()
    outcome = runner.invoke(exe(), PatchRequest(source, dest, diff_file), cancel_token=token)

    assert outcome.cancelled
    assert not (dest / "patched.out").exists()


def test_spawn_failure_raises(runner, tmp_path, workdirs, diff_file):
    source, dest = workdirs
    missing = _Exe(tmp_path / "no_such_hpatchz")
    with pytest.raises(SpawnError) as exc:
        runner.invoke(missing, PatchRequest(source, dest, diff_file))
    assert exc.value.details["executable"] == str(tmp_path / "no_such_hpatchz")


def test_full_pipes_on_both_streams_do_not_stall(exe, workdirs, diff_file):
    source, dest = workdirs
    runner = ProcessRunner(wait_timeout_sec=60)
    outcome = runner.invoke(exe(f"--flood={4 * 1024 * 1024}"), PatchRequest(source, dest, diff_file))

    assert outcome == PatchOutcome(0)
    assert (dest / "patched.out").read_bytes() == b"whole diff"


def test_zero_timeout_is_not_unlimited(exe, workdirs, diff_file):
    source, dest = workdirs
    outcome = ProcessRunner().invoke(exe("--sleep=20"), PatchRequest(source, dest, diff_file), timeout_sec=0)
    assert outcome.timed_out


class _UnreadableStream:
    def __init__(self, wrapped):
        self._wrapped = wrapped

    def readline(self):
        raise OSError("pipe read failed")

    def close(self):
        self._wrapped.close()


@pytest.fixture
def unreadable_stdout(monkeypatch):
    real_popen = subprocess.Popen

    class _Popen(real_popen):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.stdout = _UnreadableStream(self.stdout)

    monkeypatch.setattr(process_runner.subprocess, "Popen", _Popen)


def test_pipe_read_failure_raises_in_strict_mode(unreadable_stdout, exe, workdirs, diff_file):
    source, dest = workdirs
    runner = ProcessRunner(strict_decode=True, wait_timeout_sec=30)
    with pytest.raises(DecodeError) as exc:
        runner.invoke(exe(), PatchRequest(source, dest, diff_file))
    assert exc.value.details["stream"] == "stdout"


def test_pipe_read_failure_is_logged_by_default(unreadable_stdout, exe, workdirs, diff_file, caplog):
    caplog.set_level(logging.ERROR, logger="hpatchz_bridge")
    source, dest = workdirs
    runner = ProcessRunner(wait_timeout_sec=30)

    outcome = runner.invoke(exe(), PatchRequest(source, dest, diff_file))

    assert not outcome.timed_out
    assert any("reading stdout failed" in m for m in _runner_messages(caplog, logging.ERROR))


def test_invoke_offset_patches_with_slice(runner, exe, workdirs, combined, tmp_path):
    source, dest = workdirs
    record = tmp_path / "calls.txt"
    request = OffsetPatchRequest(source, dest, combined, offset=200, length=300)

    outcome = runner.invoke_offset(exe(f"--record={record}"), request)

    assert outcome.code == 0
    assert (dest / "patched.out").read_bytes() == DATA[200:500]
    expected_slice = dest / "combined.diff_200_300.diff"
    assert str(expected_slice) in record.read_text(encoding="utf-8")
    assert not expected_slice.exists()


def test_sequential_offsets_into_different_destinations(runner, exe, tmp_path, combined):
    source = tmp_path / "source"
    source.mkdir()
    first = tmp_path / "out_a"
    second = tmp_path / "out_b"
    first.mkdir()
    second.mkdir()
    handle = exe()

    assert runner.invoke_offset(handle, OffsetPatchRequest(source, first, combined, 0, 100)).code == 0
    assert runner.invoke_offset(handle, OffsetPatchRequest(source, second, combined, 100, 250)).code == 0

    assert (first / "patched.out").read_bytes() == DATA[:100]
    assert (second / "patched.out").read_bytes() == DATA[100:350]
    assert sorted(p.name for p in first.iterdir()) == ["patched.out"]
    assert sorted(p.name for p in second.iterdir()) == ["patched.out"]


def test_invoke_offset_slice_failure_skips_spawn(runner, exe, workdirs, combined, tmp_path):
    source, dest = workdirs
    record = tmp_path / "calls.txt"
    with pytest.raises(PatcherIOError):
        runner.invoke_offset(exe(f"--record={record}"), OffsetPatchRequest(source, dest, combined, 5000, 10))
    assert not record.exists()


def test_invoke_offset_strict_truncation(exe, workdirs, combined):
    source, dest = workdirs
    runner = ProcessRunner(slicer=DiffSlicer(allow_truncated=False))
    with pytest.raises(PatcherIOError):
        runner.invoke_offset(exe(), OffsetPatchRequest(source, dest, combined, 900, 200))
    assert list(dest.iterdir()) == []


def test_invoke_offset_removes_slice_after_spawn_failure(runner, tmp_path, workdirs, combined):
    source, dest = workdirs
    with pytest.raises(SpawnError):
        runner.invoke_offset(_Exe(tmp_path / "missing"), OffsetPatchRequest(source, dest, combined, 0, 10))
    assert list(dest.iterdir()) == []


def test_invoke_offset_nonzero_exit_still_cleans_up(runner, exe, workdirs, combined):
    source, dest = workdirs
    outcome = runner.invoke_offset(exe("--exit=4"), OffsetPatchRequest(source, dest, combined, 10, 20))
    assert outcome.code == 4
    assert not (dest / "combined.diff_10_20.diff").exists()


def test_invoke_offset_cleanup_failure_raises(runner, exe, workdirs, combined):
    source, dest = workdirs
    with pytest.raises(PatcherIOError) as exc:
        runner.invoke_offset(exe("--delete-diff"), OffsetPatchRequest(source, dest, combined, 0, 50))
    assert exc.value.details["operation"] == "cleanup"
    assert (dest / "patched.out").read_bytes() == DATA[:50]


def test_from_settings_carries_options():
    from hpatchz_bridge.config import PatcherSettings

    settings = PatcherSettings(
        strict_decode=True,
        wait_timeout_sec=12.5,
        stdout_allow_list=["done"],
        allow_truncated_slice=False,
        copy_buffer_size=4096,
    )
    runner = ProcessRunner.from_settings(settings)

    assert runner.strict_decode is True
    assert runner.wait_timeout_sec == 12.5
    assert runner.allow_list == ("done",)
    assert runner.slicer.allow_truncated is False
    assert runner.slicer.buffer_size == 4096
