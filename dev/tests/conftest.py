from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hpatchz_bridge.patching import PayloadStore, ProcessRunner
from hpatchz_bridge.variants import PatcherVariant

FAKE_PATCHER_SOURCE = """#!{python}
import os
import shutil
import signal
import sys
import time

args = sys.argv[1:]
source, diff, dest = args[0], args[1], args[2]
options = args[3:]


def out(text):
    sys.stdout.write(text + "\\n")
    sys.stdout.flush()


exit_code = 0
for opt in options:
    if opt.startswith("--sleep="):
        time.sleep(float(opt.split("=", 1)[1]))
    elif opt.startswith("--exit="):
        exit_code = int(opt.split("=", 1)[1])
    elif opt.startswith("--stderr="):
        sys.stderr.write(opt.split("=", 1)[1] + "\\n")
        sys.stderr.flush()
    elif opt.startswith("--record="):
        with open(opt.split("=", 1)[1], "a", encoding="utf-8") as f:
            f.write(" ".join(args) + "\\n")
    elif opt == "--bad-bytes":
        sys.stdout.buffer.write(b"\\xff\\xfe begin patch file\\n")
        sys.stdout.flush()
    elif opt == "--kill-self":
        os.kill(os.getpid(), signal.SIGTERM)
        time.sleep(5)
    elif opt.startswith("--flood="):
        chunk = "x" * 1023 + "\\n"
        count = int(opt.split("=", 1)[1]) // len(chunk)
        for stream in (sys.stderr, sys.stdout):
            for _ in range(count):
                stream.write(chunk)
            stream.flush()
    elif opt == "--delete-diff":
        shutil.copyfile(diff, os.path.join(dest, "patched.out"))
        os.remove(diff)
        sys.exit(exit_code)

out("Patch inited")
out("HDiffPatch v4.8.0")
out("begin patch file " + os.path.basename(diff))
if os.path.isdir(dest) and os.path.isfile(diff):
    shutil.copyfile(diff, os.path.join(dest, "patched.out"))
out("end patch file")
sys.exit(exit_code)
"""

posix_only = pytest.mark.skipif(os.name == "nt", reason="fake patcher relies on a shebang line")


def fake_patcher_bytes() -> bytes:
    return FAKE_PATCHER_SOURCE.format(python=sys.executable).encode("utf-8")


@pytest.fixture
def payloads():
    image = fake_patcher_bytes()
    return {variant: image for variant in PatcherVariant}


@pytest.fixture
def store(tmp_path, payloads):
    return PayloadStore(tmp_path / "payloads", payloads=payloads)


@pytest.fixture
def runner():
    return ProcessRunner(wait_timeout_sec=30)


@pytest.fixture
def workdirs(tmp_path):
    source = tmp_path / "source"
    dest = tmp_path / "dest"
    source.mkdir()
    dest.mkdir()
    return source, dest
