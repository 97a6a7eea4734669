"""Shared fixtures: fake cluster binaries in a temporary work directory."""

import os
import stat
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


def write_script(path: Path, body: str) -> Path:
    """Write an executable /bin/sh script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def pid_running(pid: int) -> bool:
    """True if pid exists and is not a zombie."""
    stat_path = Path(f"/proc/{pid}/stat")
    if stat_path.exists():
        try:
            fields = stat_path.read_text().rsplit(")", 1)[1].split()
        except (OSError, IndexError):
            return False
        return fields[0] != "Z"
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.fixture
def make_script(tmp_path):
    """Factory writing executable scripts under tmp_path."""

    def factory(relative: str, body: str) -> Path:
        return write_script(tmp_path / relative, body)

    return factory


@pytest.fixture
def workdir(tmp_path, make_script):
    """
    Work directory laid out like a build tree, with every external binary
    replaced by a shell script. Each fake records its argv under calls/.
    """
    calls = tmp_path / "calls"
    calls.mkdir()

    make_script("bin/ekiden-node-dummy", f'echo "$@" > {calls}/dummy.txt\nexec sleep 60')
    make_script("bin/ekiden-compute", f'echo "$@" >> {calls}/compute.txt\nexec sleep 60')
    make_script("bin/controller", f'echo "$@" >> {calls}/controller.txt')
    make_script("target/debug/gateway", f'echo "$@" > {calls}/gateway.txt\nexec sleep 60')
    make_script("bin/client", f'echo "client ran in $(pwd)" > {calls}/client.txt')

    enclave = tmp_path / "target" / "enclave"
    enclave.mkdir(parents=True)
    (enclave / "runtime-ethereum.mrenclave").write_text("c0ffee1234\n")
    (enclave / "runtime-ethereum.so").write_bytes(b"")
    (tmp_path / "tests").mkdir()

    return tmp_path
