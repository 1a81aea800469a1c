"""Unit tests for process-tree termination."""

import asyncio
import sys
from pathlib import Path

import pytest

from conftest import posix_only
from devstand.supervisor.termination import terminate_child

CHILD_SCRIPT = """
import signal, sys, time
ready, marker = sys.argv[1], sys.argv[2]

def shutdown(signum, frame):
    time.sleep(0.5)
    open(marker, "w").close()
    sys.exit(0)

signal.signal(signal.SIGTERM, shutdown)
open(ready, "w").close()
while True:
    time.sleep(0.1)
"""

PARENT_SCRIPT = """
import subprocess, sys, time
subprocess.Popen([sys.executable, "-c", sys.argv[1], sys.argv[2], sys.argv[3]])
time.sleep(30)
"""


async def _wait_for_file(path: Path) -> None:
    for _ in range(200):
        if path.exists():
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"{path} never appeared")


@posix_only
class TestTerminateChild:
    """Test graceful shutdown of a spawned process and its descendants."""

    @pytest.mark.asyncio
    async def test_exited_process(self):
        process = await asyncio.create_subprocess_exec(sys.executable, "-c", "pass")
        await process.wait()

        assert await terminate_child(process, grace_period=1.0) is True

    @pytest.mark.asyncio
    async def test_descendants_get_the_grace_period(self, tmp_path: Path):
        """Test that a child with a slow shutdown handler is not killed early.

        The parent dies on the first signal; the child needs half a second
        to finish, well inside the grace period.
        """
        ready = tmp_path / "ready"
        marker = tmp_path / "shutdown-complete"
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            PARENT_SCRIPT,
            CHILD_SCRIPT,
            str(ready),
            str(marker),
            stdout=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        await _wait_for_file(ready)

        await terminate_child(process, grace_period=3.0)

        assert process.returncode is not None
        assert marker.exists()
