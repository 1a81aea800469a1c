"""Pytest configuration and shared fixtures."""

import io
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from devstand.events import InstallListener, ProcessListener
from devstand.runtime.catalog import NodeCatalog

# Archive members: relative path -> (content, mode)
Members = Dict[str, Tuple[bytes, int]]


def build_tar(members: Members, compression: str = "gz") -> bytes:
    """Build a tar archive in memory (``compression`` is "gz" or "xz")."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=f"w:{compression}") as tf:
        for name, (content, mode) in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = mode
            tf.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def build_zip(members: Members) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, (content, mode) in members.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = mode << 16
            zf.writestr(info, content)
    return buffer.getvalue()


def node_members(root: str, npm_script: Optional[bytes] = None) -> Members:
    """A minimal POSIX Node.js layout under ``root``."""
    return {
        f"{root}/bin/node": (b"#!/bin/sh\n", 0o755),
        f"{root}/bin/npm": (npm_script or b"#!/bin/sh\n", 0o755),
        f"{root}/README.md": (b"node", 0o644),
    }


class ArchiveServer:
    """Serves archives by URL path through an httpx MockTransport."""

    def __init__(self) -> None:
        self.routes: Dict[str, httpx.Response] = {}
        self.requests: List[str] = []

    def add(self, path: str, content: bytes, status_code: int = 200) -> None:
        self.routes[path] = httpx.Response(status_code, content=content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        response = self.routes.get(request.url.path)
        if response is None:
            return httpx.Response(404)
        return httpx.Response(response.status_code, content=response.content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class RecordingInstallListener(InstallListener):
    def __init__(self) -> None:
        self.progress: List[Tuple[Optional[float], str]] = []
        self.logs: List[str] = []

    def on_progress(self, percent, status):
        self.progress.append((percent, status))

    def on_log(self, message, is_error=False):
        self.logs.append(message)


class RecordingProcessListener(ProcessListener):
    """Records every callback in order as ``(event, payload)``."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, object]] = []

    def on_output(self, line):
        self.events.append(("output", line))

    def on_error(self, message):
        self.events.append(("error", message))

    def on_ready(self):
        self.events.append(("ready", None))

    def on_exit(self, exit_code):
        self.events.append(("exit", exit_code))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def lines(self) -> List[str]:
        return [payload for name, payload in self.events if name == "output"]


class FakeReclaimer:
    """Stands in for PortReclaimer; records ports instead of killing anything."""

    def __init__(self) -> None:
        self.calls: List[int] = []

    async def free_port(self, port: int) -> List[int]:
        self.calls.append(port)
        return []


posix_only = pytest.mark.skipif(
    sys.platform.startswith("win"), reason="uses POSIX shell scripts"
)


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    path = tmp_path / "runtimes"
    path.mkdir()
    return path


@pytest.fixture
def archive_server() -> ArchiveServer:
    return ArchiveServer()


@pytest.fixture
def install_listener() -> RecordingInstallListener:
    return RecordingInstallListener()


@pytest.fixture
def process_listener() -> RecordingProcessListener:
    return RecordingProcessListener()


@pytest.fixture
def fake_reclaimer() -> FakeReclaimer:
    return FakeReclaimer()


@pytest.fixture
def install_fake_node() -> Callable[..., Path]:
    """Lay out an installed Node.js runtime without downloading anything.

    Returns the runtime root. ``npm_script`` becomes the content of npm
    (made executable) so tests can control what ``npm start`` does.
    """

    def _install(
        catalog: NodeCatalog,
        version: str,
        os_name: str,
        npm_script: Optional[str] = None,
        with_tool: bool = True,
    ) -> Path:
        location = catalog.resolve_installed_paths(version, os_name)
        paths = [location.executable_path, location.package_manager_executable_path]
        if with_tool and location.tool_executable_path is not None:
            paths.append(location.tool_executable_path)
        for path in paths:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("#!/bin/sh\n")
            path.chmod(0o755)
        if npm_script is not None:
            location.package_manager_executable_path.write_text(npm_script)
        return location.root_dir

    return _install
