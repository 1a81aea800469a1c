"""Integration tests for the DevstandServer facade.

A fake Node.js runtime is laid out on disk with an ``npm`` shell script
standing in for the dev server, so projects start for real without any
download.
"""

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from conftest import ArchiveServer, FakeReclaimer, build_tar, posix_only
from devstand.config import DevstandConfig, ProjectDefinition
from devstand.config.parser import BASE_PATH_ENV
from devstand.config.store import encode_env_overrides
from devstand.errors import DependencyInstallFailed, StartCancelled, StartFailed
from devstand.runtime.catalog import current_os
from devstand.server import DevstandServer

NPM_DEV_SERVER = """#!/bin/sh
echo "starting $1 with API_URL=$API_URL"
echo "Compiled successfully"
exec sleep 30
"""

NPM_CRASH = """#!/bin/sh
echo "npm ERR! missing script: start"
exit 1
"""

NPM_WITH_INSTALL = """#!/bin/sh
if [ "$1" = "install" ]; then
  echo "added 3 packages"
  mkdir node_modules
  exit 0
fi
echo "starting $1"
echo "Compiled successfully"
exec sleep 30
"""

NPM_BROKEN_INSTALL = """#!/bin/sh
if [ "$1" = "install" ]; then
  echo "npm ERR! ERESOLVE unable to resolve dependency tree"
  exit 2
fi
echo "Compiled successfully"
exec sleep 30
"""

NPM_ECHO_ARGS = """#!/bin/sh
echo "npm $*"
echo "Compiled successfully"
exec sleep 30
"""


def _config(tmp_path: Path) -> DevstandConfig:
    config = DevstandConfig(project_root=tmp_path)
    config.paths.base_path = str(tmp_path / "runtimes")
    config.supervisor.grace_period_s = 2.0
    config.supervisor.port_retry_delay_s = 0
    return config


@pytest.fixture(autouse=True)
def _no_base_path_override(monkeypatch):
    monkeypatch.delenv(BASE_PATH_ENV, raising=False)


@pytest_asyncio.fixture
async def server(tmp_path: Path):
    srv = DevstandServer(
        project_path=str(tmp_path), config=_config(tmp_path), reclaimer=FakeReclaimer()
    )
    await srv.start()
    yield srv
    await srv.stop()


class TestRuntimeListing:
    """Test list_runtimes against what is on disk."""

    @pytest.mark.asyncio
    async def test_lists_catalog_with_status(self, server: DevstandServer, install_fake_node):
        install_fake_node(server.node_catalog, "16.10.0", current_os())

        summaries = server.list_runtimes()
        node = {s.version: s for s in summaries if s.runtime == "node"}

        assert node["16.10.0"].status == "installed"
        assert node["16.10.0"].executable is not None
        assert node["18.18.2"].status == "missing"
        assert node["18.18.2"].executable is None
        assert any(s.runtime == "java" for s in summaries)

    @pytest.mark.asyncio
    async def test_unavailable_platform(self, server: DevstandServer):
        summaries = server.list_runtimes("mac-arm64")
        node = {s.version: s.status for s in summaries if s.runtime == "node"}

        assert node["16.10.0"] == "unavailable"
        assert node["20.19.5"] == "missing"

    @pytest.mark.asyncio
    async def test_extra_installed_versions_listed(self, server: DevstandServer, install_fake_node):
        from devstand.runtime.types import RuntimeVersionSpec

        os_name = current_os()
        server.node_catalog.register(
            RuntimeVersionSpec(version="9.9.9", downloads={os_name: "https://h/node-v9.9.9-x.tar.gz"})
        )
        install_fake_node(server.node_catalog, "9.9.9", os_name)
        # forget it again: only the folder on disk remains
        server.node_catalog._versions.pop("9.9.9")

        summaries = server.list_runtimes()

        extra = [s for s in summaries if s.version == "9.9.9"]
        assert len(extra) == 1
        assert extra[0].custom is True
        assert extra[0].status == "installed"


class TestInstall:
    @pytest.mark.asyncio
    async def test_install_runtime_uses_shared_client(self, tmp_path: Path, archive_server: ArchiveServer):
        os_name = current_os()
        archive_server.add(
            "/mirror/node-v9.9.9.tar.gz",
            build_tar(
                {
                    "node-v9.9.9/bin/node": (b"", 0o755),
                    "node-v9.9.9/bin/npm": (b"", 0o755),
                    "node-v9.9.9/node.exe": (b"", 0o755),
                    "node-v9.9.9/npm.cmd": (b"", 0o755),
                }
            ),
        )

        async with archive_server.client() as client:
            server = DevstandServer(
                project_path=str(tmp_path), config=_config(tmp_path), client=client
            )
            result = await server.install_custom_node(
                "9.9.9", "https://mirror.example.test/mirror/node-v9.9.9.tar.gz"
            )
            again = await server.install_runtime("9.9.9")

        assert result.runtime == "node"
        assert result.os_name == os_name
        assert Path(result.executable).is_file()
        assert again == result
        assert len(archive_server.requests) == 1

    @pytest.mark.asyncio
    async def test_reinstall_java_clears_stale_archive(self, tmp_path: Path, archive_server: ArchiveServer):
        archive_server.add(
            "/download-jdk/microsoft-jdk-17.0.13-linux-x64.tar.gz",
            build_tar({"jdk-17.0.13+11/bin/java": (b"", 0o755)}),
        )
        archive_server.add(
            "/maven/maven-3/3.9.11/binaries/apache-maven-3.9.11-bin.tar.gz",
            build_tar({"apache-maven-3.9.11/bin/mvn": (b"", 0o755)}),
        )

        async with archive_server.client() as client:
            server = DevstandServer(
                project_path=str(tmp_path), config=_config(tmp_path), client=client
            )
            stale = server.java_catalog.jdk_archive_path("17", "linux")
            stale.parent.mkdir(parents=True)
            stale.write_bytes(b"truncated")

            result = await server.reinstall_runtime("17", runtime="java", os_name="linux")

        assert result.runtime == "java"
        assert result.java_home == str(server.java_catalog.jdk_dir("17"))
        assert Path(result.package_manager).is_file()
        assert not stale.exists()


@posix_only
class TestProjects:
    """Test starting and stopping projects through the facade."""

    @pytest.mark.asyncio
    async def test_start_configured_project(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_DEV_SERVER)
        project = tmp_path / "web"
        project.mkdir()
        server.config.projects["web"] = ProjectDefinition(
            name="web", path=str(project), port=4200, version="16.10.0"
        )

        result = await server.start_project("web")

        assert result.ready is True
        assert result.port == 4200
        assert result.runtime_version == "16.10.0"
        assert server.supervisor.reclaimer.calls == [4200]
        assert server.project_status("web")[0].state == "running"

        output = server.get_output("web")
        assert "Compiled successfully" in output.lines
        assert "starting start with API_URL=" in output.lines

        assert await server.stop_project("web") is True
        assert server.project_status("web")[0].state == "idle"

    @pytest.mark.asyncio
    async def test_store_supplies_version_and_env(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "18.18.2", current_os(), npm_script=NPM_DEV_SERVER)
        server.store.path.write_text(
            json.dumps(
                {
                    "versions": {"admin": "18.18.2"},
                    "env": {"admin": encode_env_overrides({"API_URL": "http://api.local"})},
                }
            )
        )

        result = await server.start_project("admin", project_dir=str(tmp_path))

        assert result.runtime_version == "18.18.2"
        assert "starting start with API_URL=http://api.local" in server.get_output("admin").lines

    @pytest.mark.asyncio
    async def test_crash_before_ready(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_CRASH)

        with pytest.raises(StartFailed) as exc_info:
            await server.start_project("broken", project_dir=str(tmp_path), version="16.10.0")

        assert exc_info.value.exit_code == 1
        output = server.get_output("broken")
        assert "npm ERR! missing script: start" in output.lines
        assert output.lines[-1] == "⏹️  Exited with code 1"

    @pytest.mark.asyncio
    async def test_unknown_directory(self, server: DevstandServer):
        with pytest.raises(ValueError):
            await server.start_project("nowhere")

    @pytest.mark.asyncio
    async def test_output_limit(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_DEV_SERVER)
        await server.start_project("web", project_dir=str(tmp_path), version="16.10.0")

        output = server.get_output("web", limit=1)

        assert len(output.lines) == 1
        assert output.truncated is True

    @pytest.mark.asyncio
    async def test_unknown_project_status(self, server: DevstandServer):
        status = server.project_status("ghost")

        assert len(status) == 1
        assert status[0].running is False
        assert server.get_output("ghost").lines == []

    @pytest.mark.asyncio
    async def test_cancel_during_runtime_install(
        self, server: DevstandServer, install_fake_node, tmp_path, monkeypatch
    ):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_DEV_SERVER)
        entered = asyncio.Event()
        release = asyncio.Event()
        original = server.node.ensure_installed

        async def slow_install(version, os_name=None):
            entered.set()
            await release.wait()
            return await original(version, os_name)

        monkeypatch.setattr(server.node, "ensure_installed", slow_install)
        task = asyncio.create_task(
            server.start_project("web", project_dir=str(tmp_path), version="16.10.0")
        )
        await entered.wait()
        assert server.project_status("web")[0].state == "starting"

        assert await server.cancel_project("web") is True
        release.set()

        with pytest.raises(StartCancelled):
            await task
        assert server.supervisor.get_handle("web") is None
        assert server.project_status("web")[0].state == "idle"
        assert "Compiled successfully" not in server.get_output("web").lines


@posix_only
class TestProjectDependencies:
    """Test the ``npm install`` that precedes a project's first start."""

    @staticmethod
    def _project(tmp_path: Path) -> Path:
        project = tmp_path / "web"
        project.mkdir()
        (project / "package.json").write_text('{"name": "web"}')
        return project

    @pytest.mark.asyncio
    async def test_installs_when_node_modules_missing(
        self, server: DevstandServer, install_fake_node, tmp_path
    ):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_WITH_INSTALL)
        project = self._project(tmp_path)

        result = await server.start_project("web", project_dir=str(project), version="16.10.0")

        assert result.ready is True
        assert (project / "node_modules").is_dir()
        lines = server.get_output("web").lines
        assert "📦 Installing dependencies (npm install)..." in lines
        assert "added 3 packages" in lines
        assert lines.index("✅ Dependencies installed") < lines.index("starting start")

        await server.stop_project("web")
        await server.start_project("web", project_dir=str(project), version="16.10.0")

        assert "added 3 packages" not in server.get_output("web").lines

    @pytest.mark.asyncio
    async def test_failed_install_fails_the_start(
        self, server: DevstandServer, install_fake_node, tmp_path
    ):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_BROKEN_INSTALL)
        project = self._project(tmp_path)

        with pytest.raises(DependencyInstallFailed) as exc_info:
            await server.start_project("web", project_dir=str(project), version="16.10.0")

        assert exc_info.value.exit_code == 2
        lines = server.get_output("web").lines
        assert "npm ERR! ERESOLVE unable to resolve dependency tree" in lines
        assert lines[-1] == "❌ Installing dependencies for web exited with code 2"
        assert "Compiled successfully" not in lines
        assert server.supervisor.get_handle("web") is None

    @pytest.mark.asyncio
    async def test_no_package_json_skips_install(
        self, server: DevstandServer, install_fake_node, tmp_path
    ):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_WITH_INSTALL)

        await server.start_project("web", project_dir=str(tmp_path), version="16.10.0")

        assert not (tmp_path / "node_modules").exists()
        assert "📦 Installing dependencies (npm install)..." not in server.get_output("web").lines


@posix_only
class TestProjectStartArgs:
    """Test the npm script chosen for well-known project names."""

    @pytest.mark.asyncio
    async def test_single_spa_project(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_ECHO_ARGS)

        await server.start_project(
            "mp-pas-configuracoes", project_dir=str(tmp_path), version="16.10.0"
        )

        assert "npm run serve:single-spa:pas-configuracoes" in server.get_output(
            "mp-pas-configuracoes"
        ).lines

    @pytest.mark.asyncio
    async def test_root_project(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_ECHO_ARGS)

        await server.start_project("mp-pas-root", project_dir=str(tmp_path), version="16.10.0")

        assert "npm run start" in server.get_output("mp-pas-root").lines

    @pytest.mark.asyncio
    async def test_explicit_args_win(self, server: DevstandServer, install_fake_node, tmp_path):
        install_fake_node(server.node_catalog, "16.10.0", current_os(), npm_script=NPM_ECHO_ARGS)

        await server.start_project(
            "mp-pas-root", project_dir=str(tmp_path), version="16.10.0", args=["run", "dev"]
        )

        assert "npm run dev" in server.get_output("mp-pas-root").lines
