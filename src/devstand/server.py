from __future__ import annotations

import functools
import logging
import os
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional

import httpx

from .bootstrap.installer import (
    InstallStatus,
    JavaToolchainInstaller,
    NodeRuntimeInstaller,
)
from .config import DevstandConfig, ProjectDefinition, ProjectStore, load_config
from .errors import DependencyInstallFailed, NotAvailableForPlatform
from .events import ConsoleInstallListener, InstallListener, ProcessListener
from .models.responses import (
    InstallResult,
    ProjectOutput,
    ProjectStatus,
    RuntimeSummary,
    StartResult,
)
from .runtime.catalog import JavaCatalog, NodeCatalog, current_os
from .runtime.specs import DEFAULT_READINESS_PATTERNS, NODE_VERSIONS, project_start_args
from .runtime.types import InstalledRuntimeLocation, RuntimePurpose
from .supervisor import PortReclaimer, ProcessSupervisor, StartRequest
from .supervisor.termination import terminate_tree_sync

logger = logging.getLogger(__name__)

OUTPUT_BUFFER_LINES = 500


class _OutputRecorder(ProcessListener):
    """Keeps the most recent output lines of one project."""

    def __init__(self, buffer: Deque[str]) -> None:
        self.buffer = buffer
        self.dropped = 0

    def _append(self, line: str) -> None:
        if len(self.buffer) == self.buffer.maxlen:
            self.dropped += 1
        self.buffer.append(line)

    def on_output(self, line: str) -> None:
        self._append(line)

    def on_error(self, message: str) -> None:
        self._append(f"❌ {message}")

    def on_ready(self) -> None:
        self._append("✅ Ready")

    def on_exit(self, exit_code: Optional[int]) -> None:
        self._append(f"⏹️  Exited with code {exit_code}")


def _install_result(
    purpose: RuntimePurpose, location: InstalledRuntimeLocation
) -> InstallResult:
    return InstallResult(
        runtime=purpose.value,
        version=location.version,
        os_name=location.os_name,
        root_dir=str(location.root_dir),
        executable=str(location.executable_path),
        package_manager=str(location.package_manager_executable_path),
        tool=str(location.tool_executable_path) if location.tool_executable_path else None,
        java_home=str(location.home_dir) if location.home_dir else None,
    )


class DevstandServer:
    """Server facade composing installers, the project store and the supervisor."""

    def __init__(
        self,
        project_path: Optional[str] = None,
        config: Optional[DevstandConfig] = None,
        listener: Optional[InstallListener] = None,
        client: Optional[httpx.AsyncClient] = None,
        reclaimer: Optional[PortReclaimer] = None,
    ) -> None:
        self.project_path = project_path or os.getcwd()
        self.config = config or load_config(Path(self.project_path))
        self.base_path = self.config.base_path
        self.listener = listener or ConsoleInstallListener()

        transfer = self.config.transfer
        common = dict(
            max_redirects=transfer.max_redirects,
            progress_interval=transfer.progress_interval_ms / 1000.0,
            download_timeout=transfer.timeout_s,
        )
        self.node_catalog = NodeCatalog(self.base_path)
        self.java_catalog = JavaCatalog(self.base_path)
        self.node = NodeRuntimeInstaller(
            self.node_catalog,
            listener=self.listener,
            client=client,
            companion_timeout=self.config.install.companion_timeout_s,
            **common,
        )
        self.java = JavaToolchainInstaller(
            self.java_catalog,
            listener=self.listener,
            client=client,
            fallback_version=self.config.java.fallback_version,
            **common,
        )
        self.store = ProjectStore(self.config.project_store_path)
        self.supervisor = ProcessSupervisor(
            reclaimer=reclaimer,
            grace_period=self.config.supervisor.grace_period_s,
            port_retry_delay=self.config.supervisor.port_retry_delay_s,
        )
        self._output: Dict[str, Deque[str]] = {}
        self._recorders: Dict[str, _OutputRecorder] = {}

    async def start(self) -> None:
        """Prepare the runtime directory."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info("Runtimes directory: %s", self.base_path)

    async def stop(self) -> None:
        """Stop every supervised project."""
        await self.supervisor.stop_all()

    def kill_all_sync(self) -> None:
        """Kill supervised process trees without an event loop (exit hooks)."""
        for info in self.supervisor.status().values():
            pid = info.get("pid")
            if pid and info.get("alive"):
                terminate_tree_sync(pid, grace_period=2.0, process_group=os.name != "nt")

    # Runtimes
    async def ensure_installed(
        self,
        version: str,
        os_name: Optional[str] = None,
        purpose: RuntimePurpose = RuntimePurpose.NODE,
    ) -> InstalledRuntimeLocation:
        if purpose is RuntimePurpose.NODE:
            return await self.node.ensure_installed(version, os_name)
        return await self.java.ensure_installed(version, os_name)

    async def install_runtime(
        self, version: str, runtime: str = "node", os_name: Optional[str] = None
    ) -> InstallResult:
        purpose = RuntimePurpose(runtime)
        location = await self.ensure_installed(version, os_name, purpose)
        return _install_result(purpose, location)

    async def reinstall_runtime(
        self, version: str, runtime: str = "node", os_name: Optional[str] = None
    ) -> InstallResult:
        purpose = RuntimePurpose(runtime)
        installer = self.node if purpose is RuntimePurpose.NODE else self.java
        location = await installer.reinstall(version, os_name)
        return _install_result(purpose, location)

    async def install_custom_node(
        self, version: str, url: str, companion_package: Optional[str] = None
    ) -> InstallResult:
        location = await self.node.install_custom(version, url, companion_package)
        return _install_result(RuntimePurpose.NODE, location)

    async def ensure_java_for_project(
        self,
        project_dir: Optional[str] = None,
        manifest_url: Optional[str] = None,
    ) -> InstallResult:
        location = await self.java.ensure_for_project(
            project_dir=project_dir,
            manifest_url=manifest_url or self.config.java.manifest_url,
        )
        return _install_result(RuntimePurpose.JAVA, location)

    def list_runtimes(self, os_name: Optional[str] = None) -> List[RuntimeSummary]:
        """Catalog versions with their install status, plus any extra installs found."""
        os_name = os_name or current_os()
        summaries: List[RuntimeSummary] = []

        for version in self.node_catalog.versions:
            spec = self.node_catalog.find_spec(version)
            if spec is None or not spec.supports(os_name):
                summaries.append(RuntimeSummary("node", version, os_name, "unavailable"))
                continue
            location = self.node_catalog.locate(version, os_name)
            summaries.append(
                RuntimeSummary(
                    runtime="node",
                    version=version,
                    os_name=os_name,
                    status=self.node.status(version, os_name).value,
                    root_dir=str(location.root_dir),
                    executable=str(location.executable_path) if location.is_installed else None,
                    companion_package=spec.companion_package,
                    custom=version not in NODE_VERSIONS,
                )
            )

        known = set(self.node_catalog.versions)
        for location in self.node_catalog.list_installed(os_name):
            if location.version not in known:
                summaries.append(
                    RuntimeSummary(
                        runtime="node",
                        version=location.version,
                        os_name=os_name,
                        status=InstallStatus.INSTALLED.value,
                        root_dir=str(location.root_dir),
                        executable=str(location.executable_path),
                        custom=True,
                    )
                )

        for version in self.java_catalog.versions:
            try:
                self.java_catalog.resolve_download_url(version, os_name)
            except NotAvailableForPlatform:
                summaries.append(RuntimeSummary("java", version, os_name, "unavailable"))
                continue
            location = self.java_catalog.locate(version, os_name)
            summaries.append(
                RuntimeSummary(
                    runtime="java",
                    version=version,
                    os_name=os_name,
                    status=self.java.status(version, os_name).value,
                    root_dir=str(location.root_dir),
                    executable=str(location.executable_path) if location.is_installed else None,
                )
            )
        return summaries

    # Projects
    def _definition(self, name: str) -> Optional[ProjectDefinition]:
        return self.config.projects.get(name)

    async def start_project(
        self,
        name: str,
        project_dir: Optional[str] = None,
        port: Optional[int] = None,
        runtime: Optional[str] = None,
        version: Optional[str] = None,
        args: Optional[List[str]] = None,
        readiness_patterns: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        startup_timeout: Optional[float] = None,
    ) -> StartResult:
        """Install the project's runtime if needed, then start it.

        A Node.js project with a ``package.json`` but no ``node_modules``
        gets ``npm install`` first; a failure there fails the start.

        Unspecified settings come from ``[projects.<name>]`` in the config,
        then the project store, then per-runtime defaults.
        """
        definition = self._definition(name)
        purpose = RuntimePurpose(runtime or (definition.runtime if definition else "node"))
        directory = project_dir or (definition.path if definition else None)
        if directory is None:
            raise ValueError(f"No directory known for project '{name}'")

        port = port if port is not None else (definition.port if definition else None)
        version = version or (definition.version if definition else None)

        # installs run inside the supervised start so cancel_project reaches them
        prepare = None
        if purpose is RuntimePurpose.NODE:
            resolve = functools.partial(
                self.node.ensure_installed, version or self.store.get_version(name)
            )
            prepare = self._install_dependencies
        elif version:
            resolve = functools.partial(self.java.ensure_installed, version)
        else:
            resolve = functools.partial(
                self.java.ensure_for_project,
                project_dir=directory,
                manifest_url=(definition.manifest_url if definition else None)
                or self.config.java.manifest_url,
            )

        overrides = self.store.get_env(name)
        overrides.update(env or {})

        request = StartRequest(
            project_name=name,
            project_dir=directory,
            port=port,
            readiness_patterns=readiness_patterns
            or (definition.readiness_patterns if definition else None)
            or DEFAULT_READINESS_PATTERNS[purpose],
            args=args
            or (definition.args if definition else None)
            or project_start_args(name, purpose),
            env=overrides,
            startup_timeout=startup_timeout
            if startup_timeout is not None
            else self.config.supervisor.startup_timeout_s,
            resolve_runtime=resolve,
            prepare=prepare,
        )

        buffer: Deque[str] = deque(maxlen=OUTPUT_BUFFER_LINES)
        recorder = _OutputRecorder(buffer)
        self._output[name] = buffer
        self._recorders[name] = recorder

        handle = await self.supervisor.start(request, recorder)
        return StartResult(
            project=name,
            ready=handle.ready,
            pid=handle.pid,
            port=handle.port,
            runtime_version=handle.runtime_version,
            exit_code=handle.exit_code,
            message=f"{name} is ready" if handle.ready else f"{name} exited cleanly before becoming ready",
        )

    async def _install_dependencies(self, request: StartRequest, listener: ProcessListener) -> None:
        """Run ``npm install`` once for a project that has never been installed."""
        project_dir = Path(request.project_dir)
        if (project_dir / "node_modules").is_dir() or not (project_dir / "package.json").is_file():
            return

        name = request.project_name
        listener.on_output("📦 Installing dependencies (npm install)...")
        try:
            exit_code = await self.node.install_dependencies(
                request.location,
                project_dir,
                listener.on_output,
                timeout=self.config.install.dependencies_timeout_s,
                env=request.env,
            )
        except OSError as e:
            raise DependencyInstallFailed(name, None, reason=str(e)) from e
        if exit_code != 0:
            raise DependencyInstallFailed(name, exit_code)
        listener.on_output("✅ Dependencies installed")

    async def stop_project(self, name: str) -> bool:
        return await self.supervisor.stop(name)

    async def cancel_project(self, name: str) -> bool:
        return await self.supervisor.cancel(name)

    def project_status(self, name: Optional[str] = None) -> List[ProjectStatus]:
        statuses = []
        for project, info in self.supervisor.status().items():
            if name is not None and project != name:
                continue
            statuses.append(
                ProjectStatus(
                    project=project,
                    state=info["state"],
                    running=info["running"],
                    pid=info.get("pid"),
                    port=info.get("port"),
                    runtime_version=info.get("runtime_version"),
                    started_at=info.get("started_at"),
                    ready=info.get("ready", False),
                )
            )
        if name is not None and not statuses:
            statuses.append(ProjectStatus(project=name, state="idle", running=False))
        return statuses

    def get_output(self, name: str, limit: int = 100) -> ProjectOutput:
        buffer = self._output.get(name)
        if buffer is None:
            return ProjectOutput(project=name)
        lines: List[str] = list(buffer)[-limit:] if limit > 0 else list(buffer)
        recorder = self._recorders.get(name)
        truncated = len(lines) < len(buffer) or bool(recorder and recorder.dropped)
        return ProjectOutput(project=name, lines=lines, truncated=truncated)
