"""Portable runtime installation and verification.

Each ``ensure_installed`` call walks the same state machine:

    check installed -> (done)
    check installed -> download -> extract -> companion tool -> cleanup -> verify

"Installed" means the runtime's executables exist on disk; there is no
separate manifest. An archive left behind by an interrupted run is
extracted directly before anything is downloaded again.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import httpx

from ..errors import (
    CompanionToolInstallFailed,
    DownloadFailed,
    ExtractError,
    InstalledButMissing,
    InstallExtractionFailed,
    TransferError,
)
from ..events import InstallListener
from ..runtime.catalog import JavaCatalog, NodeCatalog, current_os
from ..runtime.environment import build_environment
from ..runtime.manifest import discover_java_version
from ..runtime.specs import DEFAULT_JAVA_VERSION
from ..runtime.types import InstalledRuntimeLocation, RootPolicy, RuntimeVersionSpec
from .extractor import extract
from .transfer import DEFAULT_MAX_REDIRECTS, DEFAULT_PROGRESS_INTERVAL, download

logger = logging.getLogger(__name__)


class InstallStatus(Enum):
    """Status of a runtime on disk."""

    INSTALLED = "installed"
    MISSING = "missing"
    INSTALLING = "installing"


async def run_package_manager(
    location: InstalledRuntimeLocation,
    args: Sequence[str],
    cwd: Path,
    on_line: Callable[[str], None],
    timeout: Optional[float] = None,
    project_dir: Optional[Path] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> Optional[int]:
    """Run the runtime's package manager, streaming merged output by line.

    ``project_dir`` and ``overrides`` layer the project's environment on
    top, as for the project itself.

    Returns:
        The exit code, or None when ``timeout`` expired and the process
        was killed

    Raises:
        OSError: The package manager could not be launched
    """
    process = await asyncio.create_subprocess_exec(
        str(location.package_manager_executable_path),
        *args,
        cwd=str(cwd),
        env=build_environment(location, project_dir=project_dir, overrides=overrides),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )

    async def stream_output() -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                on_line(line)

    try:
        await asyncio.wait_for(
            asyncio.gather(stream_output(), process.wait()), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return None
    except BaseException:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return process.returncode


class RuntimeInstaller:
    """Shared download/extract pipeline for both installer flavors.

    Installs are serialised per (flavor, version, OS) with an asyncio
    lock: a second caller for the same runtime waits, then finds it
    installed and returns without touching the network.
    """

    label = "runtime"

    def __init__(
        self,
        listener: Optional[InstallListener] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        download_timeout: float = 60.0,
    ) -> None:
        self.listener = listener or InstallListener()
        self.client = client
        self.max_redirects = max_redirects
        self.progress_interval = progress_interval
        self.download_timeout = download_timeout
        self._locks: Dict[Tuple[str, ...], asyncio.Lock] = {}

    def _lock_for(self, *key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _is_busy(self, *key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def _fetch_and_extract(
        self,
        version: str,
        os_name: str,
        url: str,
        archive_path: Path,
        destination: Path,
        policy: RootPolicy,
        label: str,
    ) -> None:
        if archive_path.is_file():
            self.listener.on_log(
                f"📦 Found existing archive {archive_path.name}, extracting..."
            )
            try:
                await extract(archive_path, destination, policy)
            except ExtractError as e:
                raise InstallExtractionFailed(
                    version, os_name, archive_path, e, stale_archive=True
                ) from e
            return

        self.listener.on_log(f"⬇️  Downloading {label} {version} ({os_name})...")
        logger.info("Downloading %s", url)
        try:
            await download(
                url,
                archive_path,
                self.listener.on_progress,
                client=self.client,
                max_redirects=self.max_redirects,
                progress_interval=self.progress_interval,
                timeout=self.download_timeout,
            )
        except TransferError as e:
            raise DownloadFailed(version, os_name, e) from e

        self.listener.on_log(f"📂 Extracting {archive_path.name}...")
        try:
            await extract(archive_path, destination, policy)
        except ExtractError as e:
            raise InstallExtractionFailed(version, os_name, archive_path, e) from e

    def _cleanup_archive(self, archive_path: Path) -> None:
        try:
            archive_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove archive %s: %s", archive_path, e)

    async def _remove_tree(self, path: Path) -> None:
        if path.exists():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, functools.partial(shutil.rmtree, path, ignore_errors=True)
            )

    def _verify(self, location: InstalledRuntimeLocation) -> InstalledRuntimeLocation:
        missing = location.missing_paths()
        if missing:
            raise InstalledButMissing(location.version, location.os_name, missing)
        self.listener.on_log(f"✅ {self.label} {location.version} ready at {location.root_dir}")
        return location


class NodeRuntimeInstaller(RuntimeInstaller):
    """Installs pinned Node.js versions plus their companion CLI."""

    label = "Node.js"

    def __init__(
        self,
        catalog: NodeCatalog,
        listener: Optional[InstallListener] = None,
        client: Optional[httpx.AsyncClient] = None,
        companion_timeout: float = 300.0,
        **kwargs,
    ) -> None:
        super().__init__(listener=listener, client=client, **kwargs)
        self.catalog = catalog
        self.companion_timeout = companion_timeout

    def status(self, version: str, os_name: Optional[str] = None) -> InstallStatus:
        os_name = os_name or current_os()
        if self._is_busy("node", version, os_name):
            return InstallStatus.INSTALLING
        location = self.catalog.locate(version, os_name)
        return InstallStatus.INSTALLED if location.is_installed else InstallStatus.MISSING

    async def ensure_installed(
        self, version: str, os_name: Optional[str] = None
    ) -> InstalledRuntimeLocation:
        """Make Node.js ``version`` usable, installing it if needed.

        Args:
            version: Catalog version, e.g. "16.10.0"
            os_name: Target OS identifier; defaults to the running OS

        Returns:
            Location of the verified runtime

        Raises:
            NotAvailableForPlatform: No download for this version/OS
            DownloadFailed: Transfer error, with version/OS context
            InstallExtractionFailed: Archive could not be unpacked
            CompanionToolInstallFailed: The companion CLI install failed
            InstalledButMissing: Executables absent after installing
        """
        os_name = os_name or current_os()
        async with self._lock_for("node", version, os_name):
            location = self.catalog.locate(version, os_name)
            if location.is_installed:
                spec = self.catalog.find_spec(version)
                if not location.has_tool and spec is not None and spec.companion_package:
                    self.listener.on_log(
                        f"🔧 {spec.companion_package} missing from Node.js {version}, installing..."
                    )
                    await self._install_companion(location, spec.companion_package)
                return location

            spec = self.catalog.get_spec(version, os_name)
            url = spec.downloads[os_name]
            archive_path = self.catalog.archive_path(version, os_name)
            await self._fetch_and_extract(
                version,
                os_name,
                url,
                archive_path,
                self.catalog.install_dir(version, os_name),
                RootPolicy.STRIP,
                self.label,
            )

            location = self.catalog.locate(version, os_name)
            try:
                if spec.companion_package:
                    await self._install_companion(location, spec.companion_package)
            finally:
                # extraction succeeded, so the archive is never needed again
                self._cleanup_archive(archive_path)
            return self._verify(location)

    async def reinstall(
        self, version: str, os_name: Optional[str] = None
    ) -> InstalledRuntimeLocation:
        """Discard any stale archive and partial install, then install again."""
        os_name = os_name or current_os()
        async with self._lock_for("node", version, os_name):
            self._cleanup_archive(self.catalog.archive_path(version, os_name))
            await self._remove_tree(self.catalog.install_dir(version, os_name))
        return await self.ensure_installed(version, os_name)

    async def install_custom(
        self,
        version: str,
        url: str,
        companion_package: Optional[str] = None,
        os_name: Optional[str] = None,
    ) -> InstalledRuntimeLocation:
        """Register a user-supplied download URL for ``version`` and install it.

        The archive's root folder name is not known in advance; it is
        stripped on extraction and the bounded walk covers odd layouts.
        """
        os_name = os_name or current_os()
        self.catalog.register(
            RuntimeVersionSpec(
                version=version,
                downloads={os_name: url},
                folder_names={os_name: f"node-v{version}"},
                companion_package=companion_package,
                label="Node.js",
            )
        )
        return await self.ensure_installed(version, os_name)

    async def _install_companion(
        self, location: InstalledRuntimeLocation, package: str
    ) -> None:
        """Run ``npm install -g <package>`` with the runtime's own npm."""
        npm = location.package_manager_executable_path
        if not npm.is_file():
            raise InstalledButMissing(
                location.version, location.os_name, location.missing_paths()
            )

        self.listener.on_log(f"📦 Installing {package}...")
        args = ["install", "-g", package]
        self.listener.on_log(f"   Command: {' '.join(args)}")

        try:
            exit_code = await run_package_manager(
                location,
                args,
                cwd=location.root_dir,
                on_line=lambda line: self.listener.on_log(f"   {line}"),
                timeout=self.companion_timeout,
            )
        except OSError as e:
            raise CompanionToolInstallFailed(
                location.version, location.os_name, package, None, reason=str(e)
            ) from e

        if exit_code != 0:
            raise CompanionToolInstallFailed(
                location.version, location.os_name, package, exit_code
            )
        self.listener.on_log(f"✅ {package} installed")

    async def install_dependencies(
        self,
        location: InstalledRuntimeLocation,
        project_dir: Union[str, Path],
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Optional[int]:
        """Run ``npm install`` inside a project with the runtime's own npm.

        Returns:
            The exit code, or None if it timed out (the process is killed)
        """
        project_dir = Path(project_dir)
        return await run_package_manager(
            location,
            ["install"],
            cwd=project_dir,
            on_line=on_line,
            timeout=timeout,
            project_dir=project_dir,
            overrides=env,
        )


class JavaToolchainInstaller(RuntimeInstaller):
    """Installs a JDK plus the shared Maven distribution."""

    label = "Java"

    def __init__(
        self,
        catalog: JavaCatalog,
        listener: Optional[InstallListener] = None,
        client: Optional[httpx.AsyncClient] = None,
        fallback_version: str = DEFAULT_JAVA_VERSION,
        **kwargs,
    ) -> None:
        super().__init__(listener=listener, client=client, **kwargs)
        self.catalog = catalog
        self.fallback_version = fallback_version

    def status(self, version: str, os_name: Optional[str] = None) -> InstallStatus:
        os_name = os_name or current_os()
        if self._is_busy("java", version, os_name):
            return InstallStatus.INSTALLING
        location = self.catalog.locate(version, os_name)
        return InstallStatus.INSTALLED if location.is_installed else InstallStatus.MISSING

    async def ensure_installed(
        self, version: str, os_name: Optional[str] = None
    ) -> InstalledRuntimeLocation:
        """Make JDK ``version`` and Maven usable, installing what is missing.

        The JDK's root folder is stripped into ``java/jdk-<version>``;
        Maven keeps its ``apache-maven-<version>`` folder.
        """
        os_name = os_name or current_os()
        async with self._lock_for("java", version, os_name):
            location = self.catalog.locate(version, os_name)
            if location.is_installed:
                return location

            if not location.executable_path.is_file():
                url = self.catalog.resolve_download_url(version, os_name)
                archive_path = self.catalog.jdk_archive_path(version, os_name)
                await self._fetch_and_extract(
                    version,
                    os_name,
                    url,
                    archive_path,
                    self.catalog.jdk_dir(version),
                    RootPolicy.STRIP,
                    "Java",
                )
                self._cleanup_archive(archive_path)

            await self._ensure_maven(os_name)
            return self._verify(self.catalog.locate(version, os_name))

    async def _ensure_maven(self, os_name: str) -> None:
        maven = self.catalog.maven
        async with self._lock_for("maven", maven.version, os_name):
            if self.catalog.maven_executable(os_name).is_file():
                return
            url = self.catalog.resolve_maven_url(os_name)
            archive_path = self.catalog.maven_archive_path(os_name)
            await self._fetch_and_extract(
                maven.version,
                os_name,
                url,
                archive_path,
                self.catalog.maven_dir,
                RootPolicy.PRESERVE,
                "Maven",
            )
            self._cleanup_archive(archive_path)

    async def reinstall(
        self, version: str, os_name: Optional[str] = None
    ) -> InstalledRuntimeLocation:
        """Discard stale JDK/Maven archives and the JDK folder, then install again.

        A complete Maven install is shared by every JDK and is kept; a
        partial one is removed with the JDK.
        """
        os_name = os_name or current_os()
        async with self._lock_for("java", version, os_name):
            self._cleanup_archive(self.catalog.jdk_archive_path(version, os_name))
            await self._remove_tree(self.catalog.jdk_dir(version))
        async with self._lock_for("maven", self.catalog.maven.version, os_name):
            self._cleanup_archive(self.catalog.maven_archive_path(os_name))
            if not self.catalog.maven_executable(os_name).is_file():
                await self._remove_tree(self.catalog.maven_dir)
        return await self.ensure_installed(version, os_name)

    async def ensure_for_project(
        self,
        project_dir: Optional[Union[str, Path]] = None,
        manifest_url: Optional[str] = None,
        os_name: Optional[str] = None,
    ) -> InstalledRuntimeLocation:
        """Discover the project's Java version from pom.xml, then install it."""
        version = await discover_java_version(
            project_dir=project_dir,
            manifest_url=manifest_url,
            client=self.client,
            fallback=self.fallback_version,
        )
        self.listener.on_log(f"☕ Project requires Java {version}")
        return await self.ensure_installed(version, os_name)
