"""Runtime catalog: maps (version, OS) to download URLs and on-disk layout.

The catalog never touches the network and never decides where runtimes
live: the base path is injected by the caller (see
:func:`devstand.config.resolve_base_path`).
"""

from __future__ import annotations

import os
import platform
import re
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlsplit

import semver

from ..errors import NotAvailableForPlatform
from .specs import JDK_VERSIONS, MAVEN_SPEC, NODE_VERSIONS
from .types import (
    OS_LINUX,
    OS_MAC,
    OS_MAC_ARM64,
    OS_WINDOWS,
    InstalledRuntimeLocation,
    RuntimeVersionSpec,
)

# Directories never worth descending into when looking for a runtime root
_SKIP_DIRS = {"node_modules", "include", "share", "legal", "man", "jmods", "lib"}

_NODE_FOLDER_VERSION = re.compile(r"node-v(\d+\.\d+\.\d+)")


def current_os() -> str:
    """Detect the OS identifier used throughout the catalog."""
    if sys.platform.startswith("win"):
        return OS_WINDOWS
    if sys.platform == "darwin":
        machine = platform.machine().lower()
        return OS_MAC_ARM64 if machine in ("arm64", "aarch64") else OS_MAC
    return OS_LINUX


def executable_name(name: str, os_name: str, windows_suffix: str) -> str:
    return f"{name}{windows_suffix}" if os_name == OS_WINDOWS else name


def archive_filename(url: str) -> str:
    """Local filename for an archive URL (last path segment)."""
    return Path(urlsplit(url).path).name


def locate_runtime_root(
    search_dir: Path,
    relative_executables: Sequence[str],
    max_depth: int = 3,
) -> Optional[Path]:
    """Find the first directory under ``search_dir`` holding all executables.

    Used when an archive's extracted root folder cannot be predicted. The
    walk is top-down, checks ``search_dir`` itself first, never goes more
    than ``max_depth`` levels below it, and stops at the first match.

    Args:
        search_dir: Directory to start from
        relative_executables: Paths relative to a candidate root, e.g. ["bin/java"]
        max_depth: Maximum number of levels below search_dir to inspect

    Returns:
        The matching directory, or None if nothing within the bound matches
    """
    search_dir = Path(search_dir)
    if not search_dir.is_dir():
        return None

    base_depth = len(search_dir.parts)
    for root, dirs, _files in os.walk(search_dir):
        candidate = Path(root)
        if all((candidate / rel).is_file() for rel in relative_executables):
            return candidate

        depth = len(candidate.parts) - base_depth
        if depth >= max_depth:
            dirs.clear()
            continue

        dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS and not d.startswith("."))

    return None


class NodeCatalog:
    """Catalog of portable Node.js runtimes.

    Layout: ``<base>/nodes/<os>/<folder>``. Windows bundles are flat
    (``node.exe``, ``npm.cmd``); POSIX bundles keep executables in ``bin/``.
    """

    def __init__(
        self,
        base_path: Path,
        versions: Optional[Dict[str, RuntimeVersionSpec]] = None,
    ) -> None:
        self.base_path = Path(base_path)
        self._versions: Dict[str, RuntimeVersionSpec] = dict(
            NODE_VERSIONS if versions is None else versions
        )

    @property
    def versions(self) -> List[str]:
        return list(self._versions)

    def register(self, spec: RuntimeVersionSpec) -> None:
        """Add (or replace) a version, e.g. a user-supplied download URL."""
        self._versions[spec.version] = spec

    def find_spec(self, version: str) -> Optional[RuntimeVersionSpec]:
        return self._versions.get(version)

    def get_spec(self, version: str, os_name: str) -> RuntimeVersionSpec:
        spec = self._versions.get(version)
        if spec is None or not spec.supports(os_name):
            raise NotAvailableForPlatform(version, os_name, label="Node.js")
        return spec

    def resolve_download_url(self, version: str, os_name: str) -> str:
        return self.get_spec(version, os_name).downloads[os_name]

    def os_dir(self, os_name: str) -> Path:
        return self.base_path / "nodes" / os_name

    def install_dir(self, version: str, os_name: str) -> Path:
        spec = self._versions.get(version)
        folder = spec.folder_names.get(os_name) if spec else None
        return self.os_dir(os_name) / (folder or f"node-v{version}")

    def archive_path(self, version: str, os_name: str) -> Path:
        url = self.resolve_download_url(version, os_name)
        return self.os_dir(os_name) / archive_filename(url)

    def relative_executables(self, os_name: str) -> List[str]:
        if os_name == OS_WINDOWS:
            return ["node.exe", "npm.cmd"]
        return ["bin/node", "bin/npm"]

    def location_for_root(
        self, version: str, os_name: str, root: Path
    ) -> InstalledRuntimeLocation:
        bin_dir = root if os_name == OS_WINDOWS else root / "bin"
        return InstalledRuntimeLocation(
            version=version,
            os_name=os_name,
            root_dir=root,
            executable_path=bin_dir / executable_name("node", os_name, ".exe"),
            package_manager_executable_path=bin_dir
            / executable_name("npm", os_name, ".cmd"),
            tool_executable_path=bin_dir / executable_name("ng", os_name, ".cmd"),
            bin_dirs=(bin_dir,),
        )

    def resolve_installed_paths(
        self, version: str, os_name: str
    ) -> InstalledRuntimeLocation:
        return self.location_for_root(version, os_name, self.install_dir(version, os_name))

    @staticmethod
    def is_installed(location: InstalledRuntimeLocation) -> bool:
        return location.is_installed

    def locate(self, version: str, os_name: str) -> InstalledRuntimeLocation:
        """Expected location, or the walked-to root when the layout differs."""
        location = self.resolve_installed_paths(version, os_name)
        if location.is_installed:
            return location
        found = locate_runtime_root(
            location.root_dir, self.relative_executables(os_name)
        )
        if found is not None:
            return self.location_for_root(version, os_name, found)
        return location

    def list_installed(self, os_name: str) -> List[InstalledRuntimeLocation]:
        """Installed runtimes found under the OS directory, newest first."""
        os_dir = self.os_dir(os_name)
        if not os_dir.is_dir():
            return []

        found: Dict[str, InstalledRuntimeLocation] = {}
        for entry in sorted(os_dir.iterdir()):
            if not entry.is_dir():
                continue
            match = _NODE_FOLDER_VERSION.match(entry.name)
            if not match or not semver.Version.is_valid(match.group(1)):
                continue
            root = locate_runtime_root(entry, self.relative_executables(os_name), max_depth=1)
            if root is not None:
                version = match.group(1)
                found.setdefault(version, self.location_for_root(version, os_name, root))

        ordered = sorted(found, key=semver.Version.parse, reverse=True)
        return [found[v] for v in ordered]


class JavaCatalog:
    """Catalog of JDK + Maven pairs.

    Layout: ``<base>/java/jdk-<major>`` (root folder stripped) and
    ``<base>/java/maven/apache-maven-<version>`` (root folder preserved).
    """

    def __init__(
        self,
        base_path: Path,
        jdk_versions: Optional[Dict[str, RuntimeVersionSpec]] = None,
        maven: RuntimeVersionSpec = MAVEN_SPEC,
    ) -> None:
        self.base_path = Path(base_path)
        self._jdks: Dict[str, RuntimeVersionSpec] = dict(
            JDK_VERSIONS if jdk_versions is None else jdk_versions
        )
        self.maven = maven

    @property
    def versions(self) -> List[str]:
        return list(self._jdks)

    @property
    def java_dir(self) -> Path:
        return self.base_path / "java"

    @property
    def maven_dir(self) -> Path:
        return self.java_dir / "maven"

    @property
    def maven_home(self) -> Path:
        return self.maven_dir / f"apache-maven-{self.maven.version}"

    def jdk_dir(self, version: str) -> Path:
        return self.java_dir / f"jdk-{version}"

    def resolve_download_url(self, version: str, os_name: str) -> str:
        spec = self._jdks.get(version)
        if spec is None or not spec.supports(os_name):
            raise NotAvailableForPlatform(version, os_name, label="Java")
        return spec.downloads[os_name]

    def resolve_maven_url(self, os_name: str) -> str:
        if not self.maven.supports(os_name):
            raise NotAvailableForPlatform(self.maven.version, os_name, label="Maven")
        return self.maven.downloads[os_name]

    def jdk_archive_path(self, version: str, os_name: str) -> Path:
        return self.java_dir / archive_filename(self.resolve_download_url(version, os_name))

    def maven_archive_path(self, os_name: str) -> Path:
        return self.java_dir / archive_filename(self.resolve_maven_url(os_name))

    def java_relative(self, os_name: str) -> str:
        return "bin/" + executable_name("java", os_name, ".exe")

    def maven_executable(self, os_name: str) -> Path:
        return self.maven_home / "bin" / executable_name("mvn", os_name, ".cmd")

    def location_for_root(
        self, version: str, os_name: str, jdk_root: Path
    ) -> InstalledRuntimeLocation:
        return InstalledRuntimeLocation(
            version=version,
            os_name=os_name,
            root_dir=jdk_root,
            executable_path=jdk_root / self.java_relative(os_name),
            package_manager_executable_path=self.maven_executable(os_name),
            bin_dirs=(jdk_root / "bin", self.maven_home / "bin"),
            home_dir=jdk_root,
        )

    def resolve_installed_paths(
        self, version: str, os_name: str
    ) -> InstalledRuntimeLocation:
        return self.location_for_root(version, os_name, self.jdk_dir(version))

    @staticmethod
    def is_installed(location: InstalledRuntimeLocation) -> bool:
        return location.is_installed

    def locate_jdk_root(self, version: str, os_name: str) -> Optional[Path]:
        # macOS bundles keep the real home under Contents/Home
        return locate_runtime_root(self.jdk_dir(version), [self.java_relative(os_name)])

    def locate(self, version: str, os_name: str) -> InstalledRuntimeLocation:
        location = self.resolve_installed_paths(version, os_name)
        if location.executable_path.is_file():
            return location
        root = self.locate_jdk_root(version, os_name)
        if root is not None:
            return self.location_for_root(version, os_name, root)
        return location

    def list_installed(self, os_name: str) -> List[InstalledRuntimeLocation]:
        found = []
        for version in _sorted_majors(self._jdks):
            location = self.locate(version, os_name)
            if location.executable_path.is_file():
                found.append(location)
        return found


def _sorted_majors(versions: Iterable[str]) -> List[str]:
    return sorted(versions, key=lambda v: int(v) if v.isdigit() else 0, reverse=True)
