"""Data types for portable runtimes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


OS_WINDOWS = "windows"
OS_LINUX = "linux"
OS_MAC = "mac"
OS_MAC_ARM64 = "mac-arm64"

SUPPORTED_OS = (OS_WINDOWS, OS_LINUX, OS_MAC, OS_MAC_ARM64)


class ArchiveKind(Enum):
    """Archive formats the extractor understands."""

    ZIP = "zip"
    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"

    @classmethod
    def from_name(cls, name: str) -> Optional["ArchiveKind"]:
        """Infer the archive kind from a filename or URL, or None if unknown."""
        lowered = name.lower().split("?", 1)[0]
        if lowered.endswith(".zip"):
            return cls.ZIP
        if lowered.endswith(".tar.gz") or lowered.endswith(".tgz"):
            return cls.TAR_GZ
        if lowered.endswith(".tar.xz") or lowered.endswith(".txz"):
            return cls.TAR_XZ
        return None


class RootPolicy(Enum):
    """How an archive's top-level folder is treated on extraction."""

    STRIP = "strip"  # promote the single root folder's contents
    PRESERVE = "preserve"


class RuntimePurpose(Enum):
    """Which installer flavor a runtime belongs to."""

    NODE = "node"
    JAVA = "java"


@dataclass(frozen=True)
class RuntimeVersionSpec:
    """One installable runtime version.

    Attributes:
        version: Version identifier ("16.10.0", "21")
        downloads: OS identifier -> archive URL
        folder_names: OS identifier -> install folder, relative to the OS directory
        companion_package: Package installed into the runtime after extraction
        label: Display name used in messages
    """

    version: str
    downloads: Dict[str, str]
    folder_names: Dict[str, str] = field(default_factory=dict)
    companion_package: Optional[str] = None
    label: str = "Node.js"

    def archive_kind(self, os_name: str) -> Optional[ArchiveKind]:
        url = self.downloads.get(os_name)
        return ArchiveKind.from_name(url) if url else None

    def supports(self, os_name: str) -> bool:
        return os_name in self.downloads


@dataclass(frozen=True)
class InstalledRuntimeLocation:
    """Where a runtime lives (or will live) on disk.

    Derived from ``(version, os, base path)``; never persisted. A runtime
    counts as installed iff both ``executable_path`` and
    ``package_manager_executable_path`` exist as regular files.
    """

    version: str
    os_name: str
    root_dir: Path
    executable_path: Path
    package_manager_executable_path: Path
    tool_executable_path: Optional[Path] = None
    bin_dirs: Tuple[Path, ...] = ()
    home_dir: Optional[Path] = None  # exported as JAVA_HOME when set

    @property
    def required_paths(self) -> List[Path]:
        return [self.executable_path, self.package_manager_executable_path]

    def missing_paths(self) -> List[Path]:
        return [p for p in self.required_paths if not p.is_file()]

    @property
    def is_installed(self) -> bool:
        return not self.missing_paths()

    @property
    def has_tool(self) -> bool:
        return self.tool_executable_path is None or self.tool_executable_path.is_file()

    def __repr__(self) -> str:
        state = "installed" if self.is_installed else "missing"
        return f"<InstalledRuntimeLocation {self.version} ({self.os_name}) @ {self.root_dir} [{state}]>"
