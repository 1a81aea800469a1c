"""Runtime catalog: versions, download URLs and on-disk layout."""

from .catalog import JavaCatalog, NodeCatalog, current_os, locate_runtime_root
from .manifest import detect_java_version, discover_java_version
from .specs import JDK_VERSIONS, MAVEN_SPEC, NODE_VERSIONS
from .types import (
    ArchiveKind,
    InstalledRuntimeLocation,
    RootPolicy,
    RuntimePurpose,
    RuntimeVersionSpec,
)

__all__ = [
    "ArchiveKind",
    "InstalledRuntimeLocation",
    "JDK_VERSIONS",
    "JavaCatalog",
    "MAVEN_SPEC",
    "NODE_VERSIONS",
    "NodeCatalog",
    "RootPolicy",
    "RuntimePurpose",
    "RuntimeVersionSpec",
    "current_os",
    "detect_java_version",
    "discover_java_version",
    "locate_runtime_root",
]
