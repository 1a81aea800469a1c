from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional


# Runtimes
@dataclass
class RuntimeSummary:
    runtime: Literal["node", "java"]
    version: str
    os_name: str
    status: Literal["installed", "missing", "installing", "unavailable"]
    root_dir: Optional[str] = None
    executable: Optional[str] = None
    companion_package: Optional[str] = None
    custom: bool = False  # registered at runtime, not part of the built-in catalog


@dataclass
class InstallResult:
    runtime: Literal["node", "java"]
    version: str
    os_name: str
    root_dir: str
    executable: str
    package_manager: str
    tool: Optional[str] = None
    java_home: Optional[str] = None


# Projects
@dataclass
class StartResult:
    project: str
    ready: bool
    pid: Optional[int]
    port: Optional[int]
    runtime_version: Optional[str]
    exit_code: Optional[int] = None
    message: str = ""


@dataclass
class ProjectStatus:
    project: str
    state: str
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    runtime_version: Optional[str] = None
    started_at: Optional[str] = None
    ready: bool = False


@dataclass
class ProjectOutput:
    project: str
    lines: List[str] = field(default_factory=list)
    truncated: bool = False  # older lines were dropped from the buffer
