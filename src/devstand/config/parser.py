"""Configuration file parser for devstand."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for Python 3.10

from ..runtime.specs import DEFAULT_JAVA_VERSION

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".devstand.toml"
BASE_PATH_ENV = "DEVSTAND_BASE_PATH"
RUNTIMES_DIRNAME = "runtimes"


@dataclass
class PathsConfig:
    """Where runtimes are installed."""

    base_path: Optional[str] = None  # explicit override, may use ${PROJECT_ROOT}
    packaged: bool = False  # install next to the application executable
    project_store: str = "project-settings.json"


@dataclass
class TransferConfig:
    max_redirects: int = 5
    progress_interval_ms: int = 500
    timeout_s: float = 60.0


@dataclass
class InstallConfig:
    companion_timeout_s: float = 300.0
    dependencies_timeout_s: float = 900.0  # project `npm install` before the first start


@dataclass
class JavaConfig:
    fallback_version: str = DEFAULT_JAVA_VERSION
    manifest_url: Optional[str] = None


@dataclass
class SupervisorConfig:
    grace_period_s: float = 5.0
    port_retry_delay_s: float = 1.5
    startup_timeout_s: Optional[float] = None


@dataclass
class ProjectDefinition:
    """A project devstand knows how to start.

    Declared as ``[projects.<name>]`` in ``.devstand.toml``.
    """

    name: str
    path: str
    runtime: str = "node"  # "node" or "java"
    port: Optional[int] = None
    version: Optional[str] = None
    args: List[str] = field(default_factory=list)
    readiness_patterns: List[str] = field(default_factory=list)
    manifest_url: Optional[str] = None


@dataclass
class DevstandConfig:
    """Complete devstand configuration."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    install: InstallConfig = field(default_factory=InstallConfig)
    java: JavaConfig = field(default_factory=JavaConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    projects: Dict[str, ProjectDefinition] = field(default_factory=dict)

    # Project root for resolving paths
    project_root: Path = field(default_factory=Path.cwd)

    def resolve_path(self, path_template: str) -> Path:
        """Resolve ``${PROJECT_ROOT}`` and ``~`` in a configured path.

        Relative results are anchored at the project root.
        """
        result = path_template.replace("${PROJECT_ROOT}", str(self.project_root))
        path = Path(result).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    @property
    def base_path(self) -> Path:
        return resolve_base_path(self)

    @property
    def project_store_path(self) -> Path:
        return self.resolve_path(self.paths.project_store)


def resolve_base_path(
    config: DevstandConfig, app_executable: Optional[str] = None
) -> Path:
    """Directory that holds ``nodes/`` and ``java/``.

    Priority: ``DEVSTAND_BASE_PATH``, then ``[paths] base_path``, then the
    context default. A packaged install keeps runtimes next to its own
    executable (writable after installation); a development checkout
    keeps them under the project root.
    """
    override = os.environ.get(BASE_PATH_ENV)
    if override:
        return config.resolve_path(override)
    if config.paths.base_path:
        return config.resolve_path(config.paths.base_path)
    if config.paths.packaged:
        executable = Path(app_executable or sys.argv[0] or sys.executable).resolve()
        return executable.parent / RUNTIMES_DIRNAME
    return config.project_root / RUNTIMES_DIRNAME


def find_config_file(project_path: Path) -> Optional[Path]:
    """Find .devstand.toml in the project root or any parent directory."""
    for directory in [project_path, *project_path.parents]:
        config_file = directory / CONFIG_FILENAME
        if config_file.is_file():
            return config_file
    return None


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_project(name: str, data: Dict[str, Any], config: DevstandConfig) -> ProjectDefinition:
    path = data.get("path", name)
    return ProjectDefinition(
        name=name,
        path=str(config.resolve_path(str(path))),
        runtime=str(data.get("runtime", "node")),
        port=data.get("port"),
        version=data.get("version"),
        args=list(data.get("args", [])),
        readiness_patterns=list(data.get("readiness_patterns", [])),
        manifest_url=data.get("manifest_url"),
    )


def load_config(project_path: Path) -> DevstandConfig:
    """Load configuration from .devstand.toml or use defaults.

    A missing file gives defaults; an unreadable or malformed file gives
    defaults and a warning.

    Args:
        project_path: Root path of the project

    Returns:
        DevstandConfig with loaded or default configuration
    """
    project_path = Path(project_path).resolve()
    config = DevstandConfig(project_root=project_path)

    config_file = find_config_file(project_path)
    if not config_file:
        return config

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Ignoring %s: %s", config_file, e)
        return config

    paths = _section(data, "paths")
    config.paths.base_path = paths.get("base_path")
    config.paths.packaged = bool(paths.get("packaged", False))
    config.paths.project_store = paths.get("project_store", config.paths.project_store)

    transfer = _section(data, "transfer")
    config.transfer.max_redirects = int(transfer.get("max_redirects", 5))
    config.transfer.progress_interval_ms = int(transfer.get("progress_interval_ms", 500))
    config.transfer.timeout_s = float(transfer.get("timeout_s", 60.0))

    install = _section(data, "install")
    config.install.companion_timeout_s = float(install.get("companion_timeout_s", 300.0))
    config.install.dependencies_timeout_s = float(
        install.get("dependencies_timeout_s", 900.0)
    )

    java = _section(data, "java")
    config.java.fallback_version = str(java.get("fallback_version", DEFAULT_JAVA_VERSION))
    config.java.manifest_url = java.get("manifest_url")

    supervisor = _section(data, "supervisor")
    config.supervisor.grace_period_s = float(supervisor.get("grace_period_s", 5.0))
    config.supervisor.port_retry_delay_s = float(supervisor.get("port_retry_delay_s", 1.5))
    timeout = supervisor.get("startup_timeout_s")
    config.supervisor.startup_timeout_s = float(timeout) if timeout is not None else None

    for name, project_data in _section(data, "projects").items():
        if isinstance(project_data, dict):
            config.projects[name] = _parse_project(name, project_data, config)

    return config
