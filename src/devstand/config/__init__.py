"""Configuration: .devstand.toml settings and the per-project store."""

from .parser import (
    DevstandConfig,
    ProjectDefinition,
    find_config_file,
    load_config,
    resolve_base_path,
)
from .store import ProjectStore

__all__ = [
    "DevstandConfig",
    "ProjectDefinition",
    "ProjectStore",
    "find_config_file",
    "load_config",
    "resolve_base_path",
]
