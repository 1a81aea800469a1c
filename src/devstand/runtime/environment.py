"""Child-process environments bound to a portable runtime."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from dotenv import dotenv_values

from .types import InstalledRuntimeLocation


def load_project_env(project_dir: Union[str, Path]) -> Dict[str, str]:
    """Variables from ``<project_dir>/.env``; empty when absent."""
    env_file = Path(project_dir) / ".env"
    if not env_file.is_file():
        return {}
    values = dotenv_values(env_file)
    return {k: v for k, v in values.items() if v is not None}


def build_environment(
    location: Optional[InstalledRuntimeLocation],
    base_env: Optional[Mapping[str, str]] = None,
    project_dir: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a process that must resolve the runtime's tools first.

    Layering, lowest to highest priority: ``base_env`` (the current
    process environment by default), the project's ``.env`` file, then
    ``overrides``. The runtime's binary directories are prepended to
    ``PATH`` last so they always win, and ``JAVA_HOME`` is set for JDKs.
    """
    env = dict(os.environ if base_env is None else base_env)
    if project_dir is not None:
        env.update(load_project_env(project_dir))
    if overrides:
        env.update(overrides)

    if location is not None:
        # Windows environments are case-insensitive; keep whichever key exists
        path_key = next((k for k in env if k.upper() == "PATH"), "PATH")
        prefix = os.pathsep.join(str(d) for d in location.bin_dirs)
        current = env.get(path_key, "")
        env[path_key] = f"{prefix}{os.pathsep}{current}" if current else prefix
        if location.home_dir is not None:
            env["JAVA_HOME"] = str(location.home_dir)

    return env
