"""Read-only access to per-project settings.

The settings file is written by whatever tool manages projects; devstand
only reads it. Layout::

    {
      "versions": {"mp-pamp": "16.10.0"},
      "env": {"mp-pamp": "<base64>"}
    }

Each ``env`` value is base64 text that decodes either to a JSON object or
to dotenv-style ``KEY=value`` lines. A missing file means built-in
defaults; a malformed file (or entry) is treated as empty.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values

from ..runtime.specs import DEFAULT_NODE_VERSION, DEFAULT_PROJECT_VERSIONS

logger = logging.getLogger(__name__)


def decode_env_overrides(encoded: str) -> Dict[str, str]:
    """Decode one base64 ``env`` entry; empty dict if it is unreadable."""
    try:
        text = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.warning("Ignoring undecodable env overrides: %s", e)
        return {}

    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring malformed env overrides: %s", e)
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    values = dotenv_values(stream=io.StringIO(text))
    return {k: v for k, v in values.items() if v is not None}


def encode_env_overrides(env: Dict[str, str]) -> str:
    return base64.b64encode(json.dumps(env, sort_keys=True).encode("utf-8")).decode("ascii")


class ProjectStore:
    """Project name -> runtime version and environment overrides."""

    def __init__(
        self,
        path: Optional[Path],
        default_versions: Optional[Dict[str, str]] = None,
        default_version: str = DEFAULT_NODE_VERSION,
    ) -> None:
        self.path = Path(path) if path else None
        self.default_versions = dict(
            DEFAULT_PROJECT_VERSIONS if default_versions is None else default_versions
        )
        self.default_version = default_version

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring malformed project store %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _section(self, name: str) -> Dict[str, Any]:
        value = self._load().get(name, {})
        return value if isinstance(value, dict) else {}

    def get_version(self, project_name: str) -> str:
        """Version pinned for a project, falling back to built-in defaults."""
        version = self._section("versions").get(project_name)
        if isinstance(version, str) and version:
            return version
        return self.default_versions.get(project_name, self.default_version)

    def get_env(self, project_name: str) -> Dict[str, str]:
        encoded = self._section("env").get(project_name)
        if not isinstance(encoded, str) or not encoded:
            return {}
        return decode_env_overrides(encoded)

    def all_versions(self) -> Dict[str, str]:
        merged = dict(self.default_versions)
        merged.update(
            {k: v for k, v in self._section("versions").items() if isinstance(v, str)}
        )
        return merged
