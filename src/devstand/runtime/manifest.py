"""Discover a project's Java version from its Maven manifest (pom.xml).

The scan is a best-effort text match, not an XML parse. Three tags may
declare the version; they are tried in a fixed order and the first usable
value wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import httpx

from .specs import DEFAULT_JAVA_VERSION

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionRule:
    """Extracts a version from one named tag."""

    name: str
    tag: str

    @property
    def pattern(self) -> "re.Pattern[str]":
        escaped = re.escape(self.tag)
        return re.compile(rf"<{escaped}>\s*([^<]+?)\s*</{escaped}>", re.IGNORECASE)

    def extract(self, text: str) -> Optional[str]:
        for match in self.pattern.finditer(text):
            value = match.group(1).strip()
            # ${java.version} and friends point at another property
            if value and not value.startswith("${"):
                return value
        return None


# Priority order matters: the explicit property beats compiler settings
VERSION_RULES: List[VersionRule] = [
    VersionRule(name="java.version", tag="java.version"),
    VersionRule(name="compiler.source", tag="maven.compiler.source"),
    VersionRule(name="compiler.release", tag="maven.compiler.release"),
]


def normalize_java_version(raw: str) -> str:
    """Reduce a declared Java version to its major number.

    "1.8" -> "8", "17.0.2" -> "17", "21" -> "21". Unrecognised values are
    returned trimmed but otherwise untouched.
    """
    value = raw.strip()
    match = re.match(r"^1\.(\d+)", value)
    if match:
        return match.group(1)
    match = re.match(r"^(\d+)", value)
    return match.group(1) if match else value


def detect_java_version(
    text: str, rules: Optional[List[VersionRule]] = None
) -> Optional[str]:
    """Apply the rules in order; return the first normalised match or None."""
    for rule in rules or VERSION_RULES:
        value = rule.extract(text)
        if value:
            logger.debug("Java version %s found via <%s>", value, rule.tag)
            return normalize_java_version(value)
    return None


async def fetch_manifest(
    url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0
) -> Optional[str]:
    """Fetch a remote manifest; None on any transport or HTTP failure."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        response = await client.get(url)
        response.raise_for_status()
        return response.text
    except httpx.HTTPError as e:
        logger.warning("Could not fetch manifest %s: %s", url, e)
        return None
    finally:
        if owns_client:
            await client.aclose()


async def discover_java_version(
    project_dir: Optional[Union[str, Path]] = None,
    manifest_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    fallback: str = DEFAULT_JAVA_VERSION,
) -> str:
    """Determine which Java major version a project needs.

    Looks at ``<project_dir>/pom.xml`` when the project is already on disk,
    otherwise fetches ``manifest_url``. Falls back to ``fallback`` when
    neither yields a version.

    Args:
        project_dir: Local checkout of the project, if any
        manifest_url: Raw URL of the project's pom.xml
        client: Optional HTTP client (tests inject a mock transport)
        fallback: Version used when discovery fails

    Returns:
        Java major version string, e.g. "17"
    """
    text: Optional[str] = None

    if project_dir is not None:
        pom = Path(project_dir) / "pom.xml"
        if pom.is_file():
            try:
                text = pom.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Could not read %s: %s", pom, e)

    if text is None and manifest_url:
        text = await fetch_manifest(manifest_url, client=client)

    if text is not None:
        version = detect_java_version(text)
        if version:
            return version

    logger.info("No Java version declared; using fallback %s", fallback)
    return fallback
