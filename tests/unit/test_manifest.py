"""Unit tests for Java version discovery from pom.xml."""

from pathlib import Path

import httpx
import pytest

from devstand.runtime.manifest import (
    detect_java_version,
    discover_java_version,
    normalize_java_version,
)

POM_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<project>
  <properties>
{properties}
  </properties>
</project>
"""


def _pom(*properties: str) -> str:
    return POM_TEMPLATE.format(properties="\n".join(f"    {p}" for p in properties))


class TestNormalize:
    """Test reduction to a major version."""

    def test_legacy_prefix(self):
        assert normalize_java_version("1.8") == "8"

    def test_full_version(self):
        assert normalize_java_version("17.0.2") == "17"

    def test_major_only(self):
        assert normalize_java_version(" 21 ") == "21"

    def test_unrecognised_passthrough(self):
        assert normalize_java_version("latest") == "latest"


class TestDetect:
    """Test rule priority and placeholder handling."""

    def test_java_version_wins(self):
        text = _pom(
            "<maven.compiler.source>11</maven.compiler.source>",
            "<java.version>17</java.version>",
        )
        assert detect_java_version(text) == "17"

    def test_compiler_source_before_release(self):
        text = _pom(
            "<maven.compiler.release>21</maven.compiler.release>",
            "<maven.compiler.source>1.8</maven.compiler.source>",
        )
        assert detect_java_version(text) == "8"

    def test_compiler_release(self):
        assert detect_java_version(_pom("<maven.compiler.release>21</maven.compiler.release>")) == "21"

    def test_placeholder_skipped(self):
        """Test that ${...} references fall through to the next rule."""
        text = _pom(
            "<java.version>${jdk.level}</java.version>",
            "<maven.compiler.source>11</maven.compiler.source>",
        )
        assert detect_java_version(text) == "11"

    def test_nothing_declared(self):
        assert detect_java_version(_pom("<foo>bar</foo>")) is None


class TestDiscover:
    """Test local and remote discovery with fallback."""

    @pytest.mark.asyncio
    async def test_local_pom(self, tmp_path: Path):
        (tmp_path / "pom.xml").write_text(_pom("<java.version>21</java.version>"))

        assert await discover_java_version(project_dir=tmp_path) == "21"

    @pytest.mark.asyncio
    async def test_local_pom_preferred_over_url(self, tmp_path: Path):
        (tmp_path / "pom.xml").write_text(_pom("<java.version>21</java.version>"))

        def handler(request):
            raise AssertionError("remote manifest should not be fetched")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            version = await discover_java_version(
                project_dir=tmp_path,
                manifest_url="https://git.example.test/pom.xml",
                client=client,
            )

        assert version == "21"

    @pytest.mark.asyncio
    async def test_remote_manifest(self, tmp_path: Path):
        def handler(request):
            return httpx.Response(200, text=_pom("<java.version>1.8</java.version>"))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            version = await discover_java_version(
                project_dir=tmp_path / "not-cloned-yet",
                manifest_url="https://git.example.test/pom.xml",
                client=client,
            )

        assert version == "8"

    @pytest.mark.asyncio
    async def test_remote_failure_uses_fallback(self):
        def handler(request):
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            version = await discover_java_version(
                manifest_url="https://git.example.test/pom.xml", client=client
            )

        assert version == "17"

    @pytest.mark.asyncio
    async def test_custom_fallback(self, tmp_path: Path):
        assert await discover_java_version(project_dir=tmp_path, fallback="21") == "21"
