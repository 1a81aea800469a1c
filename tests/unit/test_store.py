"""Unit tests for the per-project settings store."""

import base64
import json
from pathlib import Path

from devstand.config.store import ProjectStore, decode_env_overrides, encode_env_overrides


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _write(path: Path, data) -> Path:
    path.write_text(json.dumps(data))
    return path


class TestVersions:
    """Test version lookup and fallbacks."""

    def test_stored_version(self, tmp_path: Path):
        store = ProjectStore(_write(tmp_path / "s.json", {"versions": {"web": "18.20.4"}}))

        assert store.get_version("web") == "18.20.4"

    def test_built_in_default(self, tmp_path: Path):
        store = ProjectStore(tmp_path / "missing.json")

        assert store.get_version("mp-pas-configuracoes") == "20.19.5"

    def test_global_default(self, tmp_path: Path):
        store = ProjectStore(tmp_path / "missing.json")

        assert store.get_version("unknown-project") == "16.10.0"

    def test_malformed_file(self, tmp_path: Path):
        path = tmp_path / "s.json"
        path.write_text("{not json")
        store = ProjectStore(path, default_versions={}, default_version="18.18.2")

        assert store.get_version("web") == "18.18.2"
        assert store.get_env("web") == {}

    def test_all_versions_merges(self, tmp_path: Path):
        store = ProjectStore(
            _write(tmp_path / "s.json", {"versions": {"web": "18.20.4"}}),
            default_versions={"web": "16.10.0", "admin": "16.10.0"},
        )

        assert store.all_versions() == {"web": "18.20.4", "admin": "16.10.0"}


class TestEnvOverrides:
    """Test base64 encoded environment overrides."""

    def test_json_payload(self, tmp_path: Path):
        encoded = _b64(json.dumps({"API_URL": "http://localhost:8080", "PORT": 4200}))
        store = ProjectStore(_write(tmp_path / "s.json", {"env": {"web": encoded}}))

        assert store.get_env("web") == {"API_URL": "http://localhost:8080", "PORT": "4200"}

    def test_dotenv_payload(self):
        encoded = _b64('API_URL=http://localhost:8080\n# note\nNAME="dev stand"\n')

        assert decode_env_overrides(encoded) == {
            "API_URL": "http://localhost:8080",
            "NAME": "dev stand",
        }

    def test_invalid_base64(self):
        assert decode_env_overrides("%%% not base64 %%%") == {}

    def test_invalid_json_payload(self):
        assert decode_env_overrides(_b64("{broken")) == {}

    def test_missing_project(self, tmp_path: Path):
        store = ProjectStore(_write(tmp_path / "s.json", {"env": {}}))

        assert store.get_env("web") == {}

    def test_encode_decodes_back(self):
        env = {"A": "1", "B": "two words"}

        assert decode_env_overrides(encode_env_overrides(env)) == env
