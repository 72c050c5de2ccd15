"""Tests for project configuration and paths."""

from __future__ import annotations

import json

from sitepipe import paths
from sitepipe.config import DEFAULT_INFERENCE_URL, ProjectConfig
from sitepipe.pipeline.config import EngineSettings


class TestPaths:
    """Tests for data locations."""

    def test_default_root(self, monkeypatch) -> None:
        monkeypatch.delenv("SITEPIPE_DATA_ROOT", raising=False)
        monkeypatch.delenv("SITEPIPE_CONFIG", raising=False)

        assert paths.get_store_file().as_posix() == "data/store.json"
        assert paths.get_config_file().as_posix() == "data/config.json"

    def test_root_override(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("SITEPIPE_DATA_ROOT", str(tmp_path))
        assert paths.get_export_root() == tmp_path / "exports"


class TestProjectConfig:
    """Tests for ProjectConfig."""

    def test_defaults(self, monkeypatch) -> None:
        monkeypatch.delenv("SITEPIPE_INFERENCE_URL", raising=False)
        config = ProjectConfig({})

        assert config.inference_url == DEFAULT_INFERENCE_URL
        assert config.page_timeout_seconds == 30
        assert config.allow_scripts is False
        assert config.headless is True

    def test_loads_config_file(self, monkeypatch, tmp_path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"allow_scripts": True, "default_wait_ms": 250}))
        monkeypatch.setenv("SITEPIPE_CONFIG", str(config_file))

        config = ProjectConfig()

        assert config.allow_scripts is True
        assert config.default_wait_ms == 250

    def test_unreadable_file_is_ignored(self, monkeypatch, tmp_path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text("{")
        monkeypatch.setenv("SITEPIPE_CONFIG", str(config_file))

        assert ProjectConfig().get("anything", "fallback") == "fallback"

    def test_env_overrides_inference_url(self, monkeypatch) -> None:
        monkeypatch.setenv("SITEPIPE_INFERENCE_URL", "http://llm:8000/v1")
        assert ProjectConfig({"inference_url": "http://other"}).inference_url == "http://llm:8000/v1"

    def test_engine_settings_from_config(self) -> None:
        settings = EngineSettings.from_config(ProjectConfig({"page_timeout_seconds": 12, "ai_batch_size": 4}))

        assert settings.page_timeout == 12.0
        assert settings.ai_batch_size == 4
