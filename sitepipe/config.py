"""Project configuration management."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from typing import Any

from sitepipe import paths

logger = logging.getLogger(__name__)

DEFAULT_INFERENCE_URL = "http://localhost:1234/v1"


class ProjectConfig:
    """Access to project configuration values."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(data) if data is not None else {}
        self._loaded = data is not None

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        config_path = paths.get_config_file()
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                # If config fails to load, we treat it as empty
                logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
                self._data = {}

        self._loaded = True

    @property
    def inference_url(self) -> str:
        """Base URL of the OpenAI-compatible inference server."""
        self._ensure_loaded()
        return os.environ.get("SITEPIPE_INFERENCE_URL") or self._data.get(
            "inference_url", DEFAULT_INFERENCE_URL
        )

    @property
    def inference_model(self) -> str | None:
        self._ensure_loaded()
        return self._data.get("inference_model")

    @property
    def page_timeout_seconds(self) -> float:
        self._ensure_loaded()
        return float(self._data.get("page_timeout_seconds", 30))

    @property
    def default_wait_ms(self) -> int:
        self._ensure_loaded()
        return int(self._data.get("default_wait_ms", 2000))

    @property
    def allow_scripts(self) -> bool:
        """Whether `script` actions may run arbitrary code in pages."""
        self._ensure_loaded()
        return bool(self._data.get("allow_scripts", False))

    @property
    def headless(self) -> bool:
        self._ensure_loaded()
        return bool(self._data.get("headless", True))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value."""
        self._ensure_loaded()
        return self._data.get(key, default)


@lru_cache(maxsize=1)
def get_config() -> ProjectConfig:
    """Get the singleton configuration instance."""
    return ProjectConfig()
