"""Filesystem locations used by the CLI and default storage."""

from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_DATA_ROOT = Path("data")


def get_data_root() -> Path:
    """Return the root directory for persisted definitions and datasets."""
    root = os.environ.get("SITEPIPE_DATA_ROOT")
    return Path(root) if root else _DEFAULT_DATA_ROOT


def get_config_file() -> Path:
    override = os.environ.get("SITEPIPE_CONFIG")
    if override:
        return Path(override)
    return get_data_root() / "config.json"


def get_store_file() -> Path:
    return get_data_root() / "store.json"


def get_export_root() -> Path:
    """Directory where csv/json exports are written."""
    return get_data_root() / "exports"
