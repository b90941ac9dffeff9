from __future__ import annotations

import sys
from pathlib import Path

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.config.load_config import AppConfig, load_app_config  # noqa: E402
from src.storage.sqlite_store import SQLiteStore  # noqa: E402


@pytest.fixture()
def app_config() -> AppConfig:
    return load_app_config(REPO_ROOT / "config" / "default.toml")


@pytest.fixture()
def store(tmp_path: Path):
    s = SQLiteStore(tmp_path / "ticketflow.db")
    try:
        yield s
    finally:
        s.close()
