"""
Shared pytest fixtures for backend tests.
No network, no provider keys required.
"""
import sys
from pathlib import Path

import pytest

BACKEND = str(Path(__file__).parent.parent)
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)


@pytest.fixture
def fernet_key(monkeypatch):
    from cryptography.fernet import Fernet

    key = Fernet.generate_key().decode()
    monkeypatch.setenv("SETTINGS_ENCRYPT_KEY", key)
    return key


@pytest.fixture
def settings_db(tmp_path, monkeypatch, fernet_key):
    """Point the settings store at a throwaway SQLite file."""
    import config
    import settings_store

    db_file = str(tmp_path / "settings.db")
    monkeypatch.setattr(config, "DB_PATH", db_file)
    monkeypatch.setattr(config, "DATA_PATH", str(tmp_path))
    monkeypatch.setattr(settings_store, "DB_PATH", db_file)
    monkeypatch.setattr(settings_store, "DATA_PATH", str(tmp_path))
    for env_name in ("GEMINI_API_KEYS", "PHOTOROOM_API_KEY", "SEED_DREAM_API_KEY"):
        monkeypatch.delenv(env_name, raising=False)
    settings_store.init_settings_table()
    return db_file


@pytest.fixture
def no_sleep():
    """Sleep stand-in that records requested delays."""
    calls: list[float] = []

    def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep
