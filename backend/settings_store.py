"""
Provider API key settings backed by SQLite.

Secrets are encrypted at rest using the Fernet key from SETTINGS_ENCRYPT_KEY.
Empty stored values fall back to GEMINI_API_KEYS / PHOTOROOM_API_KEY /
SEED_DREAM_API_KEY from the environment.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from cryptography.fernet import Fernet, InvalidToken

from config import DATA_PATH, DB_PATH
from schemas import ApiKeys, ApiKeysPublic

_lock = threading.Lock()
_ENC_PREFIX = "enc::"
logger = logging.getLogger("settings_store")

_SECRET_FIELDS = ("gemini", "photo_room", "seed_dream")
_ENV_FALLBACKS = {
    "gemini": "GEMINI_API_KEYS",
    "photo_room": "PHOTOROOM_API_KEY",
    "seed_dream": "SEED_DREAM_API_KEY",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_cipher() -> Fernet:
    raw = os.environ.get("SETTINGS_ENCRYPT_KEY", "").strip()
    if not raw:
        raise RuntimeError("SETTINGS_ENCRYPT_KEY is not configured")
    return Fernet(raw.encode())


def _encrypt_secret(secret: str) -> str:
    if not secret:
        return ""
    token = _get_cipher().encrypt(secret.encode("utf-8")).decode("utf-8")
    return f"{_ENC_PREFIX}{token}"


def _decrypt_secret(value: str) -> str:
    # Plaintext rows written before encryption was enabled.
    if not value or not value.startswith(_ENC_PREFIX):
        return value or ""
    token = value[len(_ENC_PREFIX):]
    try:
        return _get_cipher().decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise RuntimeError("Failed to decrypt stored API key") from exc


def parse_gemini_keys(text: str) -> list[str]:
    """Split a newline-separated key list, dropping blanks."""
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


@contextmanager
def _db():
    os.makedirs(os.path.dirname(DB_PATH) or DATA_PATH, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_settings_table() -> None:
    with _db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS api_keys (
                id                  INTEGER PRIMARY KEY CHECK (id = 1),
                gemini              TEXT NOT NULL DEFAULT '',
                photo_room          TEXT NOT NULL DEFAULT '',
                seed_dream          TEXT NOT NULL DEFAULT '',
                seed_dream_base_url TEXT NOT NULL DEFAULT '',
                updated_at          TEXT NOT NULL
            )
            """
        )


def _with_env_fallbacks(keys: ApiKeys) -> ApiKeys:
    data = keys.model_dump()
    for field, env_name in _ENV_FALLBACKS.items():
        if not data[field]:
            data[field] = os.environ.get(env_name, "").strip()
    return ApiKeys(**data)


def load_api_keys(*, use_env: bool = True) -> ApiKeys:
    """Return decrypted keys for internal dispatch usage."""
    with _db() as conn:
        row = conn.execute("SELECT * FROM api_keys WHERE id=1").fetchone()
    if row is None:
        keys = ApiKeys()
    else:
        data = dict(row)
        keys = ApiKeys(
            gemini=_decrypt_secret(data["gemini"]),
            photo_room=_decrypt_secret(data["photo_room"]),
            seed_dream=_decrypt_secret(data["seed_dream"]),
            seed_dream_base_url=data["seed_dream_base_url"] or "",
        )
    return _with_env_fallbacks(keys) if use_env else keys


def save_api_keys(keys: ApiKeys) -> None:
    values = {field: _encrypt_secret(getattr(keys, field).strip()) for field in _SECRET_FIELDS}
    with _lock, _db() as conn:
        conn.execute(
            """
            INSERT INTO api_keys (id, gemini, photo_room, seed_dream, seed_dream_base_url, updated_at)
            VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                gemini=excluded.gemini,
                photo_room=excluded.photo_room,
                seed_dream=excluded.seed_dream,
                seed_dream_base_url=excluded.seed_dream_base_url,
                updated_at=excluded.updated_at
            """,
            (
                values["gemini"],
                values["photo_room"],
                values["seed_dream"],
                keys.seed_dream_base_url.strip(),
                _now_iso(),
            ),
        )
    logger.info(
        "api_keys_saved gemini_keys=%s photo_room=%s seed_dream=%s",
        len(parse_gemini_keys(keys.gemini)),
        bool(keys.photo_room.strip()),
        bool(keys.seed_dream.strip()),
    )


def to_public(keys: ApiKeys) -> ApiKeysPublic:
    """Key view safe for API responses (no secrets)."""
    gemini_keys = parse_gemini_keys(keys.gemini)
    return ApiKeysPublic(
        is_gemini_key_set=bool(gemini_keys),
        gemini_key_count=len(gemini_keys),
        is_photo_room_key_set=bool(keys.photo_room.strip()),
        is_seed_dream_key_set=bool(keys.seed_dream.strip()),
        seed_dream_base_url=keys.seed_dream_base_url,
    )
