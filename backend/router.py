"""
KeyPool: round-robin rotation over several credentials for one provider.

Rotation rules:
  1. acquire() hands out the key under the cursor and advances it
  2. rotate(key) skips `key` when it would be handed out next
     (rate-limited key must not serve the retry if another key exists)
  3. sync(keys) swaps the key list without resetting the cursor,
     clamping it when the list shrank

The pool does not persist anything; the cursor lives as long as the process.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from retry_policy import MissingCredentialError

logger = logging.getLogger("router")


def _mask(key: str) -> str:
    return f"...{key[-4:]}" if len(key) > 4 else "***"


class KeyPool:
    """Thread-safe round-robin key picker."""

    def __init__(self, keys: Optional[Iterable[str]] = None, *, missing_message: str = "API key is missing."):
        self._lock = threading.Lock()
        self._keys: list[str] = []
        self._cursor = 0
        self.missing_message = missing_message
        if keys is not None:
            self.sync(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    @property
    def keys(self) -> list[str]:
        with self._lock:
            return list(self._keys)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def sync(self, keys: Iterable[str]) -> None:
        cleaned = [k.strip() for k in keys if k and k.strip()]
        with self._lock:
            if cleaned == self._keys:
                return
            self._keys = cleaned
            self._cursor = self._cursor % len(cleaned) if cleaned else 0

    def first(self) -> str:
        with self._lock:
            if not self._keys:
                raise MissingCredentialError(self.missing_message)
            return self._keys[0]

    def acquire(self) -> str:
        """
        Return the next key and advance the cursor.
        Raises MissingCredentialError if the pool is empty.
        """
        with self._lock:
            if not self._keys:
                raise MissingCredentialError(self.missing_message)
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
            return key

    def rotate(self, failed_key: Optional[str] = None) -> bool:
        """
        Move past a rate-limited key.
        Returns True when the cursor moved.
        """
        with self._lock:
            if len(self._keys) <= 1:
                return False
            if failed_key is not None and self._keys[self._cursor] != failed_key:
                return False
            self._cursor = (self._cursor + 1) % len(self._keys)
            logger.info(
                "key_rotated failed_key=%s next_index=%s pool_size=%s",
                _mask(failed_key or ""),
                self._cursor,
                len(self._keys),
            )
            return True
