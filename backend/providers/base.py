"""
Shared base class for all provider adapters.
"""
from __future__ import annotations

import base64
import re
import time
from typing import Any, Callable, Optional

import httpx

from config import PROVIDER_CONNECT_TIMEOUT, PROVIDER_READ_TIMEOUT

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]*);base64,(?P<data>.*)$", re.DOTALL)


class ProviderError(RuntimeError):
    """A provider call failed. The message carries the HTTP status when known."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BaseProvider:
    """
    Every provider adapter owns one httpx client.
    Pass `client` to share a client or inject a mock transport in tests.
    """

    name: str

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=PROVIDER_CONNECT_TIMEOUT,
                read=PROVIDER_READ_TIMEOUT,
                write=PROVIDER_READ_TIMEOUT,
                pool=PROVIDER_CONNECT_TIMEOUT,
            ),
        )
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    # ─── Shared helpers ───────────────────────────────────────────────────────

    @staticmethod
    def parse_data_uri(value: str, default_mime: str = "image/png") -> tuple[str, str]:
        """Split a data URI into (mime, base64 payload). Bare base64 is accepted."""
        match = _DATA_URI_RE.match(value)
        if not match:
            return default_mime, value
        return match.group("mime") or default_mime, match.group("data")

    @staticmethod
    def decode_data_uri(value: str, default_mime: str = "image/png") -> tuple[str, bytes]:
        mime, payload = BaseProvider.parse_data_uri(value, default_mime)
        return mime, base64.b64decode(payload)

    @staticmethod
    def to_data_uri(content: bytes, mime: str) -> str:
        return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"

    @staticmethod
    def _error_detail(resp: httpx.Response, *fields: str) -> Optional[str]:
        try:
            body = resp.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        for field in fields:
            value = body.get(field)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
        return None

    def raise_for_status(self, resp: httpx.Response, *fields: str) -> None:
        """Raise ProviderError with the status code kept in the message."""
        if resp.status_code < 400:
            return
        detail = self._error_detail(resp, *(fields or ("error", "message", "detail")))
        prefix = f"{self.name} error {resp.status_code}"
        raise ProviderError(f"{prefix}: {detail}" if detail else prefix, status_code=resp.status_code)

    def download(self, url: str, *, headers: Optional[dict[str, str]] = None, default_mime: str) -> str:
        """Fetch a remote asset and return it as a data URI."""
        resp = self.client.get(url, headers=headers, follow_redirects=True)
        if resp.status_code >= 400:
            raise ProviderError(
                f"{self.name} download failed with status {resp.status_code}",
                status_code=resp.status_code,
            )
        mime = resp.headers.get("content-type", default_mime).split(";", 1)[0].strip() or default_mime
        return self.to_data_uri(resp.content, mime)
