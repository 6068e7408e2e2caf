"""
PhotoRoom adapter for background removal.
"""
from __future__ import annotations

from config import PHOTOROOM_ENDPOINT
from providers.base import BaseProvider


class PhotoRoomProvider(BaseProvider):
    name = "PhotoRoom"

    def __init__(self, *args, endpoint: str = PHOTOROOM_ENDPOINT, **kwargs):
        super().__init__(*args, **kwargs)
        self.endpoint = endpoint

    def remove_background(self, api_key: str, image_data: str) -> str:
        mime, raw = self.decode_data_uri(image_data, default_mime="image/png")
        resp = self.client.post(
            self.endpoint,
            headers={"X-Api-Key": api_key},
            files={"image_file": ("upload", raw, mime)},
        )
        self.raise_for_status(resp, "detail", "error", "message")
        out_mime = resp.headers.get("content-type", "image/png").split(";", 1)[0].strip() or "image/png"
        return self.to_data_uri(resp.content, out_mime)
