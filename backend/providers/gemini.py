"""
Gemini adapter: image generation/remix and Veo image-to-video.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from config import (
    GEMINI_BASE_URL,
    GEMINI_IMAGE_MODEL,
    GEMINI_IMAGE_MODEL_HQ,
    GEMINI_VIDEO_MODEL,
    VIDEO_MAX_POLLS,
    VIDEO_POLL_INTERVAL_SECONDS,
)
from providers.base import BaseProvider, ProviderError

logger = logging.getLogger("providers.gemini")


class GeminiProvider(BaseProvider):
    """Thin REST client for the Generative Language API."""

    name = "Gemini"

    def __init__(self, *args, base_url: str = GEMINI_BASE_URL, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    @staticmethod
    def _image_config(aspect_ratio: str, high_quality: bool, image_size: Optional[str]) -> dict[str, str]:
        config = {"aspectRatio": aspect_ratio}
        # imageSize is only honoured by the high-quality model.
        if high_quality and image_size:
            config["imageSize"] = image_size
        return config

    @staticmethod
    def _extract_inline_image(body: dict[str, Any]) -> Optional[str]:
        candidates = body.get("candidates") or []
        if not candidates:
            return None
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data") or {}
            data = inline.get("data")
            if data:
                return f"data:image/png;base64,{data}"
        return None

    def _generate_content(
        self,
        api_key: str,
        parts: list[dict[str, Any]],
        *,
        aspect_ratio: str,
        high_quality: bool,
        image_size: Optional[str],
    ) -> dict[str, Any]:
        model = GEMINI_IMAGE_MODEL_HQ if high_quality else GEMINI_IMAGE_MODEL
        resp = self.client.post(
            f"{self.base_url}/models/{model}:generateContent",
            headers=self._headers(api_key),
            json={
                "contents": [{"parts": parts}],
                "generationConfig": {
                    "imageConfig": self._image_config(aspect_ratio, high_quality, image_size),
                },
            },
        )
        self.raise_for_status(resp, "error")
        return resp.json()

    def generate_image(
        self,
        api_key: str,
        prompt: str,
        aspect_ratio: str = "1:1",
        high_quality: bool = False,
        image_size: Optional[str] = None,
    ) -> str:
        body = self._generate_content(
            api_key,
            [{"text": prompt}],
            aspect_ratio=aspect_ratio,
            high_quality=high_quality,
            image_size=image_size,
        )
        result = self._extract_inline_image(body)
        if not result:
            raise ProviderError("No image was generated. The response may have been blocked.")
        return result

    def remix_image(
        self,
        api_key: str,
        prompt: str,
        image_data: str,
        aspect_ratio: str = "1:1",
        high_quality: bool = False,
        image_size: Optional[str] = None,
    ) -> str:
        mime, payload = self.parse_data_uri(image_data, default_mime="image/jpeg")
        body = self._generate_content(
            api_key,
            [{"inlineData": {"data": payload, "mimeType": mime}}, {"text": prompt}],
            aspect_ratio=aspect_ratio,
            high_quality=high_quality,
            image_size=image_size,
        )
        result = self._extract_inline_image(body)
        if not result:
            raise ProviderError("No image was generated for remix. The response may have been blocked.")
        return result

    # ─── Video ────────────────────────────────────────────────────────────────

    def _poll_operation(self, api_key: str, operation: dict[str, Any]) -> dict[str, Any]:
        name = operation.get("name")
        polls = 0
        while not operation.get("done"):
            if not name:
                raise ProviderError("Video generation started but no operation name was returned.")
            if polls >= VIDEO_MAX_POLLS:
                raise ProviderError(f"Video generation did not finish after {polls} polls.")
            self._sleep(VIDEO_POLL_INTERVAL_SECONDS)
            polls += 1
            resp = self.client.get(f"{self.base_url}/{name}", headers=self._headers(api_key))
            self.raise_for_status(resp, "error")
            operation = resp.json()
        logger.info("video_operation_done name=%s polls=%s", name, polls)
        return operation

    @staticmethod
    def _video_uri(operation: dict[str, Any]) -> Optional[str]:
        response = operation.get("response") or {}
        samples = (response.get("generateVideoResponse") or {}).get("generatedSamples")
        if samples is None:
            samples = response.get("generatedVideos") or []
        if not samples:
            return None
        return ((samples[0] or {}).get("video") or {}).get("uri")

    def generate_video(
        self,
        api_key: str,
        prompt: str,
        image_data: Optional[str] = None,
        aspect_ratio: str = "16:9",
        resolution: str = "720p",
    ) -> str:
        instance: dict[str, Any] = {}
        if prompt:
            instance["prompt"] = prompt
        if image_data:
            mime, payload = self.parse_data_uri(image_data, default_mime="image/png")
            instance["image"] = {"bytesBase64Encoded": payload, "mimeType": mime}

        resp = self.client.post(
            f"{self.base_url}/models/{GEMINI_VIDEO_MODEL}:predictLongRunning",
            headers=self._headers(api_key),
            json={
                "instances": [instance],
                "parameters": {"aspectRatio": aspect_ratio, "resolution": resolution, "sampleCount": 1},
            },
        )
        self.raise_for_status(resp, "error")
        operation = self._poll_operation(api_key, resp.json())

        error = operation.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else None
            raise ProviderError(f"Video generation failed: {message or error}")

        uri = self._video_uri(operation)
        if not uri:
            raise ProviderError("Video generation completed but no download link was found.")
        try:
            return self.download(uri, headers={"x-goog-api-key": api_key}, default_mime="video/mp4")
        except ProviderError as exc:
            raise ProviderError("Failed to download the generated video.", status_code=exc.status_code) from exc
