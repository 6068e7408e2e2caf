"""
JobDispatcher: maps a job to the provider adapter that serves it.

Routing:
  text-to-image / remix-image → Seed Dream when payload.model is seed-dream-4.5,
                                Gemini otherwise (key from the rotating pool)
  remove-background           → PhotoRoom
  generate-video              → Gemini Veo (VIDEO_API_KEY override, else first Gemini key)

API keys are re-read from the settings store on every dispatch so that
saving new keys takes effect without restart.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from config import VIDEO_API_KEY
from providers import GeminiProvider, PhotoRoomProvider, SeedDreamProvider
from retry_policy import InvalidJobError, MissingCredentialError
from router import KeyPool
from schemas import ApiKeys, ImageModel, Job, JobType
from settings_store import parse_gemini_keys

logger = logging.getLogger("dispatch")


class JobDispatcher:
    """Runs one provider call for a job and returns the encoded result."""

    def __init__(
        self,
        load_keys: Callable[[], ApiKeys],
        *,
        gemini: Optional[GeminiProvider] = None,
        seed_dream: Optional[SeedDreamProvider] = None,
        photo_room: Optional[PhotoRoomProvider] = None,
        video_api_key: str = VIDEO_API_KEY,
    ):
        self._load_keys = load_keys
        self.gemini = gemini or GeminiProvider()
        self.seed_dream = seed_dream or SeedDreamProvider()
        self.photo_room = photo_room or PhotoRoomProvider()
        self.video_api_key = video_api_key
        self.gemini_pool = KeyPool(missing_message="Gemini API key is missing.")
        self._last_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        for provider in (self.gemini, self.seed_dream, self.photo_room):
            provider.close()

    def _remember_key(self, job_id: str, key: str) -> None:
        with self._lock:
            self._last_key[job_id] = key

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._last_key.pop(job_id, None)

    def _gemini_key(self, job: Job, keys: ApiKeys) -> str:
        self.gemini_pool.sync(parse_gemini_keys(keys.gemini))
        key = self.gemini_pool.acquire()
        self._remember_key(job.id, key)
        return key

    @staticmethod
    def _seed_dream_key(keys: ApiKeys) -> str:
        if not keys.seed_dream.strip():
            raise MissingCredentialError("Seed Dream API key is missing.")
        return keys.seed_dream.strip()

    def run(self, job: Job) -> str:
        payload = job.payload
        if not payload.satisfies(job.type):
            raise InvalidJobError("Invalid job type or payload")

        keys = self._load_keys()

        if job.type in (JobType.text_to_image, JobType.remix_image):
            remix = job.type == JobType.remix_image
            aspect_ratio = payload.aspect_ratio or "1:1"
            if payload.model == ImageModel.seed_dream:
                key = self._seed_dream_key(keys)
                if remix:
                    return self.seed_dream.remix_image(key, payload.prompt, payload.image_data, aspect_ratio)
                return self.seed_dream.generate_image(
                    key, payload.prompt, aspect_ratio, base_url=keys.seed_dream_base_url
                )
            key = self._gemini_key(job, keys)
            if remix:
                return self.gemini.remix_image(
                    key, payload.prompt, payload.image_data, aspect_ratio,
                    payload.high_quality, payload.image_size,
                )
            return self.gemini.generate_image(
                key, payload.prompt, aspect_ratio, payload.high_quality, payload.image_size
            )

        if job.type == JobType.remove_background:
            if not keys.photo_room.strip():
                raise MissingCredentialError("PhotoRoom API key is missing.")
            return self.photo_room.remove_background(keys.photo_room.strip(), payload.image_data)

        if job.type == JobType.generate_video:
            key = self.video_api_key
            if not key:
                self.gemini_pool.sync(parse_gemini_keys(keys.gemini))
                key = self.gemini_pool.first()
            return self.gemini.generate_video(
                key,
                payload.prompt or "",
                payload.image_data,
                payload.aspect_ratio or "16:9",
                payload.resolution or "720p",
            )

        raise InvalidJobError("Invalid job type or payload")

    def on_rate_limit(self, job: Job) -> None:
        """Rotate past the Gemini key that was rate-limited for this job."""
        with self._lock:
            key = self._last_key.get(job.id)
        if key is None:
            return
        if self.gemini_pool.rotate(key):
            logger.info("dispatch_key_rotated job_id=%s", job.id)
