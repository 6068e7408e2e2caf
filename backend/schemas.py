"""
Pydantic schemas for jobs, settings and API responses.
Payload fields accept the camelCase names the browser front end sends.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ─── Enums ────────────────────────────────────────────────────────────────────

class JobType(str, Enum):
    text_to_image = "text-to-image"
    remix_image = "remix-image"
    remove_background = "remove-background"
    generate_video = "generate-video"


class JobStatus(str, Enum):
    pending = "pending"
    in_progress = "in-progress"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})


class ImageModel(str, Enum):
    gemini = "gemini"
    seed_dream = "seed-dream-4.5"


# ─── Job payload ──────────────────────────────────────────────────────────────

class JobPayload(BaseModel):
    """
    Provider-specific parameters for a job.
    Image data is transmitted as base64 data URIs (data:image/...;base64,...).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    prompt: Optional[str] = Field(default=None, max_length=4000)
    image_data: Optional[str] = None
    original_filename: Optional[str] = None
    aspect_ratio: Optional[str] = None
    high_quality: bool = False
    image_size: Optional[str] = None
    resolution: Optional[Literal["720p", "1080p"]] = None
    model: ImageModel = ImageModel.gemini

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None

    @field_validator("image_data")
    @classmethod
    def validate_image_data(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if v.startswith("data:") and ";base64," not in v:
            raise ValueError("image_data must be a base64 data URI")
        return v

    def satisfies(self, job_type: JobType) -> bool:
        """Return True when the payload carries what `job_type` needs."""
        if job_type == JobType.text_to_image:
            return bool(self.prompt)
        if job_type == JobType.remix_image:
            return bool(self.prompt and self.image_data)
        if job_type == JobType.remove_background:
            return bool(self.image_data)
        if job_type == JobType.generate_video:
            return bool(self.prompt or self.image_data)
        return False


# ─── Job record ───────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: str
    type: JobType
    status: JobStatus = JobStatus.pending
    payload: JobPayload
    result: Optional[str] = None  # data URI of the generated media
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobSummary(BaseModel):
    """Job view without the (potentially large) result body."""
    id: str
    type: JobType
    status: JobStatus
    error: Optional[str] = None
    attempts: int = 0
    has_result: bool = False
    title: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            id=job.id,
            type=job.type,
            status=job.status,
            error=job.error,
            attempts=job.attempts,
            has_result=bool(job.result),
            title=job_title(job),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


def job_title(job: Job) -> str:
    payload = job.payload
    if job.type == JobType.text_to_image:
        return f'Text-to-Image: "{(payload.prompt or "")[:30]}..."'
    if job.type == JobType.remix_image:
        return f"Remix: {payload.original_filename or 'image'}"
    if job.type == JobType.remove_background:
        return f"Remove Background: {payload.original_filename or 'image'}"
    return f'Video: "{(payload.prompt or "Image to Video")[:30]}..."'


# ─── Requests ─────────────────────────────────────────────────────────────────

class JobRequest(BaseModel):
    type: JobType
    payload: JobPayload

    @model_validator(mode="after")
    def validate_payload_for_type(self):
        if not self.payload.satisfies(self.type):
            raise ValueError(f"payload does not satisfy job type '{self.type.value}'")
        return self


class JobBatchRequest(BaseModel):
    jobs: List[JobRequest] = Field(..., min_length=1, max_length=100)


class ArchiveRequest(BaseModel):
    job_ids: List[str] = Field(..., min_length=1)


class RemoveBackgroundProxyRequest(BaseModel):
    image_base64: str = Field(..., alias="imageBase64", min_length=1)
    api_key: Optional[str] = Field(default=None, alias="apiKey")


class SeedDreamProxyRequest(BaseModel):
    prompt: str = ""
    aspect_ratio: str = Field(default="1:1", alias="aspectRatio")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    callback_url: Optional[str] = Field(default=None, alias="callBackUrl")


# ─── Settings ─────────────────────────────────────────────────────────────────

class ApiKeys(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    gemini: str = ""  # one key per line
    photo_room: str = ""
    seed_dream: str = ""
    seed_dream_base_url: str = ""


class ApiKeysPublic(BaseModel):
    is_gemini_key_set: bool
    gemini_key_count: int
    is_photo_room_key_set: bool
    is_seed_dream_key_set: bool
    seed_dream_base_url: str = ""


# ─── Responses ────────────────────────────────────────────────────────────────

class JobStats(BaseModel):
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0


class JobCreatedResponse(BaseModel):
    jobs: List[JobSummary]


class JobListResponse(BaseModel):
    items: List[JobSummary]
    total: int
    stats: JobStats


class ClearResponse(BaseModel):
    removed: int


class ProxyResultResponse(BaseModel):
    result: str


class JobTypesResponse(BaseModel):
    job_types: List[dict[str, Any]]


class HealthResponse(BaseModel):
    ok: Literal[True] = True


class ErrorResponse(BaseModel):
    code: str
    detail: str
    user_action: str
