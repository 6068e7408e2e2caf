"""
Configuration for the NC Tool backend.
All sensitive values come from environment variables.
"""
import os

# ─── App identity ──────────────────────────────────────────────────────────────
APP_NAME = "nc-tool-backend"
APP_VERSION = "1.0.0"

# ─── Local storage ─────────────────────────────────────────────────────────────
DATA_PATH = os.environ.get("NC_DATA_PATH", "./data")
DB_PATH = os.environ.get("NC_DB_PATH", f"{DATA_PATH}/settings.db")

# ─── Job queue policy ──────────────────────────────────────────────────────────
# Limit concurrency to reduce 429 responses from Gemini.
MAX_CONCURRENT_JOBS = int(os.environ.get("MAX_CONCURRENT_JOBS", "1"))
MAX_RETRIES = int(os.environ.get("JOB_MAX_RETRIES", "10"))
BASE_BACKOFF_SECONDS = float(os.environ.get("JOB_BASE_BACKOFF_SECONDS", "5"))
MAX_BACKOFF_SECONDS = float(os.environ.get("JOB_MAX_BACKOFF_SECONDS", "60"))
BACKOFF_JITTER_SECONDS = float(os.environ.get("JOB_BACKOFF_JITTER_SECONDS", "2"))
JOB_START_STAGGER_SECONDS = float(os.environ.get("JOB_START_STAGGER_SECONDS", "0.3"))

# Lowercase fragments that mark an error as transient.
RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "429",
    "resource exhausted",
    "resource has been exhausted",
    "quota",
    "too many requests",
    "503",
    "overloaded",
)

# ─── Provider endpoints ────────────────────────────────────────────────────────
GEMINI_BASE_URL = os.environ.get(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")
GEMINI_IMAGE_MODEL = os.environ.get("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
GEMINI_IMAGE_MODEL_HQ = os.environ.get("GEMINI_IMAGE_MODEL_HQ", "gemini-3-pro-image-preview")
GEMINI_VIDEO_MODEL = os.environ.get("GEMINI_VIDEO_MODEL", "veo-3.1-fast-generate-preview")
VIDEO_POLL_INTERVAL_SECONDS = float(os.environ.get("VIDEO_POLL_INTERVAL_SECONDS", "5"))
# Veo jobs normally finish within a few minutes; 120 polls ≈ 10 minutes.
VIDEO_MAX_POLLS = int(os.environ.get("VIDEO_MAX_POLLS", "120"))

# Overrides the Gemini key pool for video generation when set.
VIDEO_API_KEY: str = os.environ.get("VIDEO_API_KEY", "")

PHOTOROOM_ENDPOINT = os.environ.get("PHOTOROOM_ENDPOINT", "https://sdk.photoroom.com/v1/segment")

SEED_DREAM_DEFAULT_BASE_URL = "https://api.kie.ai/api/v1"
SEED_DREAM_MODEL = os.environ.get("SEED_DREAM_MODEL", "seedream/4.5-text-to-image")
SEED_DREAM_MAX_POLLS = int(os.environ.get("SEED_DREAM_MAX_POLLS", "20"))
SEED_DREAM_POLL_INTERVAL_SECONDS = float(os.environ.get("SEED_DREAM_POLL_INTERVAL_SECONDS", "5"))

# Timeout per provider HTTP call (seconds)
PROVIDER_CONNECT_TIMEOUT = float(os.environ.get("PROVIDER_CONNECT_TIMEOUT", "10"))
PROVIDER_READ_TIMEOUT = float(os.environ.get("PROVIDER_READ_TIMEOUT", "120"))

# ─── Export ────────────────────────────────────────────────────────────────────
ARCHIVE_PREFIX = "NC-Tool-Export"

# ─── Job metadata (schema exposed via /job-types endpoint) ─────────────────────
IMAGE_MODELS = ["gemini", "seed-dream-4.5"]
ASPECT_RATIOS = ["1:1", "3:4", "4:3", "9:16", "16:9"]
VIDEO_ASPECT_RATIOS = ["16:9", "9:16"]
IMAGE_SIZES = ["1K", "2K", "4K"]
VIDEO_RESOLUTIONS = ["720p", "1080p"]

JOB_TYPES_SCHEMA = [
    {
        "id": "text-to-image",
        "name": "Text-to-Image",
        "providers": IMAGE_MODELS,
        "requires": ["prompt"],
        "parameters_schema": {
            "model": {"type": "enum", "options": IMAGE_MODELS, "default": "gemini"},
            "aspect_ratio": {"type": "enum", "options": ASPECT_RATIOS, "default": "1:1"},
            "high_quality": {"type": "bool", "default": False},
            "image_size": {"type": "enum", "options": IMAGE_SIZES, "default": None},
        },
    },
    {
        "id": "remix-image",
        "name": "Remix Image",
        "providers": IMAGE_MODELS,
        "requires": ["prompt", "image_data"],
        "parameters_schema": {
            "model": {"type": "enum", "options": IMAGE_MODELS, "default": "gemini"},
            "aspect_ratio": {"type": "enum", "options": ASPECT_RATIOS, "default": "1:1"},
            "high_quality": {"type": "bool", "default": False},
            "image_size": {"type": "enum", "options": IMAGE_SIZES, "default": None},
        },
    },
    {
        "id": "remove-background",
        "name": "Remove Background",
        "providers": ["photoroom"],
        "requires": ["image_data"],
        "parameters_schema": {},
    },
    {
        "id": "generate-video",
        "name": "Image-to-Video",
        "providers": ["gemini"],
        "requires": ["prompt|image_data"],
        "parameters_schema": {
            "aspect_ratio": {"type": "enum", "options": VIDEO_ASPECT_RATIOS, "default": "16:9"},
            "resolution": {"type": "enum", "options": VIDEO_RESOLUTIONS, "default": "720p"},
        },
    },
]
