"""Central configuration for models, limits and paths."""

import os
from pathlib import Path

# Data directory, overridable with FORKCHAT_DATA_DIR
DATA_DIR = Path(os.environ.get("FORKCHAT_DATA_DIR", str(Path.home() / ".forkchat")))

# Last-resort media copies when the media store is unavailable
LOCAL_MEDIA_DIR = DATA_DIR / "media"

# Models
DEFAULT_MODEL = os.environ.get("FORKCHAT_DEFAULT_MODEL", "openai/gpt-4o-mini")
VISION_MODEL = os.environ.get("FORKCHAT_VISION_MODEL", "openai/gpt-4o")
TITLE_MODEL = os.environ.get("FORKCHAT_TITLE_MODEL", "openai/gpt-4o-mini")
IMAGE_MODEL = os.environ.get("FORKCHAT_IMAGE_MODEL", "google/gemini-2.5-flash-image")
VIDEO_MODEL = os.environ.get("FORKCHAT_VIDEO_MODEL", "bytedance/seedance-2.0")

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Conversation defaults
DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 40
DEFAULT_TEMPERATURE = 1.0
DEFAULT_TOP_P = 0.95
DEFAULT_TOP_K = 40
DEFAULT_MAX_OUTPUT_TOKENS = 8192

# Streaming
MAX_TOOL_ROUNDS = 5
COALESCE_WINDOW = 0.05  # seconds between surfaced text updates

# Media ceilings (leave headroom for base64 overhead)
MAX_IMAGE_BYTES = 15 * 1024 * 1024
MAX_PDF_BYTES = 10 * 1024 * 1024
MAX_VIDEO_BYTES = 100 * 1024 * 1024

# Side-channel video jobs: 15 minutes at 10s intervals
VIDEO_POLL_INTERVAL = 10.0
VIDEO_MAX_ATTEMPTS = 90
VIDEO_TIMEOUT = VIDEO_POLL_INTERVAL * VIDEO_MAX_ATTEMPTS


def max_bytes_for(mime_type: str) -> int:
    """Byte ceiling for downloading media of the given MIME type."""
    if mime_type == "application/pdf":
        return MAX_PDF_BYTES
    if mime_type.startswith("video/"):
        return MAX_VIDEO_BYTES
    return MAX_IMAGE_BYTES
