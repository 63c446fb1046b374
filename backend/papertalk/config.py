"""
Configuration - env vars, constants, logging setup.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("papertalk")


def get_int_env(name: str, default: int) -> int:
    """Read an integer env var, falling back to the default on bad values."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def get_float_env(name: str, default: float) -> float:
    """Read a float env var, falling back to the default on bad values."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


# Database
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "papertalk")

# LLM
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
AI_REQUEST_TIMEOUT = get_float_env("AI_REQUEST_TIMEOUT", 240.0)

if not GEMINI_API_KEY:
    logger.warning("⚠️ No GEMINI_API_KEY found - AI grading will fail")

# AI processing queue
AI_MAX_CONCURRENT = get_int_env("AI_MAX_CONCURRENT", 2)
AI_MAX_QUEUE_SIZE = get_int_env("AI_MAX_QUEUE_SIZE", 10)
AI_QUEUE_FULL_RETRY_DELAY = get_float_env("AI_QUEUE_FULL_RETRY_DELAY", 5.0)
AI_QUEUE_OVERLOAD_RETRY_DELAY = get_float_env("AI_QUEUE_OVERLOAD_RETRY_DELAY", 10.0)
AI_QUEUE_MAX_REQUEUES = get_int_env("AI_QUEUE_MAX_REQUEUES", 5)

# Outbound HTTP (material downloads, TTS, sync client)
HTTP_TIMEOUT = get_float_env("HTTP_TIMEOUT", 30.0)

# Client-side submission batching
SUBMISSION_BATCH_SIZE = get_int_env("SUBMISSION_BATCH_SIZE", 5)
SYNC_INTERVAL_SECONDS = get_float_env("SYNC_INTERVAL_SECONDS", 30.0)

# Text-to-speech
ELEVENLABS_API_KEY = os.environ.get("ELEVENLABS_API_KEY")
ELEVENLABS_VOICE_ID = os.environ.get("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")

# Object storage
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# CORS
cors_origins_env = os.environ.get("CORS_ORIGINS")
CORS_ORIGINS = [origin.strip() for origin in cors_origins_env.split(",")] if cors_origins_env else [
    "http://localhost:3000",
    "http://127.0.0.1:3000"
]


def get_llm_api_key():
    """Get the LLM API key from environment variables."""
    return GEMINI_API_KEY


def get_version_info():
    """Get deployment version information."""
    git_commit = os.environ.get("GIT_COMMIT_SHA")
    if not git_commit:
        logger.warning("GIT_COMMIT_SHA not set. Build pipeline issue?")
        git_commit = "unknown"

    build_time = os.environ.get("BUILD_TIME", "unknown")
    env = os.environ.get("ENV", os.environ.get("ENVIRONMENT", "development"))

    return {
        "git_commit": git_commit,
        "build_time": build_time,
        "environment": env
    }
