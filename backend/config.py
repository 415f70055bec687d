"""
Backend Configuration

Loads environment variables and provides configuration settings.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env.local first (for local development), then .env as fallback
env_local = Path(__file__).parent / '.env.local'
env_file = Path(__file__).parent / '.env'

if env_local.exists():
    load_dotenv(env_local)
elif env_file.exists():
    load_dotenv(env_file)

# Storage: "memory" keeps everything in-process, "mongo" uses MongoDB
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()

# MongoDB Config
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "lesson_engagement")

# Lesson catalog; when unset every lesson id is accepted
LESSON_SERVICE_URL = os.getenv("LESSON_SERVICE_URL", "").rstrip("/")
LESSON_SERVICE_TIMEOUT = float(os.getenv("LESSON_SERVICE_TIMEOUT", "5.0"))

# Micro-break policy
LOW_ATTENTION_THRESHOLD = float(os.getenv("LOW_ATTENTION_THRESHOLD", "0.4"))
CONSECUTIVE_LOW_LIMIT = int(os.getenv("CONSECUTIVE_LOW_LIMIT", "3"))
BREAK_COOLDOWN_SECONDS = float(os.getenv("BREAK_COOLDOWN_SECONDS", "300"))
EMA_ALPHA = float(os.getenv("EMA_ALPHA", "0.3"))
DUPLICATE_WINDOW = int(os.getenv("DUPLICATE_WINDOW", "64"))

# Progress; set to "off" to only trust the client's completed flag
_completion = os.getenv("COMPLETION_RATIO", "0.95")
COMPLETION_RATIO = None if _completion.lower() in ("", "off", "none") else float(_completion)

# Server Config
BACKEND_HOST = os.getenv("BACKEND_HOST", "0.0.0.0")
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "8000"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

if STORAGE_BACKEND not in ("memory", "mongo"):
    logger.warning(f"Unknown STORAGE_BACKEND '{STORAGE_BACKEND}', falling back to memory")
    STORAGE_BACKEND = "memory"

if STORAGE_BACKEND == "memory":
    logger.warning("STORAGE_BACKEND=memory: sessions and progress are lost on restart")
