"""Bitácora Backend Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Project root (one level up from bitacora/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = os.getenv("BITACORA_DB_PATH", str(PROJECT_ROOT / "data" / "bitacora.db"))

# Local cache
CACHE_TTL_SECONDS = _env_int("BITACORA_CACHE_TTL_SECONDS", 5 * 60)
CACHE_SCHEMA_VERSION = os.getenv("BITACORA_CACHE_SCHEMA_VERSION", "v1")
CACHE_PREFIX = os.getenv("BITACORA_CACHE_PREFIX", "bitacora_cache_")

# Classification service
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("BITACORA_OPENAI_MODEL", "gpt-4o-mini")
CLASSIFICATION_TIMEOUT_SECONDS = _env_int("BITACORA_CLASSIFICATION_TIMEOUT_SECONDS", 60)
MAX_TEXT_LENGTH = _env_int("BITACORA_MAX_TEXT_LENGTH", 10000)
MAX_TEXT_LENGTH_WITH_ATTACHMENT = _env_int("BITACORA_MAX_TEXT_LENGTH_WITH_ATTACHMENT", 5000)
RECENT_ENTRIES_CONTEXT_LIMIT = _env_int("BITACORA_RECENT_ENTRIES_CONTEXT_LIMIT", 50)
OPEN_TASKS_CONTEXT_LIMIT = _env_int("BITACORA_OPEN_TASKS_CONTEXT_LIMIT", 30)
OPENAI_MAX_CONCURRENCY = max(1, _env_int("BITACORA_OPENAI_MAX_CONCURRENCY", 2))
OPENAI_MIN_INTERVAL_MS = max(0, _env_int("BITACORA_OPENAI_MIN_INTERVAL_MS", 1000))

# Commit behaviour
COMMIT_MAX_ATTEMPTS = max(1, _env_int("BITACORA_COMMIT_MAX_ATTEMPTS", 2))
INBOX_BOOK_ID = "inbox"
INBOX_BOOK_NAME = os.getenv("BITACORA_INBOX_BOOK_NAME", "Inbox")
INBOX_BOOK_CONTEXT = "Unsorted notes and quick thoughts."

# Owners
DEFAULT_OWNER_ID = os.getenv("BITACORA_DEFAULT_OWNER_ID", "local")

# Observability
OTEL_ENABLED = _env_bool("BITACORA_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("BITACORA_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("BITACORA_OTEL_SERVICE_NAME", "bitacora-backend")
PROM_PORT = _env_int("BITACORA_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("BITACORA_HOST", "0.0.0.0")
PORT = int(os.getenv("BITACORA_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("BITACORA_FRONTEND_ORIGIN", "http://localhost:3000")
