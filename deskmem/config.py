"""
Shared configuration for DeskMemory.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("deskmem")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/deskmem.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_POOL_TIMEOUT_SECONDS = _get_float("DB_POOL_TIMEOUT_SECONDS", 10.0)
SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0)

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Text generation (OpenAI-compatible chat completions)
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
LLM_API_KEY = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1").rstrip("/")
LLM_MODEL = os.environ.get("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = _get_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_RETRY_MAX = _get_int("LLM_RETRY_MAX", 2)
LLM_RETRY_BACKOFF_SECONDS = _get_float("LLM_RETRY_BACKOFF_SECONDS", 0.5)
LLM_RETRY_JITTER_SECONDS = _get_float("LLM_RETRY_JITTER_SECONDS", 0.25)
LLM_FAILURE_THRESHOLD = _get_int("LLM_FAILURE_THRESHOLD", 5)
LLM_COOLDOWN_SECONDS = _get_int("LLM_COOLDOWN_SECONDS", 60)
LLM_SUMMARY_MAX_TOKENS = _get_int("LLM_SUMMARY_MAX_TOKENS", 1000)
LLM_PROFILE_MAX_TOKENS = _get_int("LLM_PROFILE_MAX_TOKENS", 1500)
LLM_CLASSIFY_MAX_TOKENS = _get_int("LLM_CLASSIFY_MAX_TOKENS", 500)
LLM_RESPONSE_MAX_TOKENS = _get_int("LLM_RESPONSE_MAX_TOKENS", 800)
LLM_MAX_TRANSCRIPT_CHARS = _get_int("LLM_MAX_TRANSCRIPT_CHARS", 24000)

# Categorization
CLASSIFY_LLM_FALLBACK_THRESHOLD = _get_float("CLASSIFY_LLM_FALLBACK_THRESHOLD", 0.4)
SUBJECT_MAX_LENGTH = _get_int("SUBJECT_MAX_LENGTH", 50)

# Archival & profile refresh
ARCHIVE_RETENTION_PERIODS = _get_int("ARCHIVE_RETENTION_PERIODS", 2)
PROFILE_SUMMARY_WINDOW = _get_int("PROFILE_SUMMARY_WINDOW", 6)
PROFILE_REFRESH_BATCH_LIMIT = _get_int("PROFILE_REFRESH_BATCH_LIMIT", 50)
PROFILE_REFRESH_INTERVAL_SECONDS = _get_int("PROFILE_REFRESH_INTERVAL_SECONDS", 60)
TENANT_SETTINGS_RETENTION_KEY = "retention_periods"

# Context assembly
CONTEXT_RECENT_MESSAGE_LIMIT = _get_int("CONTEXT_RECENT_MESSAGE_LIMIT", 20)
CONTEXT_SUMMARY_LIMIT = _get_int("CONTEXT_SUMMARY_LIMIT", 3)
CONTEXT_MIN_RECENT_MESSAGES = _get_int("CONTEXT_MIN_RECENT_MESSAGES", 5)
MIN_CONTEXT_SCORE_FOR_AUTO = _get_int("MIN_CONTEXT_SCORE_FOR_AUTO", 50)

# Learning
LEARNING_LATENCY_WINDOW = _get_int("LEARNING_LATENCY_WINDOW", 100)
LEARNING_TOP_TOPICS = _get_int("LEARNING_TOP_TOPICS", 10)
LEARNING_PATTERN_WINDOW_DAYS = _get_int("LEARNING_PATTERN_WINDOW_DAYS", 7)
LEARNING_OPTIMIZE_WINDOW_DAYS = _get_int("LEARNING_OPTIMIZE_WINDOW_DAYS", 30)
LEARNING_RECONCILE_WINDOW_HOURS = _get_int("LEARNING_RECONCILE_WINDOW_HOURS", 24)
LOW_CONFIDENCE_THRESHOLD = _get_float("LOW_CONFIDENCE_THRESHOLD", 0.7)
FAILURE_CONFIDENCE_THRESHOLD = _get_float("FAILURE_CONFIDENCE_THRESHOLD", 0.6)
LOW_CONFIDENCE_RATIO = _get_float("LOW_CONFIDENCE_RATIO", 0.3)
HUMAN_TAKEOVER_RATIO = _get_float("HUMAN_TAKEOVER_RATIO", 0.2)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("DESKMEM_MAX_RESULT_LIMIT", 200)
MAX_MESSAGE_LENGTH = _get_int("DESKMEM_MAX_MESSAGE_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("DESKMEM_MAX_SHORT_TEXT_LENGTH", 255)
MAX_PLATFORM_LENGTH = _get_int("DESKMEM_MAX_PLATFORM_LENGTH", 50)
MAX_METADATA_BYTES = _get_int("DESKMEM_MAX_METADATA_BYTES", 20000)
MAX_TAG_ITEMS = _get_int("DESKMEM_MAX_TAG_ITEMS", 50)
MAX_TAG_LENGTH = _get_int("DESKMEM_MAX_TAG_LENGTH", 100)
MAX_COMMENT_LENGTH = _get_int("DESKMEM_MAX_COMMENT_LENGTH", 2000)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if ARCHIVE_RETENTION_PERIODS < 1:
        errors.append("ARCHIVE_RETENTION_PERIODS must be at least 1")
    if CONTEXT_SUMMARY_LIMIT < 0:
        errors.append("CONTEXT_SUMMARY_LIMIT must not be negative")
    if LLM_PROVIDER not in {"openai", "none"}:
        errors.append("LLM_PROVIDER must be 'openai' or 'none'")

    if LLM_PROVIDER == "openai" and not LLM_API_KEY:
        logger.warning("LLM_API_KEY is not set; summarization and profile refresh will fail.")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
