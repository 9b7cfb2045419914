# backend/shelfsync/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/shelfsync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///shelfsync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ESL cloud account. The password is sent MD5-hashed, never stored hashed here.
    ESL_CLOUD_BASE_URL = os.environ.get("ESL_CLOUD_BASE_URL", "https://cloud.minewesl.com")
    ESL_CLOUD_USERNAME = os.environ.get("ESL_CLOUD_USERNAME", "")
    ESL_CLOUD_PASSWORD = os.environ.get("ESL_CLOUD_PASSWORD", "")
    ESL_CLOUD_TIMEOUT_SECONDS = _env_float("ESL_CLOUD_TIMEOUT_SECONDS", 8.0)

    # Optional pinned store; otherwise resolved from the cloud and cached in cloud_config
    ESL_DEFAULT_STORE_ID = os.environ.get("ESL_DEFAULT_STORE_ID") or None

    # Token lifecycle (vendor tokens live 24h)
    ESL_TOKEN_TTL_HOURS = _env_int("ESL_TOKEN_TTL_HOURS", 23)
    ESL_TOKEN_SAFETY_MARGIN_SECONDS = _env_int("ESL_TOKEN_SAFETY_MARGIN_SECONDS", 300)
    ESL_LOGIN_MIN_INTERVAL_SECONDS = _env_float("ESL_LOGIN_MIN_INTERVAL_SECONDS", 5.0)

    # Sync queue
    SYNC_QUEUE_MAX_RETRIES = _env_int("SYNC_QUEUE_MAX_RETRIES", 3)
    SYNC_QUEUE_BACKOFF_BASE_SECONDS = _env_int("SYNC_QUEUE_BACKOFF_BASE_SECONDS", 30)
    SYNC_QUEUE_BACKOFF_CAP_SECONDS = _env_int("SYNC_QUEUE_BACKOFF_CAP_SECONDS", 3600)
    SYNC_QUEUE_BATCH_SIZE = _env_int("SYNC_QUEUE_BATCH_SIZE", 50)
    SYNC_QUEUE_RETENTION_DAYS = _env_int("SYNC_QUEUE_RETENTION_DAYS", 30)
    SYNC_QUEUE_PROCESSING_TIMEOUT_SECONDS = _env_int("SYNC_QUEUE_PROCESSING_TIMEOUT_SECONDS", 600)

    # Button events
    BUTTON_DEDUP_WINDOW_SECONDS = _env_int("BUTTON_DEDUP_WINDOW_SECONDS", 60)
    BUTTON_LOOKBACK_MINUTES = _env_int("BUTTON_LOOKBACK_MINUTES", 60)

    # Shared secret for cron triggers and operator endpoints; unset means every request gets 401
    CRON_SECRET = os.environ.get("CRON_SECRET", "")
