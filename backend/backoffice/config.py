# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shared secret for payment provider webhooks (HMAC-SHA512 over raw body)
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

    # "database" writes AuditLog rows after commit; "log" only emits a log line
    AUDIT_SINK = os.environ.get("AUDIT_SINK", "database")

    # Attempts for lock timeouts and optimistic-version conflicts; 1 surfaces
    # the first conflict to the caller as ConcurrencyConflictError
    TXN_RETRY_ATTEMPTS = _env_int("TXN_RETRY_ATTEMPTS", 1)
    TXN_RETRY_BACKOFF = _env_float("TXN_RETRY_BACKOFF", 0.05)

    RESOURCE_MONITOR_ENABLED = os.environ.get("RESOURCE_MONITOR_ENABLED", "0") in ("1", "true", "yes")
    RESOURCE_MONITOR_INTERVAL = _env_float("RESOURCE_MONITOR_INTERVAL", 60.0)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
