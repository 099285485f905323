# backend/mercado/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/mercado.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///mercado.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Unpaid orders are cancelled by the expiration sweep after this many minutes
    ORDER_EXPIRATION_MINUTES = int(os.environ.get("ORDER_EXPIRATION_MINUTES", "15"))
    EXPIRATION_SWEEP_BATCH_SIZE = int(os.environ.get("EXPIRATION_SWEEP_BATCH_SIZE", "500"))

    # Shared secret for the scheduler calling POST /api/system/expire-orders.
    # Unset disables the endpoint; the CLI command is always available.
    CRON_SECRET = os.environ.get("CRON_SECRET")

    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF_SECONDS = float(os.environ.get("DB_RETRY_BACKOFF_SECONDS", "0.1"))
