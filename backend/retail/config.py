# backend/retail/config.py
from __future__ import annotations
import os


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the app unless DATABASE_URL points elsewhere
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///retail.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    # Payment gateway (refunds only; charges happen client-side)
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://api.stripe.com")
    PAYMENT_GATEWAY_SECRET_KEY = os.environ.get("PAYMENT_GATEWAY_SECRET_KEY")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))

    # Transactional email provider; unset URL disables sending
    EMAIL_API_URL = os.environ.get("EMAIL_API_URL")
    EMAIL_API_KEY = os.environ.get("EMAIL_API_KEY")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "orders@example.com")
    EMAIL_TIMEOUT_SECONDS = float(os.environ.get("EMAIL_TIMEOUT_SECONDS", "5"))

    # Realtime fan-out
    EVENT_QUEUE_SIZE = int(os.environ.get("EVENT_QUEUE_SIZE", "100"))
    EVENT_STREAM_HEARTBEAT_SECONDS = float(os.environ.get("EVENT_STREAM_HEARTBEAT_SECONDS", "15"))

    CORS_ALLOWED_ORIGINS = _split_csv(os.environ.get("CORS_ALLOWED_ORIGINS")) or [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:4173",
        "http://127.0.0.1:4173",
    ]

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
