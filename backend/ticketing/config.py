# backend/ticketing/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///ticketing.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment provider (authoritative payment detail lookups)
    PAYMENT_PROVIDER_BASE_URL = os.environ.get("PAYMENT_PROVIDER_BASE_URL", "https://api.mercadopago.com")
    PAYMENT_PROVIDER_ACCESS_TOKEN = os.environ.get("PAYMENT_PROVIDER_ACCESS_TOKEN", "")
    PAYMENT_PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_PROVIDER_TIMEOUT_SECONDS", "10"))

    # Transactional email functions; empty base URL disables sending
    NOTIFIER_BASE_URL = os.environ.get("NOTIFIER_BASE_URL", "")
    NOTIFIER_API_KEY = os.environ.get("NOTIFIER_API_KEY", "")
    NOTIFIER_TIMEOUT_SECONDS = float(os.environ.get("NOTIFIER_TIMEOUT_SECONDS", "10"))

    # Public site, used for accept-transfer links
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:5173")

    TRANSFER_CUTOFF_HOURS = int(os.environ.get("TRANSFER_CUTOFF_HOURS", "2"))
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))
