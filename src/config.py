# src/config.py

import os

from dotenv import load_dotenv

load_dotenv()


# -----------------------------
# Database
# -----------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
# Probed in order when DATABASE_URL is unset.
DB_PORTS = [int(port) for port in os.getenv("DB_PORTS", "5432,5433").split(",") if port.strip()]
DB_NAME = os.getenv("DB_NAME", "ticketing_core")
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "postgres")
DB_CONNECT_MAX_RETRIES = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
DB_CONNECT_RETRY_DELAY = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))


# -----------------------------
# Reservations
# -----------------------------
RESERVATION_TIMEOUT_MINUTES = int(os.getenv("RESERVATION_TIMEOUT_MINUTES", "15"))
BOOKING_REFERENCE_MAX_ATTEMPTS = int(os.getenv("BOOKING_REFERENCE_MAX_ATTEMPTS", "10"))


# -----------------------------
# Background jobs
# -----------------------------
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
SWEEPER_INTERVAL_SECONDS = float(os.getenv("SWEEPER_INTERVAL_SECONDS", "60"))
SWEEPER_BATCH_SIZE = int(os.getenv("SWEEPER_BATCH_SIZE", "100"))
RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "300"))
RECONCILE_MIN_AGE_MINUTES = int(os.getenv("RECONCILE_MIN_AGE_MINUTES", "10"))
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "50"))


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def webhook_verification_enabled() -> bool:
    return os.getenv("PAYMENT_WEBHOOK_VERIFY", "true").strip().lower() in {"1", "true", "yes"}
