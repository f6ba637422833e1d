"""Configuration for Entu Permission Sync."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Entu API connection
ENTU_API_URL = os.getenv("ENTU_API_URL", "https://entu.app").rstrip("/")
ENTU_ACCOUNT = os.getenv("ENTU_ACCOUNT", "esmuuseum")
ENTU_REQUEST_TIMEOUT = float(os.getenv("ENTU_REQUEST_TIMEOUT", "15"))
ENTU_MAX_RETRIES = int(os.getenv("ENTU_MAX_RETRIES", "2"))
ENTU_MAX_RETRY_AFTER = int(os.getenv("ENTU_MAX_RETRY_AFTER", "5"))  # seconds, caps Retry-After

# Inbound webhook authentication
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET")

# Rate limiting (shared by all webhook endpoints)
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# Debounce / reprocessing
SETTLE_INTERVAL_SECONDS = float(os.getenv("SETTLE_INTERVAL_SECONDS", "2"))
MAX_REPROCESS_PASSES = int(os.getenv("MAX_REPROCESS_PASSES", "10"))
QUEUE_STALE_SECONDS = int(os.getenv("QUEUE_STALE_SECONDS", "300"))
QUEUE_JANITOR_INTERVAL_SECONDS = int(os.getenv("QUEUE_JANITOR_INTERVAL_SECONDS", "60"))

# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not ENTU_API_URL.startswith(("http://", "https://")):
        errors.append(f"ENTU_API_URL must be an http(s) URL: {ENTU_API_URL}")

    if not ENTU_ACCOUNT:
        errors.append("ENTU_ACCOUNT is required")

    if RATE_LIMIT_MAX_REQUESTS < 1:
        errors.append("RATE_LIMIT_MAX_REQUESTS must be at least 1")

    if RATE_LIMIT_WINDOW_SECONDS <= 0:
        errors.append("RATE_LIMIT_WINDOW_SECONDS must be positive")

    if MAX_REPROCESS_PASSES < 1:
        errors.append("MAX_REPROCESS_PASSES must be at least 1")

    if SETTLE_INTERVAL_SECONDS < 0:
        errors.append("SETTLE_INTERVAL_SECONDS must not be negative")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
