"""
Runtime settings for the report parsing service.
All values come from the environment (or a local .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# ── Parsing ──
TEXT_DENSITY_THRESHOLD = _env_float("REPORT_TEXT_DENSITY_THRESHOLD", 8.0)

# ── HTTP ──
MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 50)
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
PORT = _env_int("PORT", 5000)
DEBUG = os.getenv("FLASK_DEBUG", "0").lower() in ("1", "true", "yes")

# ── Logging ──
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"
