"""
Configuration module for the hrgate authority.

Centralizes all configuration with environment variable support and
validation.
"""

import os
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("HRGATE_ENV", "dev")  # dev|stage|prod

DB_PATH = os.getenv("HRGATE_DB_PATH", "data/hrgate.db")

# Signal timing (seconds)
SIGNAL_TTL_SECONDS = int(os.getenv("SIGNAL_TTL_SECONDS", "15"))
DEBOUNCE_SECONDS = int(os.getenv("DEBOUNCE_SECONDS", "5"))
HEARTBEAT_TIMEOUT_SECONDS = int(os.getenv("HEARTBEAT_TIMEOUT_SECONDS", "30"))
SUPERVISOR_INTERVAL_SECONDS = float(os.getenv("SUPERVISOR_INTERVAL_SECONDS", "5"))
SUPERVISOR_ENABLED = os.getenv("SUPERVISOR_ENABLED", "true").lower() in ("1", "true", "yes")

# Readings
DEFAULT_THRESHOLD = float(os.getenv("DEFAULT_THRESHOLD", "100"))
READING_MIN = float(os.getenv("READING_MIN", "30"))
READING_MAX = float(os.getenv("READING_MAX", "250"))
HYSTERESIS_MARGIN = float(os.getenv("HYSTERESIS_MARGIN", "15"))

# Rate limits (requests per minute)
READINGS_RPM = int(os.getenv("READINGS_RPM", "600"))

# Signing configuration
SIGNER_TYPE = os.getenv("HRGATE_SIGNER", "file")  # file|env
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/hrgate_signing_key.json")
SIGNER_PRIVATE_KEY = os.getenv("SIGNER_PRIVATE_KEY", "")

# Transport
TRANSPORT_BACKEND = os.getenv("TRANSPORT_BACKEND", "github")  # github|memory
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
TRANSPORT_TIMEOUT_SECONDS = float(os.getenv("TRANSPORT_TIMEOUT_SECONDS", "10"))
REF_NAMESPACE = os.getenv("REF_NAMESPACE", "hrgate/hr")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate required configuration.
    Returns dict of check name -> ok.
    """
    checks = {
        "ttl_positive": SIGNAL_TTL_SECONDS > 0,
        "debounce_shorter_than_ttl": 0 <= DEBOUNCE_SECONDS < SIGNAL_TTL_SECONDS,
        "reading_range": READING_MIN < READING_MAX,
    }

    if SIGNER_TYPE == "file":
        checks["signing_key"] = Path(SIGNING_KEY_PATH).exists()
    elif SIGNER_TYPE == "env":
        checks["signing_key"] = bool(SIGNER_PRIVATE_KEY)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"
