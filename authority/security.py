"""
Security module for the hrgate authority.

Validation of caller-supplied values and masking of secrets before logging.
"""

import math
import re
from typing import Any, Dict, Optional, Sequence

from hrgate.logging_config import mask_secret

from . import config


# ============================================================
# Input Validation
# ============================================================

# Regex patterns for validation
SUBJECT_KEY_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9_-]{0,38})$')
REPO_OWNER_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$')
REPO_NAME_PATTERN = re.compile(r'^[A-Za-z0-9._-]{1,100}$')
USER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.@:-]{1,128}$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_subject_key(value: str) -> str:
    """Validate a subject key (hosting-service username; also a ref path component)."""
    if not isinstance(value, str) or not SUBJECT_KEY_PATTERN.match(value):
        raise ValidationError("subject_key", "invalid format")
    return value


def validate_repository(owner: str, name: str) -> None:
    if not isinstance(owner, str) or not REPO_OWNER_PATTERN.match(owner):
        raise ValidationError("owner", "invalid format")
    if not isinstance(name, str) or not REPO_NAME_PATTERN.match(name) or name in (".", ".."):
        raise ValidationError("name", "invalid format")


def validate_user_id(value: Optional[str]) -> str:
    if not value or not USER_ID_PATTERN.match(value):
        raise ValidationError("X-User-Id", "missing or invalid")
    return value


def validate_reading(value: Any) -> float:
    """
    Validate a biometric reading.

    Raises:
        ValidationError: If the value is not a finite number inside
            [READING_MIN, READING_MAX]
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("reading", "must be a number")
    if not math.isfinite(value):
        raise ValidationError("reading", "must be finite")
    if value < config.READING_MIN or value > config.READING_MAX:
        raise ValidationError("reading", f"must be between {config.READING_MIN:g} and {config.READING_MAX:g}")
    return value


def validate_threshold(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError("threshold", "must be a number")
    if value < config.READING_MIN or value > config.READING_MAX:
        raise ValidationError("threshold", f"must be between {config.READING_MIN:g} and {config.READING_MAX:g}")
    return value


# ============================================================
# Audit Logging Helpers
# ============================================================

SENSITIVE_FIELDS = ("credential", "private_key", "token", "sig")


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """
    Copy of ``data`` with credentials masked, recursing into nested dicts.

    Args:
        data: Row or request body about to be logged
        sensitive_fields: Keys to mask (default: SENSITIVE_FIELDS)
    """
    fields = SENSITIVE_FIELDS if sensitive_fields is None else tuple(sensitive_fields)

    def clean(key: str, value: Any) -> Any:
        if key in fields:
            return mask_secret(value) if isinstance(value, str) else "[REDACTED]"
        if isinstance(value, dict):
            return sanitize_for_logging(value, fields)
        return value

    return {key: clean(key, value) for key, value in data.items()}
