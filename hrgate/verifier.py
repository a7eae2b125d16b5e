"""
hrgate Verification Algorithm

Runs inside the sandbox before every gated tool execution. Fetches the
subject's signal ref, validates the payload and produces allow or deny.

Every step is a hard failure with a specific reason. There is no partial
trust and no "last known good": anything other than a fresh, well-formed,
correctly signed payload with ``decision: true`` for the configured subject
is a deny.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .config import GateConfig
from .payload import MalformedPayloadError, SignalPayload, decode
from .signing import verify_signature
from .transport import RefTransport, SignalNotFound, TransportError

logger = logging.getLogger(__name__)

# Tolerated lead of the authority clock over the sandbox clock
CLOCK_SKEW_SECONDS = 5


class Reason(str, Enum):
    """
    Verification outcomes.

    ALLOWED: Fresh, signed payload with a positive decision
    GATING_DISABLED: Gating switched off for the checkout (no verification ran)
    Everything else is a deny.
    """
    ALLOWED = "allowed"
    GATING_DISABLED = "gating_disabled"
    CONFIG_MISSING = "config_missing"
    SIGNAL_UNREACHABLE = "signal_unreachable"
    SIGNAL_MISSING = "signal_missing"
    MALFORMED_PAYLOAD = "malformed_payload"
    IDENTITY_MISMATCH = "identity_mismatch"
    SIGNAL_EXPIRED = "signal_expired"
    INVALID_SIGNATURE = "invalid_signature"
    BELOW_THRESHOLD = "below_threshold"
    VERIFIER_ERROR = "verifier_error"


_MESSAGES = {
    Reason.ALLOWED: "heart-rate signal verified",
    Reason.GATING_DISABLED: "gating disabled for this checkout",
    Reason.CONFIG_MISSING: "hrgate config missing or invalid",
    Reason.SIGNAL_UNREACHABLE: "signal ref could not be fetched",
    Reason.SIGNAL_MISSING: "no signal published for this subject",
    Reason.MALFORMED_PAYLOAD: "signal payload is malformed",
    Reason.IDENTITY_MISMATCH: "signal was issued for a different subject",
    Reason.SIGNAL_EXPIRED: "signal expired; is the monitoring session live?",
    Reason.INVALID_SIGNATURE: "signal signature is invalid",
    Reason.BELOW_THRESHOLD: "heart rate below threshold",
    Reason.VERIFIER_ERROR: "verifier failed",
}


@dataclass
class VerificationResult:
    """Result of one verification."""
    allowed: bool
    reason: Reason
    session_id: Optional[str] = None
    payload: Optional[SignalPayload] = None
    detail: Optional[str] = None
    gated: bool = True

    @classmethod
    def allow(cls, payload: SignalPayload) -> 'VerificationResult':
        return cls(allowed=True, reason=Reason.ALLOWED, session_id=payload.session_id, payload=payload)

    @classmethod
    def deny(
        cls,
        reason: Reason,
        detail: Optional[str] = None,
        payload: Optional[SignalPayload] = None
    ) -> 'VerificationResult':
        return cls(
            allowed=False,
            reason=reason,
            session_id=payload.session_id if payload else None,
            payload=payload,
            detail=detail,
        )

    @classmethod
    def disabled(cls) -> 'VerificationResult':
        return cls(allowed=True, reason=Reason.GATING_DISABLED, gated=False)

    def message(self) -> str:
        """Human-readable one-liner for the hook's stderr."""
        text = _MESSAGES[self.reason]
        if self.reason == Reason.BELOW_THRESHOLD and self.payload is not None:
            text = f"{text} ({self.payload.reading} < {self.payload.threshold})"
        elif self.detail:
            text = f"{text}: {self.detail}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "gated": self.gated,
            "reason": self.reason.value,
            "session_id": self.session_id,
            "reading": self.payload.reading if self.payload else None,
            "detail": self.detail,
        }


def _verify(config: Optional[GateConfig], transport: RefTransport, now: int) -> VerificationResult:
    # Step 1: Config
    if config is None:
        return VerificationResult.deny(Reason.CONFIG_MISSING)

    # Step 2: Fetch the ref
    try:
        raw = transport.fetch(config.ref_name, config.payload_filename)
    except SignalNotFound as e:
        return VerificationResult.deny(Reason.SIGNAL_MISSING, str(e))
    except TransportError as e:
        return VerificationResult.deny(Reason.SIGNAL_UNREACHABLE, str(e))

    # Step 3: Strict decode
    try:
        payload = decode(raw)
    except MalformedPayloadError as e:
        return VerificationResult.deny(Reason.MALFORMED_PAYLOAD, str(e))

    # Step 4: Identity
    if payload.subject_key != config.subject_key:
        return VerificationResult.deny(
            Reason.IDENTITY_MISMATCH,
            f"expected {config.subject_key}, got {payload.subject_key}",
            payload,
        )

    # Step 5: Freshness
    if payload.is_expired(now):
        return VerificationResult.deny(
            Reason.SIGNAL_EXPIRED,
            f"expired {now - payload.expires_at}s ago",
            payload,
        )
    remaining = payload.expires_at - now
    if remaining > config.ttl_seconds + CLOCK_SKEW_SECONDS:
        return VerificationResult.deny(
            Reason.SIGNAL_EXPIRED,
            f"expiry is {remaining}s out, beyond the {config.ttl_seconds}s ttl",
            payload,
        )

    # Step 6: Signature over the recomputed canonical encoding
    if not verify_signature(payload, config.public_key):
        return VerificationResult.deny(Reason.INVALID_SIGNATURE, payload=payload)

    # Step 7: Decision
    if not payload.decision:
        return VerificationResult.deny(Reason.BELOW_THRESHOLD, payload=payload)

    return VerificationResult.allow(payload)


def verify_signal(
    config: Optional[GateConfig],
    transport: RefTransport,
    now: Optional[int] = None
) -> VerificationResult:
    """
    Decide allow/deny for the configured subject.

    Args:
        config: Verifier config, or None when it could not be loaded
        transport: Transport able to fetch the subject's ref
        now: Verification time as Unix seconds (default: current time)

    Returns:
        VerificationResult; never raises
    """
    now = int(time.time()) if now is None else int(now)
    try:
        result = _verify(config, transport, now)
    except Exception as e:
        logger.exception("Verification failed unexpectedly")
        result = VerificationResult.deny(Reason.VERIFIER_ERROR, f"{type(e).__name__}: {e}")

    logger.debug("Verification decision: %s", result.reason.value)
    return result
