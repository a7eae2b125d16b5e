"""
hrgate Signal Payload and Canonical Encoding

Defines the capability token carried over the git ref and the deterministic
byte sequence that the authority signs and the sandbox verifies.

Canonical encoding rules:
- Object keys sorted lexicographically by wire name
- Compact form, no whitespace, no trailing newline
- UTF-8, no BOM
- Integers as plain decimal digits
- Floats in positional notation (never scientific); integral floats
  render without a fractional part so that 72.0 and 72 encode alike
- Lowercase true/false

Decoding is strict: every field must be present, non-null and of the right
type. Nothing is defaulted or coerced.
"""

import json
import math
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError

SIGNAL_VERSION = 1
NONCE_BYTES = 16

Number = Union[int, float]

# Python attribute name -> wire name
WIRE_NAMES = {
    "version": "v",
    "subject_key": "subject_key",
    "session_id": "session_id",
    "reading": "reading",
    "threshold": "threshold",
    "decision": "decision",
    "expires_at": "expires_at",
    "nonce": "nonce",
    "signature": "sig",
}

SIGNATURE_FIELD = "sig"


class MalformedPayloadError(ValueError):
    """Raised when payload bytes cannot be decoded into a SignalPayload."""


@dataclass(frozen=True)
class SignalPayload:
    """Signed, expiring allow/deny decision for one subject."""
    version: int
    subject_key: str
    session_id: str
    reading: Number
    threshold: Number
    decision: bool
    expires_at: int
    nonce: str
    signature: str = ""

    def unsigned_fields(self) -> Dict[str, Any]:
        """Wire-named fields covered by the signature."""
        data = asdict(self)
        data.pop("signature")
        return {WIRE_NAMES[k]: v for k, v in data.items()}

    def to_wire(self) -> Dict[str, Any]:
        """Wire-named fields including the signature."""
        fields = self.unsigned_fields()
        fields[SIGNATURE_FIELD] = self.signature
        return fields

    def is_expired(self, now_epoch: int) -> bool:
        return now_epoch >= self.expires_at


class _WirePayload(BaseModel):
    """Strict schema for the wire document."""
    model_config = ConfigDict(extra="forbid", strict=True)

    v: StrictInt
    subject_key: StrictStr = Field(min_length=1)
    session_id: StrictStr
    reading: Union[StrictInt, StrictFloat]
    threshold: Union[StrictInt, StrictFloat]
    decision: StrictBool
    expires_at: StrictInt
    nonce: StrictStr = Field(pattern=r"^[0-9a-f]{32}$")
    sig: StrictStr = Field(pattern=r"^[0-9a-f]{128}$")


# ============================================================
# Encoding
# ============================================================

def _format_number(value: Any) -> str:
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"cannot encode non-finite number: {value!r}")
        if value.is_integer():
            return str(int(value))
        # repr gives the shortest round-tripping digits; Decimal removes the exponent
        text = format(Decimal(repr(value)), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
    raise ValueError(f"not a number: {type(value)}")


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    raise ValueError(f"cannot encode type: {type(value)}")


def _encode_object(fields: Dict[str, Any]) -> bytes:
    parts = [
        f"{json.dumps(key, ensure_ascii=False)}:{_encode_value(fields[key])}"
        for key in sorted(fields)
    ]
    return ("{" + ",".join(parts) + "}").encode("utf-8")


def encode_for_signing(payload: SignalPayload) -> bytes:
    """
    Canonical bytes of every field except the signature.

    This is the exact message that is signed and verified.

    Raises:
        ValueError: If a field holds a value that has no canonical form
    """
    return _encode_object(payload.unsigned_fields())


def encode(payload: SignalPayload) -> bytes:
    """Canonical bytes of the full wire document, signature included."""
    if not payload.signature:
        raise ValueError("payload is not signed")
    return _encode_object(payload.to_wire())


# ============================================================
# Decoding
# ============================================================

def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    obj: Dict[str, Any] = {}
    for key, value in pairs:
        if key in obj:
            raise MalformedPayloadError(f"duplicate field: {key}")
        obj[key] = value
    return obj


def _reject_constant(name: str) -> Any:
    raise MalformedPayloadError(f"non-finite number: {name}")


def decode(data: Union[bytes, str]) -> SignalPayload:
    """
    Parse and type-check a wire document.

    Args:
        data: Raw blob contents fetched from the signal ref

    Returns:
        The decoded SignalPayload

    Raises:
        MalformedPayloadError: On any missing, null, extra, duplicated or
            wrong-typed field, on an unknown version, or on invalid JSON
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayloadError("payload is not valid UTF-8") from e

    try:
        raw = json.loads(
            data,
            object_pairs_hook=_reject_duplicates,
            parse_constant=_reject_constant,
        )
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"invalid JSON: {e.msg}") from e

    if not isinstance(raw, dict):
        raise MalformedPayloadError("payload must be a JSON object")

    try:
        wire = _WirePayload.model_validate(raw)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise MalformedPayloadError(f"invalid fields: {', '.join(fields) or 'payload'}") from e

    if wire.v != SIGNAL_VERSION:
        raise MalformedPayloadError(f"unsupported version: {wire.v}")

    for name in ("reading", "threshold"):
        if not math.isfinite(getattr(wire, name)):
            raise MalformedPayloadError(f"non-finite {name}")

    return SignalPayload(
        version=wire.v,
        subject_key=wire.subject_key,
        session_id=wire.session_id,
        reading=wire.reading,
        threshold=wire.threshold,
        decision=wire.decision,
        expires_at=wire.expires_at,
        nonce=wire.nonce,
        signature=wire.sig,
    )
