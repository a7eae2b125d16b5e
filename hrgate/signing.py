"""
hrgate Signal Signing

Ed25519 (RFC 8032) issuance and verification of signal payloads.

The authority holds a single signing key. Keys travel as lowercase hex:
32 bytes of seed for the private key, 32 bytes for the public key.
"""

import secrets
import time
from dataclasses import replace
from typing import Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .gating import threshold_decision
from .payload import NONCE_BYTES, SIGNAL_VERSION, Number, SignalPayload, encode_for_signing


def generate_keypair() -> Tuple[str, str]:
    """
    Generate an Ed25519 key pair.

    Returns:
        Tuple of (private_key_hex, public_key_hex)
    """
    signing_key = SigningKey.generate()
    return bytes(signing_key).hex(), bytes(signing_key.verify_key).hex()


def load_signing_key(private_key_hex: str) -> SigningKey:
    """Build a SigningKey from its hex seed."""
    seed = bytes.fromhex(private_key_hex.strip())
    if len(seed) != 32:
        raise ValueError("Ed25519 private key must be 32 bytes")
    return SigningKey(seed)


def public_key_hex(signing_key: SigningKey) -> str:
    return bytes(signing_key.verify_key).hex()


def generate_nonce() -> str:
    """Generate a cryptographically secure random nonce."""
    return secrets.token_hex(NONCE_BYTES)


def issue(
    subject_key: str,
    session_id: str,
    reading: Number,
    threshold: Number,
    ttl_seconds: int,
    signing_key: SigningKey,
    now: Optional[int] = None,
    force_deny: bool = False
) -> SignalPayload:
    """
    Build and sign a fresh signal payload.

    The decision is always recomputed here from the reading and threshold;
    nothing is carried over from earlier payloads. ``force_deny`` pins it to
    False (session close, lost heartbeat) while keeping the last reading.

    Args:
        subject_key: Identity the token speaks for
        session_id: Monitoring session, for downstream attribution
        reading: Latest biometric reading
        threshold: Threshold configured for the subject
        ttl_seconds: Token lifetime, added to the issuance time
        signing_key: The authority's Ed25519 signing key
        now: Issuance time as Unix seconds (defaults to the current time)
        force_deny: Issue a deny regardless of the reading

    Returns:
        The signed SignalPayload
    """
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be a positive integer")
    if not subject_key:
        raise ValueError("subject_key is required")

    issued_at = int(time.time()) if now is None else int(now)

    unsigned = SignalPayload(
        version=SIGNAL_VERSION,
        subject_key=subject_key,
        session_id=session_id,
        reading=reading,
        threshold=threshold,
        decision=False if force_deny else threshold_decision(reading, threshold),
        expires_at=issued_at + ttl_seconds,
        nonce=generate_nonce(),
    )

    signature = signing_key.sign(encode_for_signing(unsigned)).signature
    return replace(unsigned, signature=signature.hex())


def verify_signature(payload: SignalPayload, public_key: str) -> bool:
    """
    Verify the payload's signature against an authority public key.

    The message is always recomputed from the decoded fields.

    Args:
        payload: Decoded payload
        public_key: Hex-encoded Ed25519 public key

    Returns:
        True if the signature is valid, False otherwise
    """
    try:
        verify_key = VerifyKey(bytes.fromhex(public_key))
        verify_key.verify(encode_for_signing(payload), bytes.fromhex(payload.signature))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False
