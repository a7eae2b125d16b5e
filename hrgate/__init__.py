"""
hrgate: heart-rate gated tool execution

Version: 0.3.0

A remote authority continuously asserts a short-lived, Ed25519-signed
yes/no decision ("is this user's live heart rate at or above their
threshold?") onto a git ref. A hook inside the sandbox fetches that ref
before every tool call and allows the call only for a fresh, correctly
signed, positive decision.

There is no third state. If the decision cannot be verified, it is a deny.

Usage:
    from hrgate import (
        generate_keypair,
        load_signing_key,
        issue,
        encode,
        MemoryRefTransport,
        ref_name_for,
        GateConfig,
        verify_signal,
    )

    # Authority side
    private_hex, public_hex = generate_keypair()
    payload = issue("octocat", "session-1", 120, 100, 15, load_signing_key(private_hex))
    transport = MemoryRefTransport()
    transport.publish(ref_name_for("octocat"), encode(payload))

    # Sandbox side
    config = GateConfig(subject_key="octocat", public_key=public_hex)
    result = verify_signal(config, transport)

    if result.allowed:
        # Tool call may proceed
        session_id = result.session_id
    else:
        # Blocked; result.reason says why
        reason = result.reason.value
"""

__version__ = "0.3.0"

# Payload and canonical encoding
from .payload import (
    SIGNAL_VERSION,
    SignalPayload,
    MalformedPayloadError,
    encode,
    encode_for_signing,
    decode,
)

# Signing
from .signing import (
    generate_keypair,
    load_signing_key,
    public_key_hex,
    issue,
    verify_signature,
)

# Gating rules
from .gating import (
    threshold_decision,
    HysteresisGate,
    GateState,
    Direction,
)

# Transport
from .transport import (
    RefTransport,
    GitHubRefTransport,
    GitRemoteTransport,
    MemoryRefTransport,
    TransportError,
    SignalNotFound,
    ref_name_for,
    PAYLOAD_FILENAME,
)

# Verifier
from .config import GateConfig, ConfigError, load_gate_config
from .verifier import VerificationResult, Reason, verify_signal

# Bootstrap
from .bootstrap import BootstrapFile, generate_bootstrap_files


__all__ = [
    "__version__",

    # Payload
    "SIGNAL_VERSION",
    "SignalPayload",
    "MalformedPayloadError",
    "encode",
    "encode_for_signing",
    "decode",

    # Signing
    "generate_keypair",
    "load_signing_key",
    "public_key_hex",
    "issue",
    "verify_signature",

    # Gating
    "threshold_decision",
    "HysteresisGate",
    "GateState",
    "Direction",

    # Transport
    "RefTransport",
    "GitHubRefTransport",
    "GitRemoteTransport",
    "MemoryRefTransport",
    "TransportError",
    "SignalNotFound",
    "ref_name_for",
    "PAYLOAD_FILENAME",

    # Verifier
    "GateConfig",
    "ConfigError",
    "load_gate_config",
    "VerificationResult",
    "Reason",
    "verify_signal",

    # Bootstrap
    "BootstrapFile",
    "generate_bootstrap_files",
]
