"""
Enforcement backends.

A backend turns one decision into an effect on a Gate Target:

- ``signed_ref``: sign a payload and publish it to the target's signal ref
  (the sandbox hook verifies it).
- ``ruleset``: toggle an existing repository ruleset that blocks writes.
  No tokens are involved and nothing is shared with the signed-ref path.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from hrgate.gating import threshold_decision
from hrgate.payload import encode
from hrgate.signing import issue
from hrgate.transport import GitHubRefTransport, MemoryRefTransport, RefTransport, TransportError

from . import config
from .keys import KeyProvider

BACKEND_SIGNED_REF = "signed_ref"
BACKEND_RULESET = "ruleset"
BACKENDS = (BACKEND_SIGNED_REF, BACKEND_RULESET)


@dataclass
class EnforcementSignal:
    """What to enforce for one session."""
    session_id: str
    reading: float
    threshold: float
    forced_deny: bool = False

    @property
    def decision(self) -> bool:
        return False if self.forced_deny else threshold_decision(self.reading, self.threshold)


@dataclass
class EnforcementResult:
    decision: bool
    expires_at: Optional[int] = None


class EnforcementBackend(ABC):
    @abstractmethod
    def enforce(self, target: Dict[str, Any], signal: EnforcementSignal, now: int) -> EnforcementResult:
        """
        Apply the decision to the target.

        Raises:
            TransportError: If the remote side could not be updated
        """
        raise NotImplementedError


class SignedRefBackend(EnforcementBackend):
    def __init__(self, key_provider: KeyProvider, transport: RefTransport, ttl_seconds: int):
        self._keys = key_provider
        self._transport = transport
        self._ttl = ttl_seconds

    def enforce(self, target: Dict[str, Any], signal: EnforcementSignal, now: int) -> EnforcementResult:
        payload = issue(
            subject_key=target["subject_key"],
            session_id=signal.session_id,
            reading=signal.reading,
            threshold=signal.threshold,
            ttl_seconds=self._ttl,
            signing_key=self._keys.get_signing_key(),
            now=now,
            force_deny=signal.forced_deny,
        )
        self._transport.publish(target["ref_name"], encode(payload))
        return EnforcementResult(decision=payload.decision, expires_at=payload.expires_at)


class RulesetBackend(EnforcementBackend):
    """
    Toggles a write-blocking repository ruleset.

    Decision true disables the ruleset (writes allowed); false activates it.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 10,
        session: Optional[requests.Session] = None
    ):
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def enforce(self, target: Dict[str, Any], signal: EnforcementSignal, now: int) -> EnforcementResult:
        if not target.get("ruleset_id"):
            raise TransportError(f"target {target['id']} has no ruleset_id")
        decision = signal.decision
        url = f"{self._api_url}/repos/{target['owner']}/{target['name']}/rulesets/{target['ruleset_id']}"
        try:
            resp = self._session.put(
                url,
                json={"enforcement": "disabled" if decision else "active"},
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/vnd.github+json",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"ruleset update failed: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(f"ruleset update failed: HTTP {resp.status_code}")
        return EnforcementResult(decision=decision)


# ============================================================
# Factories
# ============================================================

_memory_transport: Optional[MemoryRefTransport] = None
_memory_lock = threading.Lock()


def get_memory_transport() -> MemoryRefTransport:
    """Shared in-process transport for the ``memory`` configuration."""
    global _memory_transport
    with _memory_lock:
        if _memory_transport is None:
            _memory_transport = MemoryRefTransport()
        return _memory_transport


def default_transport_for(target: Dict[str, Any]) -> RefTransport:
    if config.TRANSPORT_BACKEND == "memory":
        return get_memory_transport()
    return GitHubRefTransport(
        owner=target["owner"],
        repo=target["name"],
        token=target["credential"],
        api_url=config.GITHUB_API_URL,
        timeout=config.TRANSPORT_TIMEOUT_SECONDS,
    )


TransportFactory = Callable[[Dict[str, Any]], RefTransport]


def get_backend(
    target: Dict[str, Any],
    key_provider: KeyProvider,
    transport_factory: Optional[TransportFactory] = None,
    ttl_seconds: Optional[int] = None
) -> EnforcementBackend:
    backend = target.get("backend") or BACKEND_SIGNED_REF
    if backend == BACKEND_RULESET:
        return RulesetBackend(
            token=target["credential"],
            api_url=config.GITHUB_API_URL,
            timeout=config.TRANSPORT_TIMEOUT_SECONDS,
        )
    if backend != BACKEND_SIGNED_REF:
        raise ValueError(f"Unknown enforcement backend: {backend}")
    factory = transport_factory or default_transport_for
    return SignedRefBackend(
        key_provider=key_provider,
        transport=factory(target),
        ttl_seconds=ttl_seconds or config.SIGNAL_TTL_SECONDS,
    )
