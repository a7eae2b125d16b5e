"""
Debounced issuance loop.

Every ingested reading triggers at most one issuance per Gate Target per
debounce window. The window is enforced by ``db.claim_issuance``; callers
that lose the claim return immediately. Session close and lost heartbeats
issue forced denies that skip the window but still take the stamp, so the
next reading-driven issuance is debounced relative to the deny.

Publish failures are logged and recorded in the issuance log and never
reach the caller. The next natural trigger retries.
"""

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from hrgate.logging_config import audit_log

from . import config, db
from .enforcement import EnforcementSignal, TransportFactory, get_backend
from .keys import KeyProvider

logger = logging.getLogger(__name__)

TRIGGER_READING = "reading"
TRIGGER_SESSION_CLOSE = "session_close"
TRIGGER_STALE_HEARTBEAT = "stale_heartbeat"


class SignalIssuer:
    """Issues and publishes signals for the targets bound to a session."""

    def __init__(
        self,
        key_provider: KeyProvider,
        transport_factory: Optional[TransportFactory] = None,
        ttl_seconds: Optional[int] = None,
        debounce_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        self._keys = key_provider
        self._transport_factory = transport_factory
        self._ttl = ttl_seconds or config.SIGNAL_TTL_SECONDS
        self._debounce = config.DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self._clock = clock

    def _now(self, now: Optional[int]) -> int:
        return int(self._clock()) if now is None else int(now)

    def on_reading(self, session: Dict[str, Any], reading: float, now: Optional[int] = None) -> int:
        """
        Issuance for one ingested reading.

        Returns:
            Number of targets published to
        """
        now = self._now(now)
        signal = EnforcementSignal(session_id=session["id"], reading=reading, threshold=session["threshold"])

        published = 0
        for target in db.targets_for_session(session["id"]):
            try:
                claimed = db.claim_issuance(target["id"], now, self._debounce)
            except sqlite3.Error as e:
                audit_log.issuance_skipped(target["id"], f"debounce store unavailable: {e}")
                continue
            if not claimed:
                audit_log.issuance_debounced(target["id"], session["id"])
                continue
            if not self._enforce(target, signal, TRIGGER_READING, now):
                continue
            published += 1

            # A close that ran while this publish was in flight already sent its
            # deny; send it again so the deny is the last write on the ref
            current = db.get_session(session["id"])
            if current is not None and not current["active"]:
                self.force_deny(current, TRIGGER_SESSION_CLOSE, now, targets=[target])
        return published

    def force_deny(
        self,
        session: Dict[str, Any],
        trigger: str,
        now: Optional[int] = None,
        targets: Optional[List[Dict[str, Any]]] = None
    ) -> int:
        """
        Publish ``decision: false`` to every target of the session, ignoring the window.

        ``targets`` overrides the bound targets, for a session already unbound.

        Returns:
            Number of targets published to
        """
        now = self._now(now)
        reading = session.get("last_reading")
        signal = EnforcementSignal(
            session_id=session["id"],
            reading=reading if reading is not None else 0,
            threshold=session["threshold"],
            forced_deny=True,
        )

        published = 0
        if targets is None:
            targets = db.targets_for_session(session["id"])
        for target in targets:
            try:
                db.stamp_issuance(target["id"], now)
            except sqlite3.Error as e:
                logger.warning("Could not stamp target %s before forced deny: %s", target["id"], e)
            if self._enforce(target, signal, trigger, now):
                published += 1
        return published

    def _enforce(self, target: Dict[str, Any], signal: EnforcementSignal, trigger: str, now: int) -> bool:
        expires_at = None
        error = None
        try:
            backend = get_backend(target, self._keys, self._transport_factory, self._ttl)
            result = backend.enforce(target, signal, now)
            expires_at = result.expires_at
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            audit_log.signal_publish_failed(target["id"], target["ref_name"], error, trigger)
        else:
            audit_log.signal_issued(
                target["id"], target["ref_name"], signal.session_id, result.decision, expires_at, trigger
            )

        try:
            db.append_issuance_log(
                target["id"], signal.session_id, trigger, signal.decision,
                expires_at, error is None, error, now
            )
            if error is None:
                db.set_session_decision(
                    signal.session_id, signal.decision, expires_at or now,
                    require_active=not signal.forced_deny,
                )
        except sqlite3.Error as e:
            logger.error("Could not record issuance for target %s: %s", target["id"], e)
        return error is None

