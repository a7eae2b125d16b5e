"""
Monitoring session lifecycle and reading ingestion.

A user has at most one active session. Starting a session closes the
previous one first. Closing a session publishes a final deny to every
target bound to it; an idle ref then expires on its own.
"""

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from hrgate.gating import Direction, GateState, HysteresisGate, threshold_decision
from hrgate.logging_config import audit_log

from . import config, db
from .issuance import TRIGGER_SESSION_CLOSE, SignalIssuer
from .security import validate_reading


class SessionNotFound(Exception):
    """No active session matches the request."""


class SessionService:
    def __init__(self, issuer: SignalIssuer, clock: Callable[[], float] = time.time):
        self.issuer = issuer
        self._clock = clock

    def _now(self, now: Optional[int]) -> int:
        return int(self._clock()) if now is None else int(now)

    def start_session(
        self,
        user_id: str,
        target_ids: Optional[List[int]] = None,
        source: Optional[str] = None,
        now: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Open a session bound to the user's active targets.

        Returns:
            The session row plus ``target_ids``
        """
        now = self._now(now)
        previous = db.get_active_session(user_id)
        if previous is not None:
            self._close(previous, now)

        threshold = db.get_threshold(user_id)
        session = db.create_session(str(uuid.uuid4()), user_id, threshold, source, now)
        bound = db.bind_targets(user_id, session["id"], target_ids)
        audit_log.session_started(session["id"], user_id, threshold, bound)
        return {**session, "target_ids": bound}

    def stop_session(self, user_id: str, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Close the user's active session.

        Raises:
            SessionNotFound: If the user has no active session
        """
        now = self._now(now)
        session = db.get_active_session(user_id)
        if session is None or not self._close(session, now):
            raise SessionNotFound(user_id)
        return db.get_session(session["id"])

    def _close(self, session: Dict[str, Any], now: int) -> bool:
        if not db.close_session(session["id"], now):
            return False
        self.issuer.force_deny(session, TRIGGER_SESSION_CLOSE, now)
        db.unbind_session(session["id"])
        audit_log.session_closed(session["id"], session["user_id"])
        return True

    def ingest_reading(
        self,
        user_id: str,
        session_id: str,
        reading: Any,
        ts: Optional[int] = None,
        source: Optional[str] = None,
        now: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Accept one reading and run issuance for it.

        The reading is stored whatever happens to issuance.

        Raises:
            ValidationError: If the reading is out of range
            SessionNotFound: If the session is not the user's active session
        """
        value = validate_reading(reading)
        now = self._now(now)

        session = db.get_session(session_id)
        if session is None or session["user_id"] != user_id or not session["active"]:
            raise SessionNotFound(session_id)

        gate = HysteresisGate(
            threshold=session["threshold"],
            margin=config.HYSTERESIS_MARGIN,
            direction=Direction.ABOVE,
            state=GateState(session["display_state"]),
            last_reading=session["last_reading"],
        )
        display_state = gate.update(value)

        if not db.record_reading(session_id, value, ts if ts is not None else now, now, source, display_state.value):
            raise SessionNotFound(session_id)

        session = db.get_session(session_id)
        published = self.issuer.on_reading(session, value, now)
        return {
            "session_id": session_id,
            "reading": value,
            "decision": threshold_decision(value, session["threshold"]),
            "display_state": display_state.value,
            "published": published,
        }

    def status(self, user_id: str, now: Optional[int] = None) -> Dict[str, Any]:
        now = self._now(now)
        session = db.get_active_session(user_id)
        threshold = session["threshold"] if session else db.get_threshold(user_id)
        if session is None:
            return {
                "active": False,
                "threshold": threshold,
                "display_state": GateState.LOCKED.value,
                "tools_unlocked": False,
            }

        expires_at = session["last_expires_at"]
        decision = bool(session["last_decision"])
        return {
            "active": True,
            "session_id": session["id"],
            "threshold": threshold,
            "last_reading": session["last_reading"],
            "last_reading_at": session["last_reading_at"],
            "decision": decision,
            "expires_at": expires_at,
            "display_state": session["display_state"],
            "tools_unlocked": decision and expires_at is not None and now < expires_at,
        }
