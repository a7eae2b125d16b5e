"""
Staleness/heartbeat supervisor.

Polls for sessions that still hold a live allow but have stopped sending
readings, and forces a deny for them. Without it, an allow published just
before the device disconnected would stay valid until its expiry.
"""

import logging
import threading
import time
from typing import Callable, Optional

from hrgate.logging_config import audit_log

from . import config, db
from .issuance import TRIGGER_STALE_HEARTBEAT, SignalIssuer

logger = logging.getLogger(__name__)


class HeartbeatSupervisor:
    def __init__(
        self,
        issuer: SignalIssuer,
        interval_seconds: Optional[float] = None,
        timeout_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        self._issuer = issuer
        self._interval = interval_seconds or config.SUPERVISOR_INTERVAL_SECONDS
        self._timeout = timeout_seconds or config.HEARTBEAT_TIMEOUT_SECONDS
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self, now: Optional[int] = None) -> int:
        """
        One supervision pass.

        Returns:
            Number of sessions forced to deny
        """
        now = int(self._clock()) if now is None else int(now)
        cutoff = now - self._timeout
        forced = 0
        for session in db.stale_sessions(cutoff):
            # Another supervisor or a fresh reading may get there first
            if not db.mark_session_stale(session["id"], cutoff):
                continue
            audit_log.heartbeat_stale(session["id"], session["last_reading_at"], now)
            self._issuer.force_deny(session, TRIGGER_STALE_HEARTBEAT, now)
            forced += 1
        return forced

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.check_once()
            except Exception:
                logger.exception("Heartbeat supervision pass failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="hrgate-supervisor", daemon=True)
        self._thread.start()
        logger.info("Heartbeat supervisor started (interval=%ss, timeout=%ss)", self._interval, self._timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
