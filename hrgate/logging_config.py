"""
Logging configuration for hrgate.

Provides structured JSON logging for audit trails and debugging, shared by
the authority service and the sandbox hook.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import IO, Any, List, Optional

# Set per HTTP request by the authority middleware; empty in the hook
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; audit records add their typed fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if request_id_var.get():
            entry["request_id"] = request_id_var.get()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(entry, default=str)


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a credential for logging, keeping only a short suffix."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "***"
    return f"***{value[-visible:]}"


class AuditLogger:
    """
    Specialized logger for audit events.

    Covers issuance, publication, session lifecycle, heartbeat staleness
    and verification decisions.
    """

    def __init__(self, name: str = "hrgate.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, message: str = "", **fields) -> None:
        self._logger.log(
            level,
            f"{event_type}: {message}",
            extra={"extra_fields": {"event_type": event_type, "request_id": request_id_var.get(), **fields}},
        )

    def signal_issued(
        self,
        target_id: int,
        ref_name: str,
        session_id: str,
        decision: bool,
        expires_at: int,
        trigger: str
    ) -> None:
        self._log(
            logging.INFO,
            "SIGNAL_ISSUED",
            target_id=target_id,
            ref_name=ref_name,
            session_id=session_id,
            decision=decision,
            expires_at=expires_at,
            trigger=trigger,
            message=f"Signal published to {ref_name} (decision={decision})"
        )

    def signal_publish_failed(
        self,
        target_id: int,
        ref_name: str,
        error: str,
        trigger: str
    ) -> None:
        self._log(
            logging.ERROR,
            "SIGNAL_PUBLISH_FAILED",
            target_id=target_id,
            ref_name=ref_name,
            error=error,
            trigger=trigger,
            message=f"Publish to {ref_name} failed: {error}"
        )

    def issuance_debounced(self, target_id: int, session_id: str) -> None:
        self._log(
            logging.DEBUG,
            "ISSUANCE_DEBOUNCED",
            target_id=target_id,
            session_id=session_id,
            message=f"Issuance for target {target_id} inside debounce window"
        )

    def issuance_skipped(self, target_id: int, reason: str) -> None:
        """Issuance skipped because the debounce stamp could not be taken."""
        self._log(
            logging.WARNING,
            "ISSUANCE_SKIPPED",
            target_id=target_id,
            reason=reason,
            message=f"Issuance for target {target_id} skipped: {reason}"
        )

    def session_started(self, session_id: str, user_id: str, threshold: float, target_ids: list) -> None:
        self._log(
            logging.INFO,
            "SESSION_STARTED",
            session_id=session_id,
            user_id=user_id,
            threshold=threshold,
            target_ids=target_ids,
            message=f"Session {session_id} started"
        )

    def session_closed(self, session_id: str, user_id: str) -> None:
        self._log(
            logging.INFO,
            "SESSION_CLOSED",
            session_id=session_id,
            user_id=user_id,
            message=f"Session {session_id} closed"
        )

    def heartbeat_stale(self, session_id: str, last_reading_at: Optional[int], now: int) -> None:
        self._log(
            logging.WARNING,
            "HEARTBEAT_STALE",
            session_id=session_id,
            last_reading_at=last_reading_at,
            age_seconds=(now - last_reading_at) if last_reading_at is not None else None,
            message=f"No readings for session {session_id}; forcing deny"
        )

    def verification_decision(
        self,
        allowed: bool,
        reason: str,
        session_id: Optional[str] = None,
        tool: Optional[str] = None
    ) -> None:
        level = logging.INFO if allowed else logging.WARNING
        self._log(
            level,
            "VERIFICATION_DECISION",
            allowed=allowed,
            reason=reason,
            session_id=session_id,
            tool=tool,
            message=f"Verification decision: {reason}"
        )

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        """Forged or misdirected signals, rejected caller identities."""
        self._log(
            _SEVERITY_LEVELS.get(severity, logging.WARNING),
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            message=f"Security event: {event}",
            **details
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"{client_id} over the {endpoint} limit"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[IO[Any]] = None
) -> None:
    """
    Install handlers on the root logger, replacing any present.

    Args:
        level: Root log level name
        json_format: StructuredFormatter when True, plain text otherwise
        log_file: Also append to this file
        stream: Console stream (stdout by default; the hook passes stderr so
            that nothing lands on its stdout)
    """
    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    handlers: List[logging.Handler] = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request ID to the current context, generating one if not given."""
    request_id = request_id if request_id is not None else uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_var.get()


audit_log = AuditLogger()
