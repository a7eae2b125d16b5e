import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from hrgate.bootstrap import generate_bootstrap_files
from hrgate.logging_config import audit_log, configure_logging, set_request_id
from hrgate.transport import ref_name_for

from . import config, db
from .enforcement import BACKEND_RULESET, BACKENDS
from .issuance import SignalIssuer
from .keys import KeyProvider, get_default_provider
from .models import (
    GateTargetCreate,
    GateTargetEnrolled,
    ReadingIn,
    SessionStart,
    ThresholdUpdate,
    session_out,
    target_out,
)
from .rate_limit import RateLimiter
from .security import (
    ValidationError,
    sanitize_for_logging,
    validate_repository,
    validate_subject_key,
    validate_threshold,
    validate_user_id,
)
from .sessions import SessionNotFound, SessionService
from .supervisor import HeartbeatSupervisor

logger = logging.getLogger(__name__)

app = FastAPI(title="hrgate authority")

readings_limiter = RateLimiter(config.READINGS_RPM)
# Raised by a key provider whose key cannot be loaded
KEY_ERRORS = (OSError, ValueError, KeyError)
KEYS: Optional[KeyProvider] = None
ISSUER: Optional[SignalIssuer] = None
SESSIONS: Optional[SessionService] = None
SUPERVISOR: Optional[HeartbeatSupervisor] = None


@app.on_event("startup")
def _startup():
    global KEYS, ISSUER, SESSIONS, SUPERVISOR
    configure_logging(level=config.LOG_LEVEL, json_format=config.LOG_JSON)
    init_checks = config.validate_config()
    failed = [k for k, ok in init_checks.items() if not ok]
    if failed:
        if config.is_production():
            raise RuntimeError(f"Configuration checks failed: {failed}")
        logger.warning("Configuration checks failed: %s", failed)
    db.init_db()
    KEYS = get_default_provider()
    try:
        KEYS.get_signing_key()
    except KEY_ERRORS as e:
        if config.is_production():
            raise RuntimeError(f"Signing key unavailable: {e}") from e
        logger.warning("Signing key unavailable, signals will not publish until it loads: %s", e)
    ISSUER = SignalIssuer(KEYS)
    SESSIONS = SessionService(ISSUER)
    SUPERVISOR = HeartbeatSupervisor(ISSUER)
    if config.SUPERVISOR_ENABLED:
        SUPERVISOR.start()


@app.on_event("shutdown")
def _shutdown():
    if SUPERVISOR is not None:
        SUPERVISOR.stop(timeout=config.SUPERVISOR_INTERVAL_SECONDS)
    db.close_connection()


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    try:
        return validate_user_id(x_user_id)
    except ValidationError:
        audit_log.security_event("missing_or_invalid_user_id", severity="low")
        raise HTTPException(401, "UNAUTHENTICATED")


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": config.ENV,
        "config": config.validate_config(),
        "db": db.get_db_stats(),
        "supervisor_running": SUPERVISOR is not None and SUPERVISOR.running,
    }


@app.put("/profile/threshold")
def put_threshold(req: ThresholdUpdate, user_id: str = Depends(current_user)):
    try:
        threshold = validate_threshold(req.threshold)
    except ValidationError:
        raise HTTPException(400, "INVALID_THRESHOLD")
    db.set_threshold(user_id, threshold, int(time.time()))
    # The active session keeps its snapshot until it is restarted
    return {"threshold": threshold}


@app.post("/gate_targets", status_code=201, response_model=GateTargetEnrolled)
def create_gate_target(req: GateTargetCreate, user_id: str = Depends(current_user)):
    try:
        validate_subject_key(req.subject_key)
        validate_repository(req.owner, req.name)
    except ValidationError as e:
        raise HTTPException(400, f"INVALID_TARGET: {e.field}")
    if req.backend not in BACKENDS:
        raise HTTPException(400, "INVALID_TARGET: backend")
    if req.backend == BACKEND_RULESET and req.ruleset_id is None:
        raise HTTPException(400, "INVALID_TARGET: ruleset_id")
    if db.find_active_target(user_id, req.owner, req.name):
        raise HTTPException(409, "TARGET_EXISTS")
    try:
        public_key = KEYS.get_public_key_hex()
    except KEY_ERRORS as e:
        logger.error("Signing key unavailable: %s", e)
        raise HTTPException(503, "SIGNING_KEY_UNAVAILABLE")

    target = db.create_gate_target(
        user_id=user_id,
        owner=req.owner,
        name=req.name,
        subject_key=req.subject_key,
        ref_name=ref_name_for(req.subject_key, config.REF_NAMESPACE),
        credential=req.credential,
        backend=req.backend,
        ruleset_id=req.ruleset_id,
        now=int(time.time()),
    )
    logger.info("Gate target enrolled: %s", sanitize_for_logging(dict(target)))

    # Join the running session, if any
    session = db.get_active_session(user_id)
    if session is not None:
        db.bind_targets(user_id, session["id"], [target["id"]])
        target = db.get_gate_target(target["id"])

    files = generate_bootstrap_files(req.subject_key, public_key, config.SIGNAL_TTL_SECONDS)
    return {"target": target_out(target), "bootstrap_files": [f.to_dict() for f in files]}


@app.get("/gate_targets")
def list_gate_targets(include_inactive: bool = False, user_id: str = Depends(current_user)):
    return [target_out(t) for t in db.list_gate_targets(user_id, include_inactive)]


@app.delete("/gate_targets/{target_id}")
def delete_gate_target(target_id: int, user_id: str = Depends(current_user)):
    if not db.deactivate_gate_target(user_id, target_id):
        raise HTTPException(404, "TARGET_NOT_FOUND")
    return target_out(db.get_gate_target(target_id))


@app.post("/sessions/start", status_code=201)
def start_session(req: SessionStart, user_id: str = Depends(current_user)):
    session = SESSIONS.start_session(user_id, req.target_ids, req.source)
    return session_out(session)


@app.post("/sessions/stop")
def stop_session(user_id: str = Depends(current_user)):
    try:
        return session_out(SESSIONS.stop_session(user_id))
    except SessionNotFound:
        raise HTTPException(404, "SESSION_NOT_FOUND")


@app.get("/sessions/active")
def active_session(user_id: str = Depends(current_user)):
    session = db.get_active_session(user_id)
    if session is None:
        return {"active": False}
    targets = [t["id"] for t in db.targets_for_session(session["id"])]
    return session_out({**session, "target_ids": targets})


@app.post("/readings")
def post_reading(req: ReadingIn, user_id: str = Depends(current_user)):
    if not readings_limiter.allow(user_id):
        audit_log.rate_limit_exceeded(user_id, "/readings")
        raise HTTPException(429, "RATE_LIMIT")
    try:
        return SESSIONS.ingest_reading(user_id, req.session_id, req.reading, req.ts, req.source)
    except ValidationError:
        raise HTTPException(400, "INVALID_READING")
    except SessionNotFound:
        raise HTTPException(404, "SESSION_NOT_FOUND")


@app.get("/status")
def status(user_id: str = Depends(current_user)):
    return SESSIONS.status(user_id)
