from pydantic import BaseModel, Field, StrictFloat, StrictInt
from typing import Any, Dict, List, Optional, Union


class ThresholdUpdate(BaseModel):
    threshold: float


class GateTargetCreate(BaseModel):
    owner: str
    name: str
    subject_key: str
    credential: str = Field(min_length=1)
    backend: str = "signed_ref"
    ruleset_id: Optional[int] = None


class GateTargetOut(BaseModel):
    id: int
    owner: str
    name: str
    subject_key: str
    ref_name: str
    backend: str
    ruleset_id: Optional[int] = None
    active: bool
    active_session_id: Optional[str] = None
    last_issued_at: Optional[int] = None
    created_at: int


class BootstrapFileOut(BaseModel):
    path: str
    content: str
    executable: bool = False


class GateTargetEnrolled(BaseModel):
    target: GateTargetOut
    bootstrap_files: List[BootstrapFileOut]


class SessionStart(BaseModel):
    target_ids: Optional[List[int]] = None
    source: Optional[str] = None


class ReadingIn(BaseModel):
    session_id: str
    # Range checks happen in the service so that the error code is ours
    reading: Union[StrictInt, StrictFloat]
    ts: Optional[int] = None
    source: Optional[str] = None


class SessionOut(BaseModel):
    id: str
    started_at: int
    ended_at: Optional[int] = None
    threshold: float
    source: Optional[str] = None
    active: bool
    last_reading: Optional[float] = None
    last_reading_at: Optional[int] = None
    display_state: str
    target_ids: List[int] = Field(default_factory=list)


def target_out(row: Dict[str, Any]) -> GateTargetOut:
    """Public view of a gate_targets row (no credential)."""
    return GateTargetOut(**{k: v for k, v in row.items() if k in GateTargetOut.model_fields})


def session_out(row: Dict[str, Any]) -> SessionOut:
    return SessionOut(**{k: v for k, v in row.items() if k in SessionOut.model_fields})
