"""
Pydantic request/response schemas for the /api/v1 endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from register_audit.models.enums import ExecutionMode, RunStatus
from register_audit.schemas.contracts import HITLPacket, Run, StageEvent


# ── Request Schemas ──────────────────────────────────────────

class ExecuteRequest(BaseModel):
    """Optional body for execute; overrides the mode chosen at creation."""
    mode: Optional[ExecutionMode] = None


class HITLResolveRequest(BaseModel):
    """Reviewer decision for the run's pending packet."""
    action_taken: str
    resolved_by: str = "operator"
    notes: Optional[str] = None
    corrections: dict[str, Any] = Field(default_factory=dict)
    resume: bool = True


# ── Response Schemas ─────────────────────────────────────────

class RunListResponse(BaseModel):
    runs: list[Run]
    total: int
    limit: int


class ExecuteResponse(BaseModel):
    run_id: str
    status: RunStatus
    execution_mode: ExecutionMode
    message: str = "Run accepted. Follow progress on the stream endpoint."


class StageEventListResponse(BaseModel):
    run_id: str
    events: list[StageEvent]


class HITLResolveResponse(BaseModel):
    packet: HITLPacket
    resume_started: bool


class HITLQueueResponse(BaseModel):
    packets: list[HITLPacket]
    stats: dict[str, Any]


class SessionStatusResponse(BaseModel):
    is_locked: bool
    current_run_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None


class SessionReleaseResponse(BaseModel):
    released: bool
    released_run_id: Optional[str] = None
