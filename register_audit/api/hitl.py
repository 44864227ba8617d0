"""
HITL review endpoints.
Reviewers list pending packets, inspect one, and resolve a run's packet,
which resumes the run in the background. A packet resolved without resuming
is picked up later through the resume endpoint.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from register_audit.dependencies import get_orchestrator, get_repository, verify_api_key
from register_audit.errors import HITLPacketNotFoundError
from register_audit.pipeline.orchestrator import Orchestrator
from register_audit.review import queue
from register_audit.schemas.api import (
    ExecuteResponse,
    HITLQueueResponse,
    HITLResolveRequest,
    HITLResolveResponse,
)
from register_audit.schemas.contracts import HITLPacket, HITLResolution
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["hitl"], dependencies=[Depends(verify_api_key)])


@router.get("/hitl", response_model=HITLQueueResponse)
async def list_pending(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    repository: RunRepository = Depends(get_repository),
):
    """Pending packets, oldest first, with queue statistics."""
    packets = await queue.get_pending_packets(repository, limit=limit, offset=offset)
    stats = await queue.get_queue_stats(repository)
    return HITLQueueResponse(packets=packets, stats=stats)


@router.get("/hitl/{packet_id}", response_model=HITLPacket)
async def get_packet(packet_id: str, repository: RunRepository = Depends(get_repository)):
    packet = await repository.get_hitl_packet(packet_id)
    if packet is None:
        raise HITLPacketNotFoundError(packet_id)
    return packet


@router.get("/runs/{run_id}/hitl", response_model=HITLPacket)
async def get_run_packet(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    packet = await orchestrator.get_hitl_packet_by_run(run_id)
    if packet is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} has no HITL packet",
        )
    return packet


@router.post("/runs/{run_id}/hitl/resolve", response_model=HITLResolveResponse)
async def resolve_run_packet(
    run_id: str,
    request: HITLResolveRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Resolve the run's pending packet (once) and, unless resume is false,
    continue the run from the escalated stage. With resume, 409 from the
    session lock leaves the packet pending so the call can be repeated.
    """
    resolved, task = await orchestrator.resolve_run_packet(
        run_id,
        HITLResolution(
            action_taken=request.action_taken,
            resolved_by=request.resolved_by,
            notes=request.notes,
            corrections=request.corrections,
        ),
        resume=request.resume,
    )

    resume_started = task is not None
    logger.info(
        "hitl_resolved_via_api",
        run_id=run_id,
        packet_id=resolved.packet_id,
        resume_started=resume_started,
    )
    return HITLResolveResponse(packet=resolved, resume_started=resume_started)


@router.post("/runs/{run_id}/resume", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
async def resume_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    Continue a suspended run whose packet is already resolved, using the
    corrections recorded on the resolution.
    """
    await orchestrator.launch_resume(run_id)
    run = await orchestrator.get_run(run_id)
    logger.info("hitl_resume_via_api", run_id=run_id)
    return ExecuteResponse(run_id=run.id, status=run.status, execution_mode=run.execution_mode)
