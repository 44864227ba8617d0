"""
/api/v1/runs endpoints.
Upload, execution, cancellation, artifacts, results, logs and the live stream.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse

from register_audit.config import settings
from register_audit.dependencies import get_event_bus, get_orchestrator, get_repository, verify_api_key
from register_audit.models.enums import ArtifactKind, EventType, ExecutionMode, RunStatus, StageName
from register_audit.observability import metrics
from register_audit.pipeline.events import EventBus, format_sse
from register_audit.pipeline.orchestrator import Orchestrator
from register_audit.schemas.api import (
    ExecuteRequest,
    ExecuteResponse,
    RunListResponse,
    StageEventListResponse,
)
from register_audit.schemas.contracts import AnswerSet, EventMessage, FileMeta, Run, RunLog
from register_audit.storage import paths
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/runs", tags=["runs"], dependencies=[Depends(verify_api_key)])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _read_upload(file: UploadFile) -> bytes:
    """Validate type, size and emptiness of one uploaded file."""
    if file.content_type not in settings.ALLOWED_MIME_TYPES.split(","):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported file type: {file.content_type}. Allowed: {settings.ALLOWED_MIME_TYPES}",
        )

    file_bytes = await file.read()
    file_size = len(file_bytes)

    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if file_size > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {file_size} bytes. Max: {max_bytes} bytes",
        )

    if file_size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Empty file uploaded: {file.filename}",
        )
    return file_bytes


@router.post("", response_model=Run, status_code=status.HTTP_201_CREATED)
async def create_run(
    files: list[UploadFile] = File(...),
    mode: ExecutionMode = Query(ExecutionMode.MULTI_AGENT),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    repository: RunRepository = Depends(get_repository),
):
    """Upload one or more pages of a register and create a pending run."""
    # Validate everything before storing anything
    contents = [(file, await _read_upload(file)) for file in files]

    metas = []
    for file, data in contents:
        name = file.filename or "document.pdf"
        key = await repository.save_upload(paths.upload_key(name), data, file.content_type)
        metas.append(FileMeta(
            key=key,
            original_name=name,
            content_type=file.content_type,
            size_bytes=len(data),
        ))
        metrics.uploads_total.labels(content_type=file.content_type).inc()

    run = await orchestrator.create_run([m.key for m in metas], mode, metas)
    logger.info(
        "run_uploaded",
        run_id=run.id,
        files=[m.original_name for m in metas],
        total_bytes=sum(m.size_bytes for m in metas),
        mode=mode.value,
    )
    return run


@router.get("", response_model=RunListResponse)
async def list_runs(
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    runs = await orchestrator.list_runs(status=status_filter, limit=limit)
    return RunListResponse(runs=runs, total=len(runs), limit=limit)


@router.get("/{run_id}", response_model=Run)
async def get_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_run(run_id)


@router.post("/{run_id}/execute", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
async def execute_run(
    run_id: str,
    request: Optional[ExecuteRequest] = Body(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Admit the run and continue it in the background.
    409 when the session is locked or this run is already executing.
    """
    mode = request.mode if request else None
    await orchestrator.launch_run(run_id, mode)
    run = await orchestrator.get_run(run_id)
    return ExecuteResponse(run_id=run.id, status=run.status, execution_mode=run.execution_mode)


@router.post("/{run_id}/cancel", response_model=Run)
async def cancel_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """An executing run stops at its next stage boundary."""
    return await orchestrator.cancel_run(run_id)


@router.get("/{run_id}/events", response_model=StageEventListResponse)
async def get_stage_events(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    events = await orchestrator.get_stage_events(run_id)
    return StageEventListResponse(run_id=run_id, events=events)


@router.get("/{run_id}/artifacts/{stage}/{kind}")
async def get_artifact(
    run_id: str,
    stage: StageName,
    kind: ArtifactKind,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    artifact = await orchestrator.get_artifact(run_id, stage, kind)
    if artifact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {kind.value} artifact for stage {stage.value}",
        )
    return artifact


@router.get("/{run_id}/result", response_model=AnswerSet)
async def get_result(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    answer = await orchestrator.get_result(run_id)
    if answer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Run has no answer set yet",
        )
    return answer


@router.get("/{run_id}/logs", response_model=RunLog)
async def get_run_log(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    run_log = await orchestrator.get_run_log(run_id)
    if run_log is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Run has not been executed yet",
        )
    return run_log


@router.get("/{run_id}/stream")
async def stream_run(
    run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    event_bus: EventBus = Depends(get_event_bus),
):
    """
    Server-sent events for one run: stage_event, hitl_required, final_answer,
    error, completed. A run that has already settled gets one closing event.
    """
    queue = event_bus.subscribe(run_id)
    try:
        run = await orchestrator.get_run(run_id)
    except BaseException:
        event_bus.unsubscribe(run_id, queue)
        raise

    async def event_generator():
        if run.status == RunStatus.COMPLETED:
            event_bus.unsubscribe(run_id, queue)
            yield format_sse(EventMessage(type=EventType.COMPLETED, run_id=run_id, payload={"status": run.status.value}))
            return
        if run.status in (RunStatus.ERROR, RunStatus.REJECTED, RunStatus.CANCELLED):
            event_bus.unsubscribe(run_id, queue)
            yield format_sse(EventMessage(
                type=EventType.ERROR,
                run_id=run_id,
                payload={"message": run.error, "error_code": run.error_code, "status": run.status.value},
            ))
            return

        async for message in event_bus.stream(run_id, queue=queue):
            yield format_sse(message)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)
