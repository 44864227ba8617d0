"""
/api/v1/session endpoints.
Inspect and force-release the global session lock.
"""

import structlog
from fastapi import APIRouter, Depends

from register_audit.dependencies import get_controller, verify_api_key
from register_audit.pipeline.concurrency import ConcurrencyController
from register_audit.schemas.api import SessionReleaseResponse, SessionStatusResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/session", tags=["session"], dependencies=[Depends(verify_api_key)])


@router.get("/status", response_model=SessionStatusResponse)
async def session_status(controller: ConcurrencyController = Depends(get_controller)):
    lock = await controller.get_status()
    return SessionStatusResponse(**lock.model_dump())


@router.post("/release", response_model=SessionReleaseResponse)
async def force_release(controller: ConcurrencyController = Depends(get_controller)):
    """Operator override for a lock left behind by a stuck run."""
    holder = await controller.force_release()
    logger.warning("session_lock_released_by_operator", holder=holder)
    return SessionReleaseResponse(released=holder is not None, released_run_id=holder)
