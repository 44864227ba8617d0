"""
Pipeline error → HTTP response mapping.
"""

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse

from register_audit.errors import (
    HITLAlreadyResolvedError,
    HITLPacketNotFoundError,
    InvalidRunState,
    PipelineError,
    RunAlreadyExecuting,
    RunNotFoundError,
    SessionLockedError,
    StorageError,
)

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR = {
    RunNotFoundError: status.HTTP_404_NOT_FOUND,
    HITLPacketNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionLockedError: status.HTTP_409_CONFLICT,
    RunAlreadyExecuting: status.HTTP_409_CONFLICT,
    InvalidRunState: status.HTTP_409_CONFLICT,
    HITLAlreadyResolvedError: status.HTTP_409_CONFLICT,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: PipelineError) -> int:
    for error_cls, code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("request_failed", path=request.url.path, error_code=exc.error_code, error=exc.message)
    body = {"detail": exc.message, "error_code": exc.error_code}
    if isinstance(exc, SessionLockedError):
        body["current_run_id"] = exc.current_run_id
    return JSONResponse(status_code=code, content=body)
