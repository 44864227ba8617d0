"""
Health check endpoints.
/health always returns 200; storage reachability is reported, not enforced.
"""

from fastapi import APIRouter, Depends

from register_audit.config import settings
from register_audit.dependencies import Container, get_container
from register_audit.errors import StorageError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(container: Container = Depends(get_container)):
    """Liveness plus a storage probe and the current session lock holder."""
    storage_ok = True
    storage_error = None
    try:
        lock = await container.controller.get_status()
    except StorageError as e:
        storage_ok = False
        storage_error = e.message[:200]
        lock = None

    response = {
        "status": "healthy" if storage_ok else "degraded",
        "version": settings.APP_VERSION,
        "storage": container.store.provider_name,
        "storage_reachable": storage_ok,
        "session_locked": lock.is_locked if lock else None,
    }
    if storage_error:
        response["storage_error"] = storage_error
    return response


@router.get("/health/ready")
async def readiness_check(container: Container = Depends(get_container)):
    """Readiness probe: ready only when storage answers."""
    try:
        await container.controller.get_status()
        return {"ready": True}
    except StorageError:
        return {"ready": False}
