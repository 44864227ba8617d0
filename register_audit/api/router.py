"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from register_audit.api.health import router as health_router
from register_audit.api.hitl import router as hitl_router
from register_audit.api.runs import router as runs_router
from register_audit.api.session import router as session_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(runs_router)
api_router.include_router(hitl_router)
api_router.include_router(session_router)
