"""
FastAPI dependency injection.
Builds the storage, concurrency, event bus and collaborator singletons once
and hands out the orchestrator, repository and API key validation.
"""

from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status

from register_audit.config import Settings, settings
from register_audit.pipeline.analyst import AnalystService
from register_audit.pipeline.collaborator import (
    FallbackCollaborator,
    OpenAICompatibleCollaborator,
    ReasoningCollaborator,
)
from register_audit.pipeline.concurrency import ConcurrencyController
from register_audit.pipeline.events import EventBus
from register_audit.pipeline.orchestrator import Orchestrator
from register_audit.pipeline.renderer import PdfRasterizer
from register_audit.storage.backends import ObjectStore, build_object_store
from register_audit.storage.cache import CachedObjectStore
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)


class Container:
    """Process-wide services shared by every request."""

    def __init__(
        self,
        store: ObjectStore,
        repository: RunRepository,
        controller: ConcurrencyController,
        event_bus: EventBus,
        orchestrator: Orchestrator,
        collaborators: tuple[ReasoningCollaborator, ...] = (),
    ):
        self.store = store
        self.repository = repository
        self.controller = controller
        self.event_bus = event_bus
        self.orchestrator = orchestrator
        self.collaborators = collaborators

    @classmethod
    def from_settings(cls, config: Settings) -> "Container":
        store = CachedObjectStore(build_object_store(config), config.STORAGE_CACHE_SIZE)
        repository = RunRepository(store)
        controller = ConcurrencyController(repository, ttl_seconds=config.SESSION_LOCK_TTL_SECONDS)
        event_bus = EventBus()

        primary = cls._collaborator(config, config.LLM_MODEL)
        secondary = cls._collaborator(config, config.LLM_FALLBACK_MODEL)
        with_fallback = FallbackCollaborator(primary, secondary)
        orchestrator = Orchestrator(
            repository=repository,
            controller=controller,
            event_bus=event_bus,
            collaborator=with_fallback,
            fast_collaborator=primary,
            rasterizer=PdfRasterizer(store, dpi=config.RENDER_DPI, poppler_path=config.POPPLER_PATH),
            analyst=AnalystService(
                with_fallback,
                threshold=config.BENEFICIAL_OWNER_THRESHOLD,
                staleness_days=config.STALENESS_DAYS,
            ),
            fast_max_attempts=config.FAST_MAX_ATTEMPTS,
            staleness_days=config.STALENESS_DAYS,
        )
        logger.info(
            "container_built",
            storage=store.provider_name,
            model=config.LLM_MODEL,
            fallback_model=config.LLM_FALLBACK_MODEL,
        )
        return cls(store, repository, controller, event_bus, orchestrator, (primary, secondary))

    @staticmethod
    def _collaborator(config: Settings, model: str) -> ReasoningCollaborator:
        return OpenAICompatibleCollaborator(
            api_key=config.LLM_API_KEY,
            base_url=config.LLM_BASE_URL,
            model=model,
            timeout=config.LLM_TIMEOUT_SECONDS,
            max_retries=config.LLM_MAX_RETRIES,
        )

    async def close(self) -> None:
        for collaborator in self.collaborators:
            await collaborator.close()
        await self.store.close()


# ── Singleton instances ──────────────────────────────────────
_container: Optional[Container] = None


def get_container() -> Container:
    """Get or create the service container singleton."""
    global _container
    if _container is None:
        _container = Container.from_settings(settings)
    return _container


def set_container(container: Optional[Container]) -> None:
    """Swap the container, e.g. for one built around test doubles."""
    global _container
    _container = container


def get_orchestrator(container: Container = Depends(get_container)) -> Orchestrator:
    return container.orchestrator


def get_repository(container: Container = Depends(get_container)) -> RunRepository:
    return container.repository


def get_controller(container: Container = Depends(get_container)) -> ConcurrencyController:
    return container.controller


def get_event_bus(container: Container = Depends(get_container)) -> EventBus:
    return container.event_bus


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
