"""
Concurrency controller.

Two independent guards protect the reasoning budget:
- a global session lock, persisted in the store, allowing one active run
  system-wide and reclaimed automatically once older than the TTL
- an in-process idempotency set rejecting a second execution of a run id
  that is already executing
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from register_audit.errors import RunAlreadyExecuting, SessionLockedError
from register_audit.observability import metrics
from register_audit.schemas.contracts import SessionLock, utcnow
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)


@dataclass
class LockResult:
    success: bool
    current_run_id: Optional[str] = None
    reclaimed_from: Optional[str] = None


class ConcurrencyController:
    """Built once per process and handed to the orchestrator."""

    def __init__(
        self,
        repository: RunRepository,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._lock_mutex = asyncio.Lock()
        self._guard_mutex = asyncio.Lock()
        self._executing: set[str] = set()

    # ─── Session lock ─────────────────────────────────────────

    def _is_stale(self, lock: SessionLock) -> bool:
        if lock.locked_at is None:
            return True
        return self.clock() - lock.locked_at > self.ttl

    async def acquire_session_lock(self, run_id: str, locked_by: str = "orchestrator") -> LockResult:
        async with self._lock_mutex:
            current = await self.repository.load_session_lock()
            reclaimed_from = None

            if current is not None and current.is_locked and current.current_run_id != run_id:
                if not self._is_stale(current):
                    metrics.session_lock_contention_total.inc()
                    logger.warning(
                        "session_lock_busy",
                        run_id=run_id,
                        holder=current.current_run_id,
                    )
                    return LockResult(success=False, current_run_id=current.current_run_id)
                reclaimed_from = current.current_run_id
                logger.warning(
                    "session_lock_reclaimed",
                    run_id=run_id,
                    stale_holder=reclaimed_from,
                    locked_at=current.locked_at.isoformat() if current.locked_at else None,
                )

            await self.repository.save_session_lock(SessionLock(
                is_locked=True,
                current_run_id=run_id,
                locked_at=self.clock(),
                locked_by=locked_by,
            ))
            logger.info("session_lock_acquired", run_id=run_id)
            return LockResult(success=True, current_run_id=run_id, reclaimed_from=reclaimed_from)

    async def release_session_lock(self, run_id: str) -> bool:
        """Release only if run_id still owns the lock. Returns True when released."""
        async with self._lock_mutex:
            current = await self.repository.load_session_lock()
            if current is None or not current.is_locked:
                return False
            if current.current_run_id != run_id:
                logger.info(
                    "session_lock_release_ignored",
                    run_id=run_id,
                    holder=current.current_run_id,
                )
                return False
            await self.repository.save_session_lock(SessionLock(is_locked=False))
            logger.info("session_lock_released", run_id=run_id)
            return True

    async def force_release(self) -> Optional[str]:
        """Operator override. Returns the run id that held the lock, if any."""
        async with self._lock_mutex:
            current = await self.repository.load_session_lock()
            holder = current.current_run_id if current and current.is_locked else None
            await self.repository.save_session_lock(SessionLock(is_locked=False))
            logger.warning("session_lock_force_released", holder=holder)
            return holder

    async def get_status(self) -> SessionLock:
        current = await self.repository.load_session_lock()
        if current is None or not current.is_locked or self._is_stale(current):
            return SessionLock(is_locked=False)
        return current

    # ─── Idempotency guard ────────────────────────────────────

    async def begin_execution(self, run_id: str) -> bool:
        async with self._guard_mutex:
            if run_id in self._executing:
                return False
            self._executing.add(run_id)
            metrics.active_runs.set(len(self._executing))
            return True

    async def end_execution(self, run_id: str) -> None:
        async with self._guard_mutex:
            self._executing.discard(run_id)
            metrics.active_runs.set(len(self._executing))

    def is_executing(self, run_id: str) -> bool:
        return run_id in self._executing

    async def admit(self, run_id: str) -> None:
        """
        Take the idempotency guard, then the session lock.
        Raises RunAlreadyExecuting or SessionLockedError; on failure nothing is held.
        """
        if not await self.begin_execution(run_id):
            logger.warning("duplicate_execution_rejected", run_id=run_id)
            raise RunAlreadyExecuting(run_id)

        try:
            result = await self.acquire_session_lock(run_id)
        except BaseException:
            await self.end_execution(run_id)
            raise
        if not result.success:
            await self.end_execution(run_id)
            raise SessionLockedError(result.current_run_id)

    async def release(self, run_id: str) -> None:
        try:
            await self.release_session_lock(run_id)
        finally:
            await self.end_execution(run_id)

    @asynccontextmanager
    async def execution(self, run_id: str):
        """Hold both guards for the duration of the block."""
        await self.admit(run_id)
        try:
            yield
        finally:
            await self.release(run_id)
