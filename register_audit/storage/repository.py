"""
Run repository.
Maps runs, stage events, artifacts, HITL packets, run logs and the session
lock onto JSON records in an ObjectStore:

    runs/{run_id}.json          one record per run
    events/{run_id}.json        append-only list of stage events
    artifacts/{run_id}.json     map keyed "stage:kind"
    hitl/{packet_id}.json       one record per HITL packet
    logs/{run_id}.json          run log
    system/session-lock.json    global session lock
    uploads/{uuid}.{ext}        source documents
"""

import asyncio
import json
from typing import Any, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel

from register_audit.errors import StorageError
from register_audit.models.enums import HITLStatus, RunStatus
from register_audit.schemas.contracts import (
    HITLPacket,
    Run,
    RunLog,
    SessionLock,
    StageEvent,
    utcnow,
)
from register_audit.storage import paths
from register_audit.storage.backends import ObjectStore

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _dump(payload: Union[BaseModel, dict, list]) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


class RunRepository:
    """JSON persistence for everything a run produces."""

    def __init__(self, store: ObjectStore):
        self.store = store
        # Serialises read-modify-write of list/map records
        self._write_lock = asyncio.Lock()
        # Serialises HITL packet status transitions
        self.hitl_lock = asyncio.Lock()

    @property
    def provider_name(self) -> str:
        return self.store.provider_name

    # ─── JSON helpers ─────────────────────────────────────────

    async def _read_json(self, key: str) -> Optional[Any]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("corrupt_record", key=key, error=str(e))
            raise StorageError(f"Corrupt record at {key}") from e

    async def _write_json(self, key: str, data: Any) -> None:
        body = json.dumps(data, default=str, ensure_ascii=False, indent=2).encode("utf-8")
        await self.store.put(key, body, "application/json")

    # ─── Runs ─────────────────────────────────────────────────

    async def save_run(self, run: Run) -> Run:
        run.updated_at = utcnow()
        await self._write_json(paths.run_key(run.id), _dump(run))
        return run

    async def get_run(self, run_id: str) -> Optional[Run]:
        data = await self._read_json(paths.run_key(run_id))
        if data is None:
            return None
        return Run.model_validate(data)

    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 50) -> list[Run]:
        runs = []
        for key in await self.store.list(paths.RUNS_PREFIX):
            if not key.endswith(".json"):
                continue
            run = await self.get_run(paths.id_from_key(key))
            if run is None:
                continue
            if status is not None and run.status != status:
                continue
            runs.append(run)
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    async def mark_running_runs_errored(self, message: str = "Server restarted") -> list[str]:
        """Flag runs left in `running` by a dead process. Returns their ids."""
        recovered = []
        for run in await self.list_runs(status=RunStatus.RUNNING, limit=10_000):
            run.status = RunStatus.ERROR
            run.error = message
            run.error_code = "ERR_ORPHANED"
            await self.save_run(run)
            recovered.append(run.id)
        if recovered:
            logger.warning("orphaned_runs_recovered", run_ids=recovered)
        return recovered

    # ─── Stage events ─────────────────────────────────────────

    async def append_stage_event(self, event: StageEvent) -> None:
        key = paths.events_key(event.run_id)
        async with self._write_lock:
            events = await self._read_json(key) or []
            events.append(_dump(event))
            await self._write_json(key, events)

    async def get_stage_events(self, run_id: str) -> list[StageEvent]:
        events = await self._read_json(paths.events_key(run_id)) or []
        parsed = [StageEvent.model_validate(e) for e in events]
        parsed.sort(key=lambda e: e.timestamp)
        return parsed

    # ─── Artifacts ────────────────────────────────────────────

    async def save_artifact(self, run_id: str, stage: str, kind: str, payload: Union[BaseModel, dict]) -> None:
        key = paths.artifacts_key(run_id)
        async with self._write_lock:
            artifacts = await self._read_json(key) or {}
            artifacts[paths.artifact_slot(stage, kind)] = _dump(payload)
            await self._write_json(key, artifacts)
        logger.debug("artifact_saved", run_id=run_id, stage=stage, kind=kind)

    async def get_artifacts(self, run_id: str) -> dict[str, Any]:
        return await self._read_json(paths.artifacts_key(run_id)) or {}

    async def get_artifact(
        self,
        run_id: str,
        stage: str,
        kind: str,
        model: Optional[Type[ModelT]] = None,
    ):
        artifacts = await self.get_artifacts(run_id)
        data = artifacts.get(paths.artifact_slot(stage, kind))
        if data is None or model is None:
            return data
        return model.model_validate(data)

    # ─── HITL packets ─────────────────────────────────────────

    async def save_hitl_packet(self, packet: HITLPacket) -> HITLPacket:
        await self._write_json(paths.hitl_key(packet.packet_id), _dump(packet))
        return packet

    async def get_hitl_packet(self, packet_id: str) -> Optional[HITLPacket]:
        data = await self._read_json(paths.hitl_key(packet_id))
        if data is None:
            return None
        return HITLPacket.model_validate(data)

    async def list_hitl_packets(self, status: Optional[HITLStatus] = None) -> list[HITLPacket]:
        packets = []
        for key in await self.store.list(paths.HITL_PREFIX):
            if not key.endswith(".json"):
                continue
            packet = await self.get_hitl_packet(paths.id_from_key(key))
            if packet is None:
                continue
            if status is not None and packet.status != status:
                continue
            packets.append(packet)
        packets.sort(key=lambda p: p.created_at)
        return packets

    async def get_hitl_packets_by_run(self, run_id: str) -> list[HITLPacket]:
        return [p for p in await self.list_hitl_packets() if p.run_id == run_id]

    async def get_hitl_packet_by_run(self, run_id: str) -> Optional[HITLPacket]:
        """The open packet for a run if there is one, else its most recent packet."""
        packets = await self.get_hitl_packets_by_run(run_id)
        if not packets:
            return None
        pending = [p for p in packets if p.status == HITLStatus.PENDING]
        return pending[-1] if pending else packets[-1]

    # ─── Uploads ──────────────────────────────────────────────

    async def save_upload(self, key: str, data: bytes, content_type: str) -> str:
        await self.store.put(key, data, content_type)
        logger.info("upload_saved", key=key, size_bytes=len(data))
        return key

    async def get_upload(self, key: str) -> Optional[bytes]:
        return await self.store.get(key)

    # ─── Run logs ─────────────────────────────────────────────

    async def save_run_log(self, run_log: RunLog) -> None:
        await self._write_json(paths.run_log_key(run_log.run_id), _dump(run_log))

    async def get_run_log(self, run_id: str) -> Optional[RunLog]:
        data = await self._read_json(paths.run_log_key(run_id))
        if data is None:
            return None
        return RunLog.model_validate(data)

    # ─── Session lock ─────────────────────────────────────────

    async def load_session_lock(self) -> Optional[SessionLock]:
        data = await self._read_json(paths.session_lock_key())
        if data is None:
            return None
        return SessionLock.model_validate(data)

    async def save_session_lock(self, lock: SessionLock) -> None:
        await self._write_json(paths.session_lock_key(), _dump(lock))
