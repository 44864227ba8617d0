"""
In-process event bus keyed by run id.

Each subscriber gets its own unbounded queue, so delivery follows emission
order and a slow subscriber never blocks the pipeline. Subscribers only see
events published after they subscribe; earlier history lives in the
persisted stage events.
"""

import asyncio
import json
from collections import defaultdict
from typing import Any, AsyncGenerator, Optional

import structlog

from register_audit.models.enums import EventType
from register_audit.schemas.contracts import EventMessage, HITLPacket, StageEvent

logger = structlog.get_logger(__name__)

# A stream ends after any of these
CLOSING_EVENTS = {EventType.COMPLETED, EventType.ERROR, EventType.HITL_REQUIRED}


class EventBus:

    def __init__(self):
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[run_id].append(queue)
        logger.debug("event_subscriber_added", run_id=run_id, count=len(self._subscribers[run_id]))
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(run_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[run_id]

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, []))

    def publish(self, message: EventMessage) -> int:
        """Deliver to every subscriber of the run. Returns the number reached."""
        queues = list(self._subscribers.get(message.run_id, []))
        for queue in queues:
            queue.put_nowait(message)
        logger.debug("event_published", run_id=message.run_id, type=message.type.value, delivered=len(queues))
        return len(queues)

    def emit(self, run_id: str, event_type: EventType, payload: Optional[dict[str, Any]] = None) -> int:
        return self.publish(EventMessage(type=event_type, run_id=run_id, payload=payload or {}))

    # ─── Typed helpers ────────────────────────────────────────

    def emit_stage_event(self, event: StageEvent) -> int:
        return self.emit(event.run_id, EventType.STAGE_EVENT, event.model_dump(mode="json"))

    def emit_hitl_required(self, packet: HITLPacket) -> int:
        return self.emit(packet.run_id, EventType.HITL_REQUIRED, packet.model_dump(mode="json"))

    def emit_final_answer(self, run_id: str, answer_set: dict[str, Any]) -> int:
        return self.emit(run_id, EventType.FINAL_ANSWER, answer_set)

    def emit_error(self, run_id: str, message: str, error_code: Optional[str] = None, status: Optional[str] = None) -> int:
        return self.emit(run_id, EventType.ERROR, {
            "message": message,
            "error_code": error_code,
            "status": status,
        })

    def emit_completed(self, run_id: str, status: str) -> int:
        return self.emit(run_id, EventType.COMPLETED, {"status": status})

    # ─── Streaming ────────────────────────────────────────────

    async def stream(
        self,
        run_id: str,
        heartbeat_seconds: Optional[float] = 15.0,
        queue: Optional[asyncio.Queue] = None,
    ) -> AsyncGenerator[Optional[EventMessage], None]:
        """
        Yield messages for a run until a closing event.
        Yields None on heartbeat timeouts so callers can keep the connection alive.
        """
        queue = queue or self.subscribe(run_id)
        try:
            while True:
                try:
                    if heartbeat_seconds is None:
                        message = await queue.get()
                    else:
                        message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield message
                if message.type in CLOSING_EVENTS:
                    return
        finally:
            self.unsubscribe(run_id, queue)


def format_sse(message: Optional[EventMessage]) -> str:
    """Format a message as a raw SSE frame; None becomes a comment heartbeat."""
    if message is None:
        return ": keep-alive\n\n"
    data = message.model_dump(mode="json")
    return f"event: {data['type']}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"
