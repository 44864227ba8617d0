"""
HITL review queue.
Escalations become packets that a person resolves exactly once.
"""

import uuid
from typing import Any, Optional

import structlog

from register_audit.errors import HITLAlreadyResolvedError, HITLPacketNotFoundError
from register_audit.models.enums import (
    HITLStatus,
    ReasonCode,
    RequiredAction,
    Severity,
    StageName,
)
from register_audit.observability import metrics
from register_audit.schemas.contracts import (
    DocumentSnapshot,
    HITLPacket,
    HITLResolution,
    NormalizedDoc,
    RuleTrigger,
    utcnow,
)
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)

REASON_CODE_BY_RULE = {
    "E-MIN-001": ReasonCode.MISSING_REQUIRED_FIELD_OR_PARSE_FAILURE,
    "E-ZERO-001": ReasonCode.MISSING_REQUIRED_FIELD_OR_PARSE_FAILURE,
    "E-ZERO-002": ReasonCode.MISSING_REQUIRED_FIELD_OR_PARSE_FAILURE,
    "E-SUM-001": ReasonCode.TOTAL_SHARES_MISMATCH,
    "E-SUM-002": ReasonCode.AMOUNT_INCONSISTENCY,
    "E-RAT-001": ReasonCode.RATIO_INCONSISTENCY,
    "E-CON-001": ReasonCode.RATIO_INCONSISTENCY,
    "E-ZERO-RATIO": ReasonCode.RATIO_INCONSISTENCY,
    "E-NAME-001": ReasonCode.NAME_CORRECTION_DETECTED,
    "E-ID-002": ReasonCode.IDENTIFIER_MISMATCH_OR_MISSING,
    "E-ID-003": ReasonCode.IDENTIFIER_MISMATCH_OR_MISSING,
    "E-ID-004": ReasonCode.IDENTIFIER_MISMATCH_OR_MISSING,
    "E-DUP-002": ReasonCode.DUPLICATE_RECORD,
    "E-META-001": ReasonCode.METADATA_MISSING,
    "E-META-002": ReasonCode.METADATA_MISSING,
    "E-META-004": ReasonCode.METADATA_MISSING,
    "E-META-003": ReasonCode.STALE_DOCUMENT,
    "C-BLOCK": ReasonCode.EXTRACTION_FAILED,
}


def map_reason_codes(triggers: list[RuleTrigger]) -> list[ReasonCode]:
    """Reason codes for the BLOCKER triggers, deduplicated in trigger order."""
    codes: list[ReasonCode] = []
    for trigger in triggers:
        if trigger.severity != Severity.BLOCKER:
            continue
        code = REASON_CODE_BY_RULE.get(trigger.rule_id)
        if code is not None and code not in codes:
            codes.append(code)
    return codes


def determine_required_action(triggers: list[RuleTrigger]) -> RequiredAction:
    """The first BLOCKER's suggestion, else manual correction."""
    for trigger in triggers:
        if trigger.severity == Severity.BLOCKER and trigger.suggestion is not None:
            return trigger.suggestion
    return RequiredAction.MANUAL_CORRECTION


def document_snapshot(doc: Optional[NormalizedDoc]) -> Optional[DocumentSnapshot]:
    if doc is None:
        return None
    return DocumentSnapshot(
        company_name=doc.document_properties.company_name or "UNKNOWN",
        document_date=doc.document_properties.document_date,
        shareholder_count=len(doc.shareholders),
        sample_names=[s.name for s in doc.shareholders[:5]],
    )


async def create_hitl_packet(
    repository: RunRepository,
    run_id: str,
    stage: StageName,
    triggers: list[RuleTrigger],
    context_data: Optional[dict[str, Any]] = None,
    doc: Optional[NormalizedDoc] = None,
    reason_codes: Optional[list[ReasonCode]] = None,
    required_action: Optional[RequiredAction] = None,
) -> HITLPacket:
    """
    Persist a new PENDING packet for an escalated run.
    Reason codes and required action are derived from the triggers unless given.
    """
    packet = HITLPacket(
        packet_id=str(uuid.uuid4()),
        run_id=run_id,
        stage=stage,
        reason_codes=reason_codes if reason_codes is not None else map_reason_codes(triggers),
        required_action=required_action or determine_required_action(triggers),
        triggers=triggers,
        context_data=context_data or {},
        document_snapshot=document_snapshot(doc),
    )
    await repository.save_hitl_packet(packet)

    metrics.hitl_packets_total.labels(stage=stage.value).inc()
    metrics.hitl_queue_depth.inc()
    logger.info(
        "hitl_packet_created",
        packet_id=packet.packet_id,
        run_id=run_id,
        stage=stage.value,
        reason_codes=[c.value for c in packet.reason_codes],
        required_action=packet.required_action.value,
    )
    return packet


async def resolve_hitl_packet(
    repository: RunRepository,
    packet_id: str,
    resolution: HITLResolution,
) -> HITLPacket:
    """One-time resolution write. A second attempt raises HITLAlreadyResolvedError."""
    async with repository.hitl_lock:
        packet = await repository.get_hitl_packet(packet_id)
        if packet is None:
            raise HITLPacketNotFoundError(packet_id)
        if packet.status != HITLStatus.PENDING:
            logger.warning("hitl_packet_already_resolved", packet_id=packet_id, status=packet.status.value)
            raise HITLAlreadyResolvedError(packet_id)

        packet.status = HITLStatus.RESOLVED
        packet.resolution = resolution
        packet.resolved_at = utcnow()
        await repository.save_hitl_packet(packet)

    metrics.hitl_queue_depth.dec()
    logger.info(
        "hitl_packet_resolved",
        packet_id=packet_id,
        run_id=packet.run_id,
        action_taken=resolution.action_taken,
        resolved_by=resolution.resolved_by,
    )
    return packet


async def close_pending_packets(repository: RunRepository, run_id: str, reason: str) -> list[HITLPacket]:
    """Close every open packet of a run that will never be resumed."""
    closed = []
    async with repository.hitl_lock:
        for packet in await repository.get_hitl_packets_by_run(run_id):
            if packet.status != HITLStatus.PENDING:
                continue
            packet.status = HITLStatus.CLOSED
            packet.resolution = HITLResolution(action_taken=reason, resolved_by="system")
            packet.resolved_at = utcnow()
            await repository.save_hitl_packet(packet)
            closed.append(packet)

    for packet in closed:
        metrics.hitl_queue_depth.dec()
        logger.info("hitl_packet_closed", packet_id=packet.packet_id, run_id=run_id, reason=reason)
    return closed


async def get_pending_packets(repository: RunRepository, limit: int = 50, offset: int = 0) -> list[HITLPacket]:
    """Unresolved packets, oldest first."""
    packets = await repository.list_hitl_packets(status=HITLStatus.PENDING)
    return packets[offset:offset + limit]


async def get_queue_stats(repository: RunRepository) -> dict:
    """Counts by status and by escalation stage."""
    packets = await repository.list_hitl_packets()
    by_status: dict[str, int] = {}
    by_stage: dict[str, int] = {}
    for p in packets:
        by_status[p.status.value] = by_status.get(p.status.value, 0) + 1
        if p.status == HITLStatus.PENDING:
            by_stage[p.stage.value] = by_stage.get(p.stage.value, 0) + 1

    pending = by_status.get(HITLStatus.PENDING.value, 0)
    metrics.hitl_queue_depth.set(pending)
    return {
        "total": len(packets),
        "by_status": by_status,
        "pending_by_stage": by_stage,
    }
