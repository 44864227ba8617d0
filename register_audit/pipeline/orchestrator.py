"""
Pipeline orchestrator: drives a run from submission to one settled state.

MULTI_AGENT:  B (Gatekeeper) → C (Extractor) → D (Normalizer) → E (Validator) → INSIGHTS
FAST:         FastExtractor (bounded retry) → FAST synthesis

Any stage can end the run as `rejected` (not a register) or suspend it as
`hitl` (a BLOCKER needing a person). A resumed run re-enters after the stage
that escalated and never re-runs accepted upstream stages.
"""

import asyncio
import time
import uuid
from datetime import date
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ValidationError

from register_audit.errors import (
    InvalidRunState,
    PipelineError,
    RunCancelled,
    RunNotFoundError,
    StructuralRejection,
)
from register_audit.models.enums import (
    ArtifactKind,
    ExecutionMode,
    HITLStatus,
    NextAction,
    ReasonCode,
    RequiredAction,
    RouteSuggestion,
    RunStatus,
    Severity,
    StageName,
    ValidationStatus,
)
from register_audit.observability import metrics
from register_audit.observability.run_log import RunLogger
from register_audit.pipeline import agents
from register_audit.pipeline.analyst import AnalystService
from register_audit.pipeline.collaborator import ReasoningCollaborator
from register_audit.pipeline.concurrency import ConcurrencyController
from register_audit.pipeline.events import EventBus
from register_audit.pipeline.identifiers import (
    assign_identifier_types,
    detect_identifier_type,
    refine_birth_dates,
)
from register_audit.pipeline.ownership import effective_ratios
from register_audit.pipeline.renderer import PageImage, Rasterizer
from register_audit.pipeline.rule_engine import NAME_CORRECTION_MARKERS, validate
from register_audit.review import queue
from register_audit.schemas.contracts import (
    AnswerSet,
    DocumentAssessment,
    DocumentProperties,
    ExtractorOutput,
    FastExtraction,
    FileMeta,
    HITLPacket,
    HITLResolution,
    NormalizedDoc,
    NormalizedShareholder,
    Run,
    RunLog,
    RuleTrigger,
    StageEvent,
    ValidationReport,
)
from register_audit.storage.repository import RunRepository

logger = structlog.get_logger(__name__)

# Only these findings justify spending another FAST attempt
FAST_RETRY_RULES = {"E-RAT-001", "E-ZERO-RATIO"}
FAST_RETRY_FEEDBACK = "Ratio sum is not 100% or zero ratios found; recompute precisely"

EXECUTABLE_STATUSES = {RunStatus.PENDING, RunStatus.QUEUED, RunStatus.ERROR, RunStatus.CANCELLED}
CANCELLABLE_STATUSES = {RunStatus.PENDING, RunStatus.QUEUED, RunStatus.HITL}

READABILITY_CONFIDENCE = {"HIGH": 0.9, "MEDIUM": 0.7}


def fast_to_normalized(extraction: FastExtraction) -> NormalizedDoc:
    """Map a single-pass extraction onto the normalized document contract."""
    info = extraction.document_info
    holders = []
    for s in extraction.shareholders:
        notes = []
        if s.remarks and any(marker in s.remarks.lower() for marker in NAME_CORRECTION_MARKERS):
            notes.append(s.remarks)
        holder = NormalizedShareholder(
            name=s.name,
            entity_type=s.entity_type,
            entity_type_confidence=0.9,
            identifier=s.identifier,
            shares=s.shares,
            ratio=s.ratio,
            amount=s.amount,
            share_class=s.share_class,
            confidence=0.9,
            normalization_notes=notes,
        )
        if holder.identifier:
            holder.identifier_type = detect_identifier_type(
                holder.identifier, holder.entity_type, info.identifier_column_header,
            )
        holders.append(holder)

    return NormalizedDoc(
        shareholders=holders,
        document_properties=DocumentProperties(
            company_name=info.company_name,
            document_date=info.document_date,
            total_shares_issued=info.total_shares_issued,
            total_capital=info.total_capital,
            par_value_per_share=info.par_value_per_share,
            document_type="shareholder register",
        ),
        ordering_detected=extraction.ordering_detected,
        normalization_notes=list(extraction.notes),
    )


class _RunContext:
    """Per-execution state: the run record, its log and lazily rendered pages."""

    def __init__(self, run: Run, mode: ExecutionMode, run_logger: RunLogger, rasterizer: Rasterizer):
        self.run = run
        self.mode = mode
        self.log = run_logger
        self._rasterizer = rasterizer
        self._images: Optional[list[PageImage]] = None

    async def images(self) -> list[PageImage]:
        if self._images is None:
            self._images = await self._rasterizer.rasterize_all(self.run.files)
            self.log.info("Pages rendered", f"{len(self._images)} page(s)")
        return self._images


class Orchestrator:
    """
    Composes storage, concurrency control, the event bus and the reasoning
    collaborator into the run state machine.
    """

    def __init__(
        self,
        repository: RunRepository,
        controller: ConcurrencyController,
        event_bus: EventBus,
        collaborator: ReasoningCollaborator,
        rasterizer: Rasterizer,
        analyst: Optional[AnalystService] = None,
        fast_collaborator: Optional[ReasoningCollaborator] = None,
        fast_max_attempts: int = 2,
        staleness_days: int = 365,
        today: Callable[[], date] = date.today,
    ):
        self.repository = repository
        self.controller = controller
        self.event_bus = event_bus
        self.collaborator = collaborator
        self.fast_collaborator = fast_collaborator or collaborator
        self.rasterizer = rasterizer
        self.analyst = analyst or AnalystService(collaborator, staleness_days=staleness_days)
        self.fast_max_attempts = fast_max_attempts
        self.staleness_days = staleness_days
        self.today = today
        self._cancel_requested: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

    # ─── Queries ──────────────────────────────────────────────

    async def get_run(self, run_id: str) -> Run:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 50) -> list[Run]:
        return await self.repository.list_runs(status=status, limit=limit)

    async def get_stage_events(self, run_id: str) -> list[StageEvent]:
        await self.get_run(run_id)
        return await self.repository.get_stage_events(run_id)

    async def get_artifact(self, run_id: str, stage: StageName, kind: ArtifactKind) -> Optional[dict]:
        await self.get_run(run_id)
        return await self.repository.get_artifact(run_id, stage.value, kind.value)

    async def get_result(self, run_id: str) -> Optional[AnswerSet]:
        run = await self.get_run(run_id)
        stage = StageName.FAST if run.execution_mode == ExecutionMode.FAST else StageName.INSIGHTS
        return await self.repository.get_artifact(run_id, stage.value, ArtifactKind.ANSWER_SET.value, AnswerSet)

    async def get_hitl_packet_by_run(self, run_id: str) -> Optional[HITLPacket]:
        await self.get_run(run_id)
        return await self.repository.get_hitl_packet_by_run(run_id)

    async def get_run_log(self, run_id: str) -> Optional[RunLog]:
        await self.get_run(run_id)
        return await self.repository.get_run_log(run_id)

    # ─── Lifecycle ────────────────────────────────────────────

    async def create_run(
        self,
        sources: list[str],
        mode: ExecutionMode = ExecutionMode.MULTI_AGENT,
        file_metadata: Optional[list[FileMeta]] = None,
    ) -> Run:
        if not sources:
            raise InvalidRunState("A run needs at least one source document")
        run = Run(
            id=str(uuid.uuid4()),
            execution_mode=mode,
            files=list(sources),
            file_metadata=file_metadata or [],
            storage_provider=self.repository.provider_name,
        )
        await self.repository.save_run(run)
        logger.info("run_created", run_id=run.id, mode=mode.value, sources=len(sources))
        return run

    async def _admit_for_execution(self, run_id: str, mode: Optional[ExecutionMode]) -> Run:
        await self.controller.admit(run_id)
        try:
            run = await self.get_run(run_id)
            if run.status not in EXECUTABLE_STATUSES:
                raise InvalidRunState(f"Run {run_id} cannot be executed from status {run.status.value}")
            if mode is not None:
                run.execution_mode = mode
            self._cancel_requested.discard(run_id)
        except BaseException:
            await self.controller.release(run_id)
            raise
        return run

    async def execute_run(self, run_id: str, mode: Optional[ExecutionMode] = None) -> Run:
        """
        Execute a run to completion in the caller's task.
        Raises RunAlreadyExecuting or SessionLockedError when not admitted.
        """
        run = await self._admit_for_execution(run_id, mode)
        return await self._drive(run)

    async def launch_run(self, run_id: str, mode: Optional[ExecutionMode] = None) -> asyncio.Task:
        """Admit synchronously, then continue the run in a background task."""
        run = await self._admit_for_execution(run_id, mode)
        run.status = RunStatus.QUEUED
        try:
            await self.repository.save_run(run)
        except BaseException:
            await self.controller.release(run_id)
            raise
        return self._spawn(run_id, self._drive(run))

    def _spawn(self, run_id: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._task_done(run_id, t))
        return task

    def _task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            logger.warning("run_task_cancelled", run_id=run_id)
            return
        error = task.exception()
        if error is not None:
            # Only reached when the final status itself could not be persisted
            logger.error("run_task_failed", run_id=run_id, error=str(error), exc_info=error)

    async def cancel_run(self, run_id: str) -> Run:
        """
        Cooperative cancellation. An executing run stops at its next stage
        boundary; a run that is not executing is cancelled immediately.
        """
        run = await self.get_run(run_id)
        if self.controller.is_executing(run_id):
            self._cancel_requested.add(run_id)
            logger.info("run_cancel_requested", run_id=run_id)
            return run
        if run.status not in CANCELLABLE_STATUSES:
            raise InvalidRunState(f"Run {run_id} cannot be cancelled from status {run.status.value}")

        was_suspended = run.status == RunStatus.HITL
        run.status = RunStatus.CANCELLED
        run.error = f"Run {run_id} cancelled by user"
        run.error_code = RunCancelled.error_code
        await self.repository.save_run(run)
        if was_suspended:
            await queue.close_pending_packets(self.repository, run_id, "run cancelled")
        self.event_bus.emit_error(run_id, run.error, run.error_code, RunStatus.CANCELLED.value)
        logger.info("run_cancelled", run_id=run_id)
        return run

    async def recover_orphaned_runs(self) -> list[str]:
        """Runs persisted as `running` have no owner after a restart."""
        recovered = await self.repository.mark_running_runs_errored("Server restarted")
        lock = await self.repository.load_session_lock()
        if lock is not None and lock.is_locked and lock.current_run_id in recovered:
            await self.controller.force_release()
        return recovered

    async def wait_for(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    # ─── HITL ─────────────────────────────────────────────────

    async def resolve_hitl_packet(self, packet_id: str, resolution: HITLResolution) -> HITLPacket:
        return await queue.resolve_hitl_packet(self.repository, packet_id, resolution)

    async def _admit_for_resume(self, run_id: str, corrections: Optional[dict[str, Any]]):
        await self.controller.admit(run_id)
        try:
            run = await self.get_run(run_id)
            if run.status != RunStatus.HITL:
                raise InvalidRunState(f"Run {run_id} is not awaiting review (status {run.status.value})")
            packets = await self.repository.get_hitl_packets_by_run(run_id)
            if not packets:
                raise InvalidRunState(f"Run {run_id} has no HITL packet")
            if any(p.status == HITLStatus.PENDING for p in packets):
                raise InvalidRunState(f"Run {run_id} has an unresolved HITL packet")
            packet = packets[-1]
            if corrections is None:
                corrections = packet.resolution.corrections if packet.resolution else {}
            self._cancel_requested.discard(run_id)
        except BaseException:
            await self.controller.release(run_id)
            raise
        return run, packet, corrections

    async def resume_run_after_hitl(self, run_id: str, corrections: Optional[dict[str, Any]] = None) -> Run:
        """Continue a suspended run after its packet was resolved."""
        run, packet, corrections = await self._admit_for_resume(run_id, corrections)
        return await self._drive(run, resume_stage=packet.stage, corrections=corrections)

    async def launch_resume(self, run_id: str, corrections: Optional[dict[str, Any]] = None) -> asyncio.Task:
        run, packet, corrections = await self._admit_for_resume(run_id, corrections)
        return self._spawn(run_id, self._drive(run, resume_stage=packet.stage, corrections=corrections))

    async def resolve_run_packet(
        self,
        run_id: str,
        resolution: HITLResolution,
        resume: bool = True,
    ) -> tuple[HITLPacket, Optional[asyncio.Task]]:
        """
        Resolve the open packet of a suspended run and optionally resume it.

        With resume the run is admitted before the packet is written, so a
        held session lock or a concurrent execution leaves the packet open.
        """
        if resume:
            await self.controller.admit(run_id)
        try:
            run = await self.get_run(run_id)
            if run.status != RunStatus.HITL:
                raise InvalidRunState(f"Run {run_id} is not awaiting review (status {run.status.value})")
            packet = await self.repository.get_hitl_packet_by_run(run_id)
            if packet is None or packet.status != HITLStatus.PENDING:
                raise InvalidRunState(f"Run {run_id} has no pending HITL packet")
            packet = await queue.resolve_hitl_packet(self.repository, packet.packet_id, resolution)
            self._cancel_requested.discard(run_id)
        except BaseException:
            if resume:
                await self.controller.release(run_id)
            raise

        if not resume:
            return packet, None
        task = self._spawn(run_id, self._drive(run, resume_stage=packet.stage, corrections=resolution.corrections))
        return packet, task

    # ─── Driver ───────────────────────────────────────────────

    async def _drive(
        self,
        run: Run,
        resume_stage: Optional[StageName] = None,
        corrections: Optional[dict[str, Any]] = None,
    ) -> Run:
        """Run the pipeline for an admitted run. Always releases both guards."""
        mode = run.execution_mode
        started = time.monotonic()
        structlog.contextvars.bind_contextvars(run_id=run.id)
        metrics.runs_started_total.labels(execution_mode=mode.value).inc()
        error_event: Optional[tuple[str, Optional[str]]] = None

        try:
            run_logger = RunLogger(self.repository, run.id, mode)
            try:
                previous = await self.repository.get_run_log(run.id)
                if previous is not None:
                    run_logger = RunLogger(self.repository, run.id, mode, previous=previous)
                ctx = _RunContext(run, mode, run_logger, self.rasterizer)

                run.status = RunStatus.RUNNING
                run.error = None
                run.error_code = None
                await self.repository.save_run(run)
                logger.info(
                    "run_started",
                    mode=mode.value,
                    resume_stage=resume_stage.value if resume_stage else None,
                )

                if resume_stage is not None:
                    run_logger.info("Resumed after review", f"Escalated at stage {resume_stage.value}")
                    final_status = await self._resume(ctx, resume_stage, corrections or {})
                elif mode == ExecutionMode.FAST:
                    final_status = await self._run_fast(ctx)
                else:
                    final_status = await self._run_multi_agent(ctx)
            except RunCancelled as e:
                final_status = RunStatus.CANCELLED
                run.error, run.error_code = e.message, e.error_code
                run_logger.warning("Run cancelled", e.message)
                logger.info("run_cancelled", run_id=run.id)
            except StructuralRejection as e:
                final_status = RunStatus.REJECTED
                run.error, run.error_code = e.message, e.error_code
                run_logger.error("Document rejected", e.message, stage=run.current_stage)
                logger.info("run_rejected", reason=e.message)
            except PipelineError as e:
                final_status = RunStatus.ERROR
                run.error, run.error_code = e.message, e.error_code
                run_logger.error("Run failed", e.message, stage=run.current_stage)
                logger.error("run_failed", error_code=e.error_code, error=e.message)
            except ValidationError as e:
                final_status = RunStatus.ERROR
                run.error, run.error_code = f"Invalid artifact data: {e.error_count()} error(s)", "ERR_INVALID_ARTIFACT"
                run_logger.error("Run failed", run.error, stage=run.current_stage)
                logger.error("run_failed", error_code=run.error_code, error=str(e)[:500])
            except Exception as e:
                final_status = RunStatus.ERROR
                run.error, run.error_code = f"Unexpected error: {e}", "ERR_INTERNAL"
                run_logger.error("Run failed", run.error, stage=run.current_stage)
                logger.exception("run_crashed")

            if final_status in (RunStatus.CANCELLED, RunStatus.REJECTED, RunStatus.ERROR):
                error_event = (run.error, run.error_code)

            run.status = final_status
            await self.repository.save_run(run)
            await run_logger.finish(final_status)

            metrics.runs_finished_total.labels(execution_mode=mode.value, status=final_status.value).inc()
            metrics.run_duration_seconds.labels(execution_mode=mode.value).observe(time.monotonic() - started)
            logger.info("run_settled", status=final_status.value, duration_s=round(time.monotonic() - started, 2))

            if final_status == RunStatus.COMPLETED:
                self.event_bus.emit_completed(run.id, final_status.value)
            elif error_event is not None:
                self.event_bus.emit_error(run.id, error_event[0], error_event[1], final_status.value)
            return run
        finally:
            self._cancel_requested.discard(run.id)
            await self.controller.release(run.id)
            structlog.contextvars.unbind_contextvars("run_id")

    # ─── Stage plumbing ───────────────────────────────────────

    def _check_cancelled(self, run_id: str) -> None:
        if run_id in self._cancel_requested:
            raise RunCancelled(run_id)

    async def _enter_stage(self, ctx: _RunContext, stage: StageName) -> None:
        self._check_cancelled(ctx.run.id)
        ctx.run.current_stage = stage
        await self.repository.save_run(ctx.run)
        ctx.log.stage_started(stage)
        logger.info("stage_started", stage=stage.value)

    async def _record_stage(
        self,
        ctx: _RunContext,
        stage: StageName,
        summary: str,
        confidence: float,
        next_action: NextAction,
        artifact: Optional[BaseModel] = None,
        kind: Optional[ArtifactKind] = None,
        artifact_stage: Optional[StageName] = None,
        rationale: str = "",
        triggers: Optional[list[RuleTrigger]] = None,
        outputs: Optional[dict[str, Any]] = None,
    ) -> StageEvent:
        """Persist the artifact, append the stage event and publish it."""
        if artifact is not None and kind is not None:
            await self.repository.save_artifact(
                ctx.run.id, (artifact_stage or stage).value, kind.value, artifact,
            )
        if outputs is None and artifact is not None:
            outputs = artifact.model_dump(mode="json")

        event = StageEvent(
            run_id=ctx.run.id,
            stage_name=stage,
            summary=summary,
            rationale=rationale,
            confidence=confidence,
            outputs=outputs or {},
            triggers=triggers or [],
            next_action=next_action,
        )
        await self.repository.append_stage_event(event)
        self.event_bus.emit_stage_event(event)

        duration = ctx.log.stage_finished(stage, summary)
        metrics.pipeline_stage_duration_seconds.labels(stage=stage.value).observe(duration)
        logger.info("stage_completed", stage=stage.value, next_action=next_action.value, confidence=confidence)
        return event

    async def _suspend_for_hitl(
        self,
        ctx: _RunContext,
        stage: StageName,
        triggers: list[RuleTrigger],
        doc: Optional[NormalizedDoc] = None,
        context_data: Optional[dict[str, Any]] = None,
        reason_codes: Optional[list[ReasonCode]] = None,
        required_action: Optional[RequiredAction] = None,
    ) -> RunStatus:
        packet = await queue.create_hitl_packet(
            self.repository,
            ctx.run.id,
            stage,
            triggers,
            context_data=context_data,
            doc=doc,
            reason_codes=reason_codes,
            required_action=required_action,
        )
        ctx.run.status = RunStatus.HITL
        ctx.run.current_stage = stage
        await self.repository.save_run(ctx.run)
        self.event_bus.emit_hitl_required(packet)
        ctx.log.warning(
            "Human review required",
            ", ".join(c.value for c in packet.reason_codes) or packet.required_action.value,
            stage=stage,
            data={"packet_id": packet.packet_id},
        )
        return RunStatus.HITL

    async def _load_artifact(self, run_id: str, stage: StageName, kind: ArtifactKind, model):
        artifact = await self.repository.get_artifact(run_id, stage.value, kind.value, model)
        if artifact is None:
            raise InvalidRunState(f"Run {run_id} has no {stage.value}:{kind.value} artifact to resume from")
        return artifact

    def _post_process(self, doc: NormalizedDoc, identifier_header: Optional[str] = None) -> NormalizedDoc:
        """Identifier typing, birth-date canonicalisation and ratio derivation."""
        holders = assign_identifier_types(doc.shareholders, identifier_header)
        holders = refine_birth_dates(holders, self.today())
        holders = effective_ratios(holders, doc.document_properties)
        return doc.model_copy(update={"shareholders": holders})

    @staticmethod
    def _with_ratios(doc: NormalizedDoc) -> NormalizedDoc:
        return doc.model_copy(update={
            "shareholders": effective_ratios(doc.shareholders, doc.document_properties),
        })

    # ─── MULTI_AGENT stages ───────────────────────────────────

    async def _run_multi_agent(self, ctx: _RunContext) -> RunStatus:
        assessment = await self._stage_gatekeeper(ctx)
        if assessment is None:
            return RunStatus.HITL
        return await self._continue_from_extractor(ctx, assessment)

    async def _continue_from_extractor(self, ctx: _RunContext, assessment: DocumentAssessment) -> RunStatus:
        extraction = await self._stage_extractor(ctx, assessment)
        if extraction is None:
            return RunStatus.HITL
        return await self._continue_from_normalizer(ctx, extraction)

    async def _continue_from_normalizer(self, ctx: _RunContext, extraction: ExtractorOutput) -> RunStatus:
        doc = await self._stage_normalizer(ctx, extraction)
        return await self._continue_from_validator(ctx, doc)

    async def _continue_from_validator(self, ctx: _RunContext, doc: NormalizedDoc) -> RunStatus:
        report = await self._stage_validator(ctx, doc)
        if report is None:
            return RunStatus.HITL
        return await self._stage_insights(ctx, doc, report)

    async def _stage_gatekeeper(self, ctx: _RunContext) -> Optional[DocumentAssessment]:
        stage = StageName.B
        await self._enter_stage(ctx, stage)
        assessment = await agents.run_gatekeeper(self.collaborator, await ctx.images())
        confidence = READABILITY_CONFIDENCE.get(assessment.doc_quality.readability.upper(), 0.5)
        route = assessment.route_suggestion

        if route == RouteSuggestion.REJECT:
            await self._record_stage(
                ctx, stage, f"Not a shareholder register: {assessment.document_type_guess}",
                confidence, NextAction.REJECT, assessment, ArtifactKind.ASSESSMENT,
                rationale=assessment.rationale,
            )
            raise StructuralRejection(
                f"Document rejected as {assessment.document_type_guess}: {assessment.rationale}".rstrip(": ")
            )

        if route != RouteSuggestion.EXTRACT:
            await self._record_stage(
                ctx, stage, f"Classification needs review ({route.value})",
                confidence, NextAction.HITL, assessment, ArtifactKind.ASSESSMENT,
                rationale=assessment.rationale,
            )
            action = (
                RequiredAction.MISSING_PAGES_REQUEST
                if route == RouteSuggestion.REQUEST_MORE_INPUT
                else RequiredAction.DOCUMENT_CLASSIFICATION
            )
            await self._suspend_for_hitl(
                ctx, stage, [],
                context_data={"assessment": assessment.model_dump(mode="json")},
                reason_codes=[ReasonCode.DOCUMENT_CLASSIFICATION_NEEDED],
                required_action=action,
            )
            return None

        await self._record_stage(
            ctx, stage, "Shareholder register confirmed",
            confidence, NextAction.AUTO_NEXT, assessment, ArtifactKind.ASSESSMENT,
            rationale=assessment.rationale,
        )
        return assessment

    async def _stage_extractor(self, ctx: _RunContext, assessment: DocumentAssessment) -> Optional[ExtractorOutput]:
        stage = StageName.C
        await self._enter_stage(ctx, stage)
        extraction = await agents.run_extractor(self.collaborator, await ctx.images(), assessment)

        if extraction.blockers:
            triggers = [
                RuleTrigger(rule_id="C-BLOCK", severity=Severity.BLOCKER, message=blocker)
                for blocker in extraction.blockers
            ]
            await self._record_stage(
                ctx, stage, f"Extraction blocked: {len(extraction.blockers)} issue(s)",
                0.4, NextAction.HITL, extraction, ArtifactKind.EXTRACTOR_OUTPUT, triggers=triggers,
            )
            await self._suspend_for_hitl(
                ctx, stage, triggers,
                context_data={"extraction_notes": extraction.extraction_notes},
            )
            return None

        await self._record_stage(
            ctx, stage, f"Extracted {len(extraction.records)} record(s)",
            0.85, NextAction.AUTO_NEXT, extraction, ArtifactKind.EXTRACTOR_OUTPUT,
        )
        return extraction

    async def _stage_normalizer(self, ctx: _RunContext, extraction: ExtractorOutput) -> NormalizedDoc:
        stage = StageName.D
        await self._enter_stage(ctx, stage)
        doc = await agents.run_normalizer(self.collaborator, extraction)
        doc = self._post_process(doc, extraction.table_structure.identifier_column_header)

        holders = doc.shareholders
        confidence = sum(h.confidence for h in holders) / len(holders) if holders else 0.0
        await self._record_stage(
            ctx, stage, f"Normalized {len(holders)} shareholder(s)",
            round(confidence, 4), NextAction.AUTO_NEXT, doc, ArtifactKind.NORMALIZED_DOC,
        )
        return doc

    async def _stage_validator(self, ctx: _RunContext, doc: NormalizedDoc) -> Optional[ValidationReport]:
        stage = StageName.E
        await self._enter_stage(ctx, stage)
        report = self._validate(doc)
        passed = report.status == ValidationStatus.PASS

        await self._record_stage(
            ctx, stage,
            f"Validation {report.status.value}: {len(report.blockers)} blocker(s), score {report.data_quality_score}",
            0.95 if passed else 0.5,
            NextAction.AUTO_NEXT if passed else NextAction.HITL,
            report, ArtifactKind.VALIDATION_REPORT, triggers=report.triggers,
        )
        if not passed:
            await self._suspend_for_hitl(
                ctx, stage, report.triggers, doc=doc,
                context_data={"data_quality_score": report.data_quality_score},
            )
            return None
        return report

    async def _stage_insights(self, ctx: _RunContext, doc: NormalizedDoc, report: ValidationReport) -> RunStatus:
        stage = StageName.INSIGHTS
        await self._enter_stage(ctx, stage)
        assessment = await self.repository.get_artifact(
            ctx.run.id, StageName.B.value, ArtifactKind.ASSESSMENT.value, DocumentAssessment,
        )
        answer = await self.analyst.synthesize(doc, report, assessment, self.today())
        return await self._publish_answer(ctx, stage, answer)

    async def _publish_answer(self, ctx: _RunContext, stage: StageName, answer: AnswerSet) -> RunStatus:
        await self._record_stage(
            ctx, stage, f"Answer ready (trust {answer.trust_level.value})",
            answer.synthesis_confidence, NextAction.AUTO_NEXT, answer, ArtifactKind.ANSWER_SET,
        )
        if isinstance(answer.over_25_percent, list):
            names = ", ".join(h.name for h in answer.over_25_percent) or "none"
            ctx.log.finding(f"Beneficial owners: {names}")
        else:
            ctx.log.finding(f"Beneficial owners undetermined: {answer.over_25_percent.reason}")
        self.event_bus.emit_final_answer(ctx.run.id, answer.model_dump(mode="json"))
        return RunStatus.COMPLETED

    def _validate(self, doc: NormalizedDoc) -> ValidationReport:
        report = validate(doc, today=self.today(), staleness_days=self.staleness_days)
        for trigger in report.triggers:
            metrics.validation_triggers_total.labels(
                rule_id=trigger.rule_id, severity=trigger.severity.value,
            ).inc()
        return report

    # ─── FAST ─────────────────────────────────────────────────

    async def _run_fast(self, ctx: _RunContext) -> RunStatus:
        stage = StageName.FAST_EXTRACTOR
        await self._enter_stage(ctx, stage)
        images = await ctx.images()

        doc: Optional[NormalizedDoc] = None
        report: Optional[ValidationReport] = None
        feedback: Optional[str] = None

        for attempt in range(1, self.fast_max_attempts + 1):
            extraction = await agents.run_fast_extractor(self.fast_collaborator, images, feedback)

            if not extraction.is_valid_document:
                metrics.fast_attempts_total.labels(outcome="rejected").inc()
                reason = extraction.rejection_reason or "not a shareholder register"
                await self._record_stage(
                    ctx, stage, f"Not a shareholder register: {reason}", 0.9, NextAction.REJECT,
                    outputs={"attempt": attempt, "rejection_reason": reason},
                )
                raise StructuralRejection(f"Document rejected: {reason}")

            doc = self._post_process(fast_to_normalized(extraction), extraction.document_info.identifier_column_header)
            report = self._validate(doc)
            retryable = [t.rule_id for t in report.blockers if t.rule_id in FAST_RETRY_RULES]

            if retryable and attempt < self.fast_max_attempts:
                metrics.fast_attempts_total.labels(outcome="retry").inc()
                ctx.log.warning(
                    f"Attempt {attempt} inconsistent, retrying",
                    ", ".join(retryable),
                    stage=stage,
                )
                await self._record_stage(
                    ctx, stage, f"Attempt {attempt}: {', '.join(retryable)}, retrying",
                    0.5, NextAction.AUTO_RETRY, triggers=report.triggers,
                    outputs={"attempt": attempt, "shareholders": len(doc.shareholders)},
                )
                feedback = FAST_RETRY_FEEDBACK
                self._check_cancelled(ctx.run.id)
                ctx.log.stage_started(stage)
                continue

            metrics.fast_attempts_total.labels(
                outcome="accepted" if report.status == ValidationStatus.PASS else "needs_review",
            ).inc()
            break

        passed = report.status == ValidationStatus.PASS
        await self._record_stage(
            ctx, stage, f"Extracted {len(doc.shareholders)} shareholder(s), validation {report.status.value}",
            0.9 if passed else 0.5,
            NextAction.AUTO_NEXT if passed else NextAction.HITL,
            doc, ArtifactKind.NORMALIZED_DOC, artifact_stage=StageName.FAST,
            triggers=report.triggers,
        )
        return await self._fast_settle(ctx, doc, report)

    async def _fast_settle(self, ctx: _RunContext, doc: NormalizedDoc, report: ValidationReport) -> RunStatus:
        await self.repository.save_artifact(
            ctx.run.id, StageName.FAST.value, ArtifactKind.VALIDATION_REPORT.value, report,
        )
        if report.status == ValidationStatus.NEED_HITL:
            return await self._suspend_for_hitl(
                ctx, StageName.FAST_EXTRACTOR, report.triggers, doc=doc,
                context_data={"data_quality_score": report.data_quality_score},
            )

        await self._enter_stage(ctx, StageName.FAST)
        answer = self.analyst.fast_synthesize(doc, report, self.today())
        return await self._publish_answer(ctx, StageName.FAST, answer)

    # ─── Resume ───────────────────────────────────────────────

    async def _resume(self, ctx: _RunContext, stage: StageName, corrections: dict[str, Any]) -> RunStatus:
        run_id = ctx.run.id

        if stage == StageName.B:
            assessment = await self._load_artifact(run_id, StageName.B, ArtifactKind.ASSESSMENT, DocumentAssessment)
            return await self._continue_from_extractor(ctx, assessment)

        if stage == StageName.C:
            if "extractor_output" in corrections:
                extraction = ExtractorOutput.model_validate(corrections["extractor_output"])
                await self.repository.save_artifact(
                    run_id, StageName.C.value, ArtifactKind.EXTRACTOR_OUTPUT.value, extraction,
                )
                ctx.log.info("Extractor output replaced by reviewer", stage=StageName.C)
                return await self._continue_from_normalizer(ctx, extraction)
            assessment = await self._load_artifact(run_id, StageName.B, ArtifactKind.ASSESSMENT, DocumentAssessment)
            return await self._continue_from_extractor(ctx, assessment)

        if stage == StageName.D:
            if "normalized_doc" in corrections:
                doc = await self._apply_doc_correction(ctx, StageName.D, corrections["normalized_doc"])
                return await self._continue_from_validator(ctx, doc)
            extraction = await self._load_artifact(run_id, StageName.C, ArtifactKind.EXTRACTOR_OUTPUT, ExtractorOutput)
            return await self._continue_from_normalizer(ctx, extraction)

        if stage == StageName.E:
            if "normalized_doc" in corrections:
                doc = await self._apply_doc_correction(ctx, StageName.D, corrections["normalized_doc"])
            else:
                doc = await self._load_artifact(run_id, StageName.D, ArtifactKind.NORMALIZED_DOC, NormalizedDoc)
            return await self._continue_from_validator(ctx, doc)

        if stage in (StageName.FAST_EXTRACTOR, StageName.FAST):
            if "normalized_doc" in corrections:
                doc = await self._apply_doc_correction(ctx, StageName.FAST, corrections["normalized_doc"])
            else:
                doc = await self._load_artifact(run_id, StageName.FAST, ArtifactKind.NORMALIZED_DOC, NormalizedDoc)
            report = self._validate(doc)
            return await self._fast_settle(ctx, doc, report)

        raise InvalidRunState(f"Cannot resume run {run_id} from stage {stage.value}")

    async def _apply_doc_correction(self, ctx: _RunContext, stage: StageName, payload: Any) -> NormalizedDoc:
        """Replace the stored normalized document with the reviewer's version."""
        doc = self._with_ratios(NormalizedDoc.model_validate(payload))
        await self.repository.save_artifact(
            ctx.run.id, stage.value, ArtifactKind.NORMALIZED_DOC.value, doc,
        )
        ctx.log.info(
            "Normalized document replaced by reviewer",
            f"{len(doc.shareholders)} shareholder(s)",
            stage=stage,
        )
        return doc
