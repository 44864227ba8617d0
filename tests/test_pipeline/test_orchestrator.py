"""
Tests for the pipeline orchestrator.
"""

import asyncio

import pytest

from register_audit.errors import (
    CollaboratorError,
    InvalidRunState,
    RunAlreadyExecuting,
    SessionLockedError,
    StorageError,
)
from register_audit.models.enums import (
    ArtifactKind,
    EventType,
    ExecutionMode,
    HITLStatus,
    NextAction,
    ReasonCode,
    RequiredAction,
    RunStatus,
    StageName,
)
from register_audit.pipeline.concurrency import ConcurrencyController
from register_audit.pipeline.orchestrator import Orchestrator, fast_to_normalized
from register_audit.schemas.contracts import FastExtraction, HITLResolution, Run
from register_audit.storage.backends import LocalObjectStore
from register_audit.storage.repository import RunRepository

from conftest import (
    TODAY,
    FakeCollaborator,
    FakeRasterizer,
    assessment_data,
    clean_doc_data,
    extractor_data,
    fast_data,
    multi_agent_script,
)


class GatedRasterizer(FakeRasterizer):
    """Blocks rendering until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def rasterize(self, source_ref):
        await self.gate.wait()
        return await super().rasterize(source_ref)


class FlakyRunStore(LocalObjectStore):
    """Fails the next writes of run records once armed."""

    def __init__(self, root):
        super().__init__(root)
        self.fail_run_writes = 0

    async def put(self, key, data, content_type="application/json"):
        if self.fail_run_writes and key.startswith("runs/"):
            self.fail_run_writes -= 1
            raise StorageError(f"Failed to write {key}: disk full")
        await super().put(key, data, content_type)


def _unbalanced_doc() -> dict:
    data = clean_doc_data()
    data["shareholders"][2]["ratio"] = 5.0
    return data


async def _new_run(orchestrator, mode=ExecutionMode.MULTI_AGENT) -> Run:
    return await orchestrator.create_run(["uploads/register.pdf"], mode)


class TestMultiAgent:

    async def test_happy_path(self, make_orchestrator, repository, controller):
        orchestrator, collaborator = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.COMPLETED
        events = await orchestrator.get_stage_events(run.id)
        assert [e.stage_name for e in events] == [
            StageName.B, StageName.C, StageName.D, StageName.E, StageName.INSIGHTS,
        ]
        assert all(e.next_action == NextAction.AUTO_NEXT for e in events)

        answer = await orchestrator.get_result(run.id)
        assert [h.name for h in answer.over_25_percent] == ["김철수", "(주)한빛홀딩스"]
        assert answer.document_assessment.route_suggestion.value == "EXTRACT"

        assert await orchestrator.get_artifact(run.id, StageName.E, ArtifactKind.VALIDATION_REPORT)
        assert not controller.is_executing(run.id)
        assert not (await controller.get_status()).is_locked

        run_log = await orchestrator.get_run_log(run.id)
        assert run_log.final_status == RunStatus.COMPLETED
        assert run_log.summary.stages_completed == ["B", "C", "D", "E", "INSIGHTS"]

    async def test_normalizer_output_post_processed(self, make_orchestrator):
        data = clean_doc_data()
        data["shareholders"][2].update(identifier="850315", identifier_type=None, entity_type="UNKNOWN")
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[data]))
        run = await _new_run(orchestrator)

        await orchestrator.execute_run(run.id)

        doc = await orchestrator.get_artifact(run.id, StageName.D, ArtifactKind.NORMALIZED_DOC)
        holder = doc["shareholders"][2]
        assert holder["identifier"] == "1985-03-15"
        assert holder["identifier_type"] == "BIRTH_DATE"
        assert holder["entity_type"] == "INDIVIDUAL"

    async def test_gatekeeper_rejects(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator(
            multi_agent_script(DocumentAssessment=[assessment_data("REJECT")])
        )
        run = await _new_run(orchestrator)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.REJECTED
        assert result.error_code == "ERR_STRUCTURAL_REJECTION"
        assert collaborator.count("ExtractorOutput") == 0

    async def test_collaborator_failure_errors_and_releases(self, make_orchestrator, controller):
        orchestrator, _ = make_orchestrator(
            multi_agent_script(ExtractorOutput=[CollaboratorError("model unavailable")])
        )
        run = await _new_run(orchestrator)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.ERROR
        assert result.error_code == "ERR_COLLABORATOR"
        assert (await controller.acquire_session_lock("another-run")).success

    async def test_completed_run_cannot_execute_again(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)

        with pytest.raises(InvalidRunState):
            await orchestrator.execute_run(run.id)

    async def test_errored_run_can_be_retried(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator(
            multi_agent_script(ExtractorOutput=[CollaboratorError("blip"), extractor_data()])
        )
        run = await _new_run(orchestrator)

        assert (await orchestrator.execute_run(run.id)).status == RunStatus.ERROR
        assert (await orchestrator.execute_run(run.id)).status == RunStatus.COMPLETED


class TestHITLRoundTrip:
    """Escalate, resolve, resume without re-running accepted stages."""

    async def test_validation_blocker_round_trip(self, make_orchestrator, repository):
        orchestrator, collaborator = make_orchestrator(
            multi_agent_script(NormalizedDoc=[_unbalanced_doc()])
        )
        run = await _new_run(orchestrator)

        suspended = await orchestrator.execute_run(run.id)
        assert suspended.status == RunStatus.HITL

        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.stage == StageName.E
        assert packet.status == HITLStatus.PENDING
        assert ReasonCode.RATIO_INCONSISTENCY in packet.reason_codes

        with pytest.raises(InvalidRunState):
            await orchestrator.resume_run_after_hitl(run.id)

        await orchestrator.resolve_hitl_packet(
            packet.packet_id,
            HITLResolution(action_taken="corrected ratio", corrections={"normalized_doc": clean_doc_data()}),
        )
        resumed = await orchestrator.resume_run_after_hitl(run.id)

        assert resumed.status == RunStatus.COMPLETED
        assert collaborator.count("DocumentAssessment") == 1
        assert collaborator.count("ExtractorOutput") == 1
        assert collaborator.count("NormalizedDoc") == 1
        assert collaborator.count("AnalystSynthesis") == 1

        stages = [e.stage_name for e in await orchestrator.get_stage_events(run.id)]
        assert stages == [StageName.B, StageName.C, StageName.D, StageName.E, StageName.E, StageName.INSIGHTS]

    async def test_uncorrected_resume_escalates_again(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)

        first = await orchestrator.get_hitl_packet_by_run(run.id)
        await orchestrator.resolve_hitl_packet(first.packet_id, HITLResolution(action_taken="looked"))
        again = await orchestrator.resume_run_after_hitl(run.id)

        assert again.status == RunStatus.HITL
        second = await orchestrator.get_hitl_packet_by_run(run.id)
        assert second.packet_id != first.packet_id
        assert second.status == HITLStatus.PENDING

    async def test_classification_escalation(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator(
            multi_agent_script(DocumentAssessment=[assessment_data("HITL_TRIAGE")])
        )
        run = await _new_run(orchestrator)

        assert (await orchestrator.execute_run(run.id)).status == RunStatus.HITL
        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.stage == StageName.B
        assert packet.reason_codes == [ReasonCode.DOCUMENT_CLASSIFICATION_NEEDED]
        assert packet.required_action == RequiredAction.DOCUMENT_CLASSIFICATION

        await orchestrator.resolve_hitl_packet(packet.packet_id, HITLResolution(action_taken="confirmed register"))
        assert (await orchestrator.resume_run_after_hitl(run.id)).status == RunStatus.COMPLETED
        assert collaborator.count("DocumentAssessment") == 1

    async def test_extraction_blocker_with_corrected_output(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator(
            multi_agent_script(ExtractorOutput=[extractor_data(blockers=["Table cut off at page edge"])])
        )
        run = await _new_run(orchestrator)

        assert (await orchestrator.execute_run(run.id)).status == RunStatus.HITL
        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.stage == StageName.C
        assert packet.reason_codes == [ReasonCode.EXTRACTION_FAILED]

        await orchestrator.resolve_hitl_packet(
            packet.packet_id,
            HITLResolution(action_taken="transcribed", corrections={"extractor_output": extractor_data()}),
        )
        assert (await orchestrator.resume_run_after_hitl(run.id)).status == RunStatus.COMPLETED
        assert collaborator.count("ExtractorOutput") == 1

    async def test_resolve_while_locked_keeps_packet_pending(self, make_orchestrator, controller):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)
        await controller.acquire_session_lock("other-run")
        resolution = HITLResolution(action_taken="corrected ratio", corrections={"normalized_doc": clean_doc_data()})

        with pytest.raises(SessionLockedError):
            await orchestrator.resolve_run_packet(run.id, resolution)

        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.status == HITLStatus.PENDING
        assert (await orchestrator.get_run(run.id)).status == RunStatus.HITL
        assert not controller.is_executing(run.id)

        await controller.force_release()
        resolved, task = await orchestrator.resolve_run_packet(run.id, resolution)
        assert resolved.status == HITLStatus.RESOLVED
        assert (await task).status == RunStatus.COMPLETED

    async def test_resolve_without_resume_then_resume(self, make_orchestrator, controller):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)

        resolved, task = await orchestrator.resolve_run_packet(
            run.id,
            HITLResolution(action_taken="corrected ratio", corrections={"normalized_doc": clean_doc_data()}),
            resume=False,
        )
        assert task is None
        assert resolved.status == HITLStatus.RESOLVED
        assert not controller.is_executing(run.id)
        assert (await orchestrator.get_run(run.id)).status == RunStatus.HITL

        resumed = await orchestrator.resume_run_after_hitl(run.id)
        assert resumed.status == RunStatus.COMPLETED

    async def test_resume_requires_hitl_status(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        with pytest.raises(InvalidRunState):
            await orchestrator.resume_run_after_hitl(run.id)


class TestFastMode:

    async def test_single_attempt(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator({"FastExtraction": [fast_data()]})
        run = await _new_run(orchestrator, ExecutionMode.FAST)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert collaborator.count("FastExtraction") == 1
        assert collaborator.count("AnalystSynthesis") == 0
        answer = await orchestrator.get_result(run.id)
        assert answer.synthesis_confidence == 0.8
        assert await orchestrator.get_artifact(run.id, StageName.FAST, ArtifactKind.NORMALIZED_DOC)

    async def test_retry_on_ratio_failure(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator({
            "FastExtraction": [fast_data(ratios=(50.0, 30.0, 10.0)), fast_data()],
        })
        run = await _new_run(orchestrator, ExecutionMode.FAST)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.COMPLETED
        assert collaborator.count("FastExtraction") == 2
        assert collaborator.calls[1][1] == {"feedback": "Ratio sum is not 100% or zero ratios found; recompute precisely"}
        actions = [e.next_action for e in await orchestrator.get_stage_events(run.id)]
        assert actions[0] == NextAction.AUTO_RETRY

    async def test_attempts_bounded(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator({
            "FastExtraction": [fast_data(ratios=(0.0, 0.0, 0.0))],
        })
        run = await _new_run(orchestrator, ExecutionMode.FAST)

        result = await orchestrator.execute_run(run.id)

        assert collaborator.count("FastExtraction") == 2
        assert result.status == RunStatus.HITL
        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.stage == StageName.FAST_EXTRACTOR

    async def test_fast_hitl_resume_skips_extraction(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator({
            "FastExtraction": [fast_data(ratios=(0.0, 0.0, 0.0))],
        })
        run = await _new_run(orchestrator, ExecutionMode.FAST)
        await orchestrator.execute_run(run.id)

        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        await orchestrator.resolve_hitl_packet(
            packet.packet_id,
            HITLResolution(action_taken="entered ratios", corrections={"normalized_doc": clean_doc_data()}),
        )
        assert (await orchestrator.resume_run_after_hitl(run.id)).status == RunStatus.COMPLETED
        assert collaborator.count("FastExtraction") == 2

    async def test_invalid_document_rejected(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator({"FastExtraction": [fast_data(valid=False)]})
        run = await _new_run(orchestrator, ExecutionMode.FAST)

        result = await orchestrator.execute_run(run.id)

        assert result.status == RunStatus.REJECTED
        assert "receipt" in result.error
        assert collaborator.count("FastExtraction") == 1

    def test_fast_mapping(self):
        data = fast_data()
        data["shareholders"][0]["remarks"] = "name suspect (needs review): blurred"
        doc = fast_to_normalized(FastExtraction.model_validate(data))
        assert doc.document_properties.document_type == "shareholder register"
        assert doc.shareholders[0].normalization_notes == ["name suspect (needs review): blurred"]
        assert doc.shareholders[0].identifier_type.value == "RESIDENT_ID"
        assert doc.shareholders[1].identifier_type.value == "BUSINESS_REG"


class TestConcurrency:

    async def test_same_run_executes_once(self, make_orchestrator):
        orchestrator, collaborator = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)

        results = await asyncio.gather(
            orchestrator.execute_run(run.id),
            orchestrator.execute_run(run.id),
            return_exceptions=True,
        )

        runs = [r for r in results if isinstance(r, Run)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(runs) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (RunAlreadyExecuting, InvalidRunState))
        assert collaborator.count("DocumentAssessment") == 1

    async def test_launched_run_blocks_duplicate(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)

        task = await orchestrator.launch_run(run.id)
        with pytest.raises(RunAlreadyExecuting):
            await orchestrator.execute_run(run.id)
        assert (await task).status == RunStatus.COMPLETED

    async def test_session_lock_exclusive(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        first = await _new_run(orchestrator)
        second = await _new_run(orchestrator)

        task = await orchestrator.launch_run(first.id)
        with pytest.raises(SessionLockedError):
            await orchestrator.execute_run(second.id)
        await task

        assert (await orchestrator.execute_run(second.id)).status == RunStatus.COMPLETED

    async def test_lock_released_after_hitl(self, make_orchestrator, controller):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)
        assert not (await controller.get_status()).is_locked
        assert not controller.is_executing(run.id)


class TestCancellation:

    async def test_cancel_pending(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        cancelled = await orchestrator.cancel_run(run.id)
        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.error_code == "ERR_CANCELLED"

    async def test_cancel_executing_stops_at_boundary(self, repository, controller, event_bus):
        rasterizer = GatedRasterizer()
        collaborator = FakeCollaborator(multi_agent_script())
        orchestrator = Orchestrator(
            repository, controller, event_bus, collaborator, rasterizer, today=lambda: TODAY,
        )
        run = await _new_run(orchestrator)

        task = await orchestrator.launch_run(run.id)
        await orchestrator.cancel_run(run.id)
        rasterizer.gate.set()
        result = await task

        assert result.status == RunStatus.CANCELLED
        assert collaborator.count("ExtractorOutput") == 0
        assert not controller.is_executing(run.id)

    async def test_cancel_suspended_closes_packet(self, make_orchestrator, repository):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)

        cancelled = await orchestrator.cancel_run(run.id)

        assert cancelled.status == RunStatus.CANCELLED
        packet = await orchestrator.get_hitl_packet_by_run(run.id)
        assert packet.status == HITLStatus.CLOSED
        assert packet.resolution.resolved_by == "system"
        assert await repository.list_hitl_packets(status=HITLStatus.PENDING) == []

    async def test_cancel_completed_rejected(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        await orchestrator.execute_run(run.id)
        with pytest.raises(InvalidRunState):
            await orchestrator.cancel_run(run.id)


class TestEventsAndRecovery:

    async def test_event_stream_order(self, make_orchestrator, event_bus):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        queue = event_bus.subscribe(run.id)

        await orchestrator.execute_run(run.id)

        messages = [m async for m in event_bus.stream(run.id, heartbeat_seconds=None, queue=queue)]
        types = [m.type for m in messages]
        assert types.count(EventType.STAGE_EVENT) == 5
        assert types[-2:] == [EventType.FINAL_ANSWER, EventType.COMPLETED]

    async def test_hitl_event_closes_stream(self, make_orchestrator, event_bus):
        orchestrator, _ = make_orchestrator(multi_agent_script(NormalizedDoc=[_unbalanced_doc()]))
        run = await _new_run(orchestrator)
        queue = event_bus.subscribe(run.id)

        await orchestrator.execute_run(run.id)

        messages = [m async for m in event_bus.stream(run.id, heartbeat_seconds=None, queue=queue)]
        assert messages[-1].type == EventType.HITL_REQUIRED

    async def test_orphaned_runs_recovered(self, make_orchestrator, repository, controller):
        orchestrator, _ = make_orchestrator(multi_agent_script())
        run = await _new_run(orchestrator)
        run.status = RunStatus.RUNNING
        await repository.save_run(run)
        await controller.acquire_session_lock(run.id)

        recovered = await orchestrator.recover_orphaned_runs()

        assert recovered == [run.id]
        stored = await orchestrator.get_run(run.id)
        assert stored.status == RunStatus.ERROR
        assert stored.error_code == "ERR_ORPHANED"
        assert not (await controller.get_status()).is_locked

    async def test_storage_failure_at_start_settles_as_error(self, tmp_path, event_bus):
        store = FlakyRunStore(str(tmp_path / "flaky"))
        repository = RunRepository(store)
        controller = ConcurrencyController(repository, ttl_seconds=300)
        orchestrator = Orchestrator(
            repository, controller, event_bus,
            FakeCollaborator(multi_agent_script()), FakeRasterizer(), today=lambda: TODAY,
        )
        run = await _new_run(orchestrator)

        task = await orchestrator.launch_run(run.id)
        store.fail_run_writes = 1
        result = await task

        assert result.status == RunStatus.ERROR
        assert result.error_code == "ERR_STORAGE"
        stored = await orchestrator.get_run(run.id)
        assert stored.status == RunStatus.ERROR
        assert stored.error_code == "ERR_STORAGE"
        assert not controller.is_executing(run.id)
        assert not (await controller.get_status()).is_locked
