"""
Shared test fixtures.
"""

import time
from datetime import date

import pytest
from fastapi.testclient import TestClient

from register_audit.dependencies import Container, set_container
from register_audit.errors import CollaboratorError
from register_audit.main import create_app
from register_audit.pipeline.collaborator import ReasoningCollaborator
from register_audit.pipeline.concurrency import ConcurrencyController
from register_audit.pipeline.events import EventBus
from register_audit.pipeline.orchestrator import Orchestrator
from register_audit.pipeline.renderer import PageImage, Rasterizer
from register_audit.schemas.contracts import NormalizedDoc
from register_audit.storage.backends import LocalObjectStore
from register_audit.storage.repository import RunRepository

TODAY = date(2026, 10, 19)


class FakeCollaborator(ReasoningCollaborator):
    """
    Scripted collaborator keyed by schema name.
    Each call consumes the next scripted response; the last one repeats.
    An exception instance in the script is raised instead of returned.
    """

    name = "fake"

    def __init__(self, script=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls = []

    def count(self, schema_name: str) -> int:
        return sum(1 for name, _ in self.calls if name == schema_name)

    async def understand(self, images, instructions, schema, context=None):
        self.calls.append((schema.__name__, context))
        responses = self.script.get(schema.__name__)
        if not responses:
            raise CollaboratorError(f"No scripted response for {schema.__name__}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return schema.model_validate(response)


class FakeRasterizer(Rasterizer):
    """One blank page per source."""

    def __init__(self):
        self.calls = 0

    async def rasterize(self, source_ref):
        self.calls += 1
        return [PageImage(page_index=0, data=b"page", width=1, height=1, source_ref=source_ref)]


def clean_doc_data() -> dict:
    """A register that passes every blocking rule on TODAY."""
    return {
        "shareholders": [
            {
                "name": "김철수",
                "entity_type": "INDIVIDUAL",
                "identifier": "800101-1234567",
                "identifier_type": "RESIDENT_ID",
                "shares": 6000,
                "ratio": 60.0,
                "confidence": 0.9,
            },
            {
                "name": "(주)한빛홀딩스",
                "entity_type": "CORPORATE",
                "identifier": "123-45-67890",
                "identifier_type": "BUSINESS_REG",
                "shares": 3000,
                "ratio": 30.0,
                "confidence": 0.9,
            },
            {
                "name": "이영희",
                "entity_type": "INDIVIDUAL",
                "identifier": "1985-03-15",
                "identifier_type": "BIRTH_DATE",
                "shares": 1000,
                "ratio": 10.0,
                "confidence": 0.9,
            },
        ],
        "document_properties": {
            "company_name": "주식회사 한빛",
            "document_date": "2026-06-30",
            "total_shares_issued": 10000,
        },
        "ordering_detected": "RATIO_DESC",
    }


def assessment_data(route: str = "EXTRACT") -> dict:
    return {
        "is_shareholder_register": route != "REJECT",
        "document_type_guess": "shareholder register" if route != "REJECT" else "receipt",
        "required_fields_present": {
            "company_name": True,
            "shareholder_names": True,
            "shares_or_ratio": True,
            "document_date": True,
        },
        "doc_quality": {"readability": "HIGH"},
        "route_suggestion": route,
        "rationale": "Title reads 주주명부",
    }


def extractor_data(blockers=None) -> dict:
    return {
        "records": [
            {"raw_name": "김철수", "raw_identifier": "800101-1234567", "raw_shares": "6,000주", "raw_ratio": "60%"},
            {"raw_name": "(주)한빛홀딩스", "raw_identifier": "123-45-67890", "raw_shares": "3,000주", "raw_ratio": "30%"},
            {"raw_name": "이영희", "raw_identifier": "1985.03.15", "raw_shares": "1,000주", "raw_ratio": "10%"},
        ],
        "document_info": {"company_name": "주식회사 한빛", "document_date": "2026-06-30", "raw_total_shares": "10,000"},
        "table_structure": {"column_headers": ["성명", "주민등록번호", "주식수", "지분율"], "identifier_column_header": "주민등록번호"},
        "blockers": blockers or [],
    }


def fast_data(ratios=(60.0, 30.0, 10.0), valid=True) -> dict:
    names = ["김철수", "(주)한빛홀딩스", "이영희"]
    identifiers = ["800101-1234567", "123-45-67890", "850315"]
    entities = ["INDIVIDUAL", "CORPORATE", "UNKNOWN"]
    shares = [6000, 3000, 1000]
    return {
        "is_valid_document": valid,
        "rejection_reason": None if valid else "This is a receipt",
        "document_info": {
            "company_name": "주식회사 한빛",
            "document_date": "2026-06-30",
            "identifier_column_header": "주민등록번호",
        },
        "shareholders": [
            {"name": n, "entity_type": e, "identifier": i, "shares": s, "ratio": r}
            for n, e, i, s, r in zip(names, entities, identifiers, shares, ratios)
        ],
        "ordering_detected": "RATIO_DESC",
    }


ANALYST_OK = {"is_decidable": True, "reasoning": "Ratios are complete.", "confidence": 0.85}


def multi_agent_script(**overrides) -> dict:
    script = {
        "DocumentAssessment": [assessment_data()],
        "ExtractorOutput": [extractor_data()],
        "NormalizedDoc": [clean_doc_data()],
        "AnalystSynthesis": [ANALYST_OK],
    }
    script.update(overrides)
    return script


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def clean_doc():
    return NormalizedDoc.model_validate(clean_doc_data())


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(str(tmp_path / "store"))


@pytest.fixture
def repository(store):
    return RunRepository(store)


@pytest.fixture
def controller(repository):
    return ConcurrencyController(repository, ttl_seconds=300)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def rasterizer():
    return FakeRasterizer()


@pytest.fixture
def make_orchestrator(repository, controller, event_bus, rasterizer):
    """Build an orchestrator around a scripted collaborator."""

    def _make(script, fast_max_attempts=2):
        collaborator = FakeCollaborator(script)
        orchestrator = Orchestrator(
            repository=repository,
            controller=controller,
            event_bus=event_bus,
            collaborator=collaborator,
            rasterizer=rasterizer,
            fast_max_attempts=fast_max_attempts,
            today=lambda: TODAY,
        )
        return orchestrator, collaborator

    return _make


@pytest.fixture
def make_client(store, repository, controller, event_bus, make_orchestrator):
    """
    TestClient over an app whose container wraps the scripted orchestrator.
    Returns (client, orchestrator); client.portal runs coroutines on the app's loop.
    """
    clients = []

    def _make(script=None):
        orchestrator, _ = make_orchestrator(script or multi_agent_script())
        set_container(Container(store, repository, controller, event_bus, orchestrator))
        client = TestClient(create_app())
        client.__enter__()
        clients.append(client)
        return client, orchestrator

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
    set_container(None)


def wait_for_status(client, run_id, statuses, timeout=5.0) -> dict:
    """Poll the run until it reaches one of the given statuses."""
    deadline = time.monotonic() + timeout
    run = None
    while time.monotonic() < deadline:
        run = client.get(f"/api/v1/runs/{run_id}").json()
        if run["status"] in statuses:
            return run
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} stuck in {run and run['status']}")
