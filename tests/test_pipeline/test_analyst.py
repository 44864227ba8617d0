"""
Tests for answer set synthesis.
"""

from register_audit.errors import CollaboratorError
from register_audit.models.enums import TrustLevel, ValidationStatus
from register_audit.pipeline.analyst import AnalystService, build_answer_set, trust_level_for
from register_audit.pipeline.rule_engine import validate
from register_audit.schemas.contracts import AnalystSynthesis, NormalizedDoc, UnknownAnswer

from conftest import ANALYST_OK, TODAY, FakeCollaborator, clean_doc_data

DECIDABLE = AnalystSynthesis.model_validate(ANALYST_OK)


class TestTrustLevel:

    def test_levels(self):
        assert trust_level_for(1.0, 3) == TrustLevel.HIGH
        assert trust_level_for(0.7, 10) == TrustLevel.MEDIUM
        assert trust_level_for(0.69, 10) == TrustLevel.LOW
        assert trust_level_for(0.0, 0) == TrustLevel.LOW


class TestBuildAnswerSet:

    def test_decidable_register(self, clean_doc):
        report = validate(clean_doc, today=TODAY)
        answer = build_answer_set(clean_doc, report, DECIDABLE, today=TODAY)

        assert [h.name for h in answer.over_25_percent] == ["김철수", "(주)한빛홀딩스"]
        assert answer.trust_level == TrustLevel.HIGH
        assert answer.totals.sum_ratio == 100.0
        assert answer.company_name == "주식회사 한빛"
        assert answer.staleness.days_diff == 111
        assert not answer.staleness.is_stale
        assert answer.validation_summary.status == ValidationStatus.PASS
        assert answer.validation_summary.decidability.is_decidable

    def test_unknown_ratio_makes_answer_unknown(self):
        data = clean_doc_data()
        data["shareholders"][2].update(shares=None, ratio=None)
        doc = NormalizedDoc.model_validate(data)
        answer = build_answer_set(doc, validate(doc, today=TODAY), DECIDABLE, today=TODAY)

        assert isinstance(answer.over_25_percent, UnknownAnswer)
        assert answer.over_25_percent.UNKNOWN
        assert "1 of 3" in answer.over_25_percent.reason
        assert answer.trust_level == TrustLevel.LOW
        assert answer.over_25_percent.reason in answer.cannot_determine

    def test_analyst_judgement_respected(self, clean_doc):
        synthesis = AnalystSynthesis(is_decidable=False, reasoning="Seal is illegible", confidence=0.4)
        answer = build_answer_set(clean_doc, validate(clean_doc, today=TODAY), synthesis, today=TODAY)
        assert isinstance(answer.over_25_percent, UnknownAnswer)
        assert not answer.validation_summary.decidability.is_decidable

    def test_derived_ratios_used(self):
        data = clean_doc_data()
        for holder in data["shareholders"]:
            holder["ratio"] = None
        doc = NormalizedDoc.model_validate(data)
        answer = build_answer_set(doc, validate(doc, today=TODAY), DECIDABLE, today=TODAY)
        assert [round(h.ratio, 2) for h in answer.over_25_percent] == [60.0, 30.0]

    def test_share_classes_and_trigger_summary(self):
        data = clean_doc_data()
        data["shareholders"][0]["share_class"] = "보통주"
        data["shareholders"][1]["share_class"] = "우선주"
        data["shareholders"][2]["share_class"] = "보통주"
        data["document_properties"]["document_date"] = "2024-01-01"
        doc = NormalizedDoc.model_validate(data)
        answer = build_answer_set(doc, validate(doc, today=TODAY), DECIDABLE, today=TODAY)

        assert answer.share_classes_found == ["보통주", "우선주"]
        assert answer.staleness.is_stale
        assert "E-META-003" in answer.synthesis_reasoning

    def test_beneficial_owners_sorted_with_custom_threshold(self, clean_doc):
        answer = build_answer_set(
            clean_doc, validate(clean_doc, today=TODAY), DECIDABLE, today=TODAY, threshold=50.0,
        )
        assert [h.name for h in answer.over_25_percent] == ["김철수"]


class TestAnalystService:

    async def test_synthesize_uses_collaborator(self, clean_doc):
        collaborator = FakeCollaborator({"AnalystSynthesis": [ANALYST_OK]})
        service = AnalystService(collaborator)
        answer = await service.synthesize(clean_doc, validate(clean_doc, today=TODAY), today=TODAY)
        assert answer.synthesis_confidence == 0.85
        assert collaborator.count("AnalystSynthesis") == 1

    async def test_collaborator_failure_degrades(self, clean_doc):
        collaborator = FakeCollaborator({"AnalystSynthesis": [CollaboratorError("timeout")]})
        service = AnalystService(collaborator)
        answer = await service.synthesize(clean_doc, validate(clean_doc, today=TODAY), today=TODAY)
        assert isinstance(answer.over_25_percent, UnknownAnswer)
        assert answer.synthesis_confidence == 0.0

    def test_fast_synthesis_needs_no_collaborator(self, clean_doc):
        collaborator = FakeCollaborator()
        service = AnalystService(collaborator)
        answer = service.fast_synthesize(clean_doc, validate(clean_doc, today=TODAY), today=TODAY)
        assert answer.synthesis_confidence == 0.8
        assert collaborator.calls == []
