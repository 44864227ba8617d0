"""
Tests for the deterministic rule engine.
"""

from datetime import date

from register_audit.models.enums import Severity, ValidationStatus
from register_audit.pipeline.rule_engine import document_age_days, quality_score, summarize, validate
from register_audit.schemas.contracts import NormalizedDoc

from conftest import TODAY, clean_doc_data


def _doc(**changes) -> NormalizedDoc:
    data = clean_doc_data()
    for key, value in changes.items():
        if key in data["document_properties"] or key in ("company_name", "document_date", "total_shares_issued", "total_capital"):
            data["document_properties"][key] = value
        else:
            data[key] = value
    return NormalizedDoc.model_validate(data)


def _with_holders(mutate) -> NormalizedDoc:
    data = clean_doc_data()
    mutate(data["shareholders"])
    return NormalizedDoc.model_validate(data)


def _rule_ids(report, severity=None):
    return {t.rule_id for t in report.triggers if severity is None or t.severity == severity}


def _consistency_checks(report) -> set:
    con = [t for t in report.triggers if t.rule_id == "E-CON-001"]
    return {i["check"] for t in con for i in t.metrics["inconsistencies"]}


class TestCleanDocument:

    def test_passes(self, clean_doc):
        report = validate(clean_doc, today=TODAY)
        assert report.status == ValidationStatus.PASS
        assert report.blockers == []
        assert report.structural_failures == []

    def test_quality_score_full(self, clean_doc):
        assert validate(clean_doc, today=TODAY).data_quality_score == 100


class TestRecordsAndMetadata:

    def test_no_records(self):
        report = validate(_doc(shareholders=[]), today=TODAY)
        assert "E-MIN-001" in _rule_ids(report, Severity.BLOCKER)
        assert report.status == ValidationStatus.NEED_HITL

    def test_missing_company(self):
        assert "E-META-001" in _rule_ids(validate(_doc(company_name=" "), today=TODAY))

    def test_missing_date(self):
        assert "E-META-002" in _rule_ids(validate(_doc(document_date=None), today=TODAY))

    def test_partial_date(self):
        assert "E-META-004" in _rule_ids(validate(_doc(document_date="2026-06"), today=TODAY))

    def test_stale_document(self):
        report = validate(_doc(document_date="2025-01-01"), today=TODAY)
        stale = [t for t in report.triggers if t.rule_id == "E-META-003"]
        assert stale and stale[0].metrics["days_diff"] > 365

    def test_exactly_at_threshold_not_stale(self):
        report = validate(_doc(document_date="2025-10-19"), today=TODAY)
        assert document_age_days("2025-10-19", TODAY) == 365
        assert "E-META-003" not in _rule_ids(report)

    def test_custom_staleness(self):
        report = validate(_doc(), today=TODAY, staleness_days=30)
        assert "E-META-003" in _rule_ids(report)


class TestSums:

    def test_shares_within_tolerance(self):
        # 10050 vs 10000 is 0.5%
        def bump(holders):
            holders[0]["shares"] = 6050
            holders[0]["ratio"] = 60.5
            holders[2]["ratio"] = 9.5
        report = validate(_with_holders(bump), today=TODAY)
        assert "E-SUM-001" not in _rule_ids(report)

    def test_shares_mismatch(self):
        def bump(holders):
            holders[0]["shares"] = 7000
        report = validate(_with_holders(bump), today=TODAY)
        assert "E-SUM-001" in _rule_ids(report, Severity.BLOCKER)

    def test_ratio_sum_inside_band(self):
        def shift(holders):
            holders[2]["ratio"] = 10.4
        report = validate(_with_holders(shift), today=TODAY)
        assert "E-RAT-001" not in _rule_ids(report)

    def test_ratio_sum_outside_band(self):
        def shift(holders):
            holders[2]["ratio"] = 5.0
        report = validate(_with_holders(shift), today=TODAY)
        assert "E-RAT-001" in _rule_ids(report, Severity.BLOCKER)

    def test_ratio_sum_skipped_below_coverage(self):
        def drop(holders):
            for h in holders:
                h["ratio"] = None
            holders[0]["ratio"] = 10.0
            for h in holders:
                h["shares"] = None
        report = validate(_with_holders(drop), today=TODAY)
        assert "E-RAT-001" not in _rule_ids(report)

    def test_amount_mismatch(self):
        data = clean_doc_data()
        data["document_properties"]["total_capital"] = 50_000_000
        for holder, amount in zip(data["shareholders"], (30_000_000, 15_000_000, 10_000_000)):
            holder["amount"] = amount
        report = validate(NormalizedDoc.model_validate(data), today=TODAY)
        assert "E-SUM-002" in _rule_ids(report, Severity.BLOCKER)


class TestValuesAndConsistency:

    def test_zero_shares(self):
        def zero(holders):
            holders[2]["shares"] = 0
        assert "E-ZERO-001" in _rule_ids(validate(_with_holders(zero), today=TODAY))

    def test_all_zero_ratios(self):
        def zero(holders):
            for h in holders:
                h["ratio"] = 0
        assert "E-ZERO-RATIO" in _rule_ids(validate(_with_holders(zero), today=TODAY))

    def test_ratio_vs_shares_inconsistent(self):
        def skew(holders):
            holders[0]["ratio"] = 55.0
            holders[2]["ratio"] = 15.0
        report = validate(_with_holders(skew), today=TODAY)
        con = [t for t in report.triggers if t.rule_id == "E-CON-001"]
        assert con
        checks = {i["check"] for i in con[0].metrics["inconsistencies"]}
        assert checks == {"ratio_vs_shares"}

    def test_zero_amount(self):
        def zero(holders):
            for h, amount in zip(holders, (600, 300, 0)):
                h["amount"] = amount
        report = validate(_with_holders(zero), today=TODAY)
        assert "E-ZERO-002" in _rule_ids(report, Severity.BLOCKER)
        zero_amount = next(t for t in report.triggers if t.rule_id == "E-ZERO-002")
        assert zero_amount.metrics["names"] == ["이영희"]

    def test_ratio_vs_amount_inconsistent(self):
        def amounts_only(holders):
            for h, amount in zip(holders, (500, 300, 200)):
                h["shares"] = None
                h["amount"] = amount
        checks = _consistency_checks(validate(_with_holders(amounts_only), today=TODAY))
        assert checks == {"ratio_vs_amount"}

    def test_shares_vs_amount_inconsistent(self):
        def no_ratios(holders):
            for h, amount in zip(holders, (500, 300, 200)):
                h["ratio"] = None
                h["amount"] = amount
        checks = _consistency_checks(validate(_with_holders(no_ratios), today=TODAY))
        assert checks == {"shares_vs_amount"}

    def test_amounts_within_tolerance(self):
        def close(holders):
            for h, amount in zip(holders, (603, 300, 97)):
                h["amount"] = amount
        report = validate(_with_holders(close), today=TODAY)
        assert _consistency_checks(report) == set()
        assert _rule_ids(report, Severity.BLOCKER) == set()


class TestIdentifiers:

    def test_missing_identifier(self):
        def drop(holders):
            holders[1]["identifier"] = None
        assert "E-ID-002" in _rule_ids(validate(_with_holders(drop), today=TODAY))

    def test_name_identifier_cardinality(self):
        def share(holders):
            holders[2]["identifier"] = holders[0]["identifier"]
            holders[2]["identifier_type"] = "RESIDENT_ID"
        report = validate(_with_holders(share), today=TODAY)
        assert "E-ID-003" in _rule_ids(report, Severity.BLOCKER)

    def test_wrong_length(self):
        def shorten(holders):
            holders[0]["identifier"] = "800101-123456"
        assert "E-ID-004" in _rule_ids(validate(_with_holders(shorten), today=TODAY))

    def test_unrecognised_format_is_info(self):
        def odd(holders):
            holders[1]["identifier"] = "X-99"
            holders[1]["identifier_type"] = "OTHER"
        report = validate(_with_holders(odd), today=TODAY)
        assert "E-ID-001" in _rule_ids(report, Severity.INFO)
        assert "E-ID-001" not in report.structural_failures


class TestDuplicates:
    """Name-only repeats warn; name+identifier repeats block."""

    def test_same_name_different_identifier_warns(self):
        def twin(holders):
            holders[2]["name"] = holders[0]["name"]
        report = validate(_with_holders(twin), today=TODAY)
        assert "E-DUP-001" in _rule_ids(report, Severity.WARNING)
        assert "E-DUP-002" not in _rule_ids(report)

    def test_same_name_and_identifier_blocks(self):
        def copy(holders):
            holders[2].update(name=holders[0]["name"], identifier=holders[0]["identifier"], identifier_type="RESIDENT_ID")
        report = validate(_with_holders(copy), today=TODAY)
        assert "E-DUP-002" in _rule_ids(report, Severity.BLOCKER)


class TestNamesAndQuality:

    def test_name_correction_blocks(self):
        def note(holders):
            holders[0]["normalization_notes"] = ["name corrected: 김철주 -> 김철수 (misread)"]
        assert "E-NAME-001" in _rule_ids(validate(_with_holders(note), today=TODAY), Severity.BLOCKER)

    def test_low_confidence_warns(self):
        def lower(holders):
            for h in holders:
                h["confidence"] = 0.3
        report = validate(_with_holders(lower), today=TODAY)
        assert "E-CONF-001" in _rule_ids(report, Severity.WARNING)
        assert report.status == ValidationStatus.PASS

    def test_unknown_entities_info(self):
        def unknown(holders):
            for h in holders[:2]:
                h["entity_type"] = "UNKNOWN"
        assert "E-ENT-001" in _rule_ids(validate(_with_holders(unknown), today=TODAY), Severity.INFO)

    def test_quality_score_penalises_blockers(self, clean_doc):
        metrics = summarize(clean_doc)
        assert quality_score(metrics, has_blockers=False) == 100
        assert quality_score(metrics, has_blockers=True) == 80

    def test_default_today(self, clean_doc):
        # Runs against the real clock without raising
        assert validate(clean_doc).status in (ValidationStatus.PASS, ValidationStatus.NEED_HITL)
        assert document_age_days("not a date", date(2026, 1, 1)) is None
