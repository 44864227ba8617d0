"""
Deterministic rule engine.

validate(doc) -> ValidationReport. Every check runs on every call so a single
pass reports the complete defect set. Nothing here corrects data: a defect
becomes a trigger and, for BLOCKERs, a human decision.

Status: any BLOCKER -> NEED_HITL, else PASS. REJECT is reserved for the
gatekeeper's document classification and is never produced here.
"""

import math
import re
from collections import Counter
from datetime import date
from typing import Optional

import structlog

from register_audit.models.enums import (
    EntityType,
    IdentifierType,
    RequiredAction,
    Severity,
    ValidationStatus,
)
from register_audit.pipeline.ownership import reference_total
from register_audit.schemas.contracts import (
    NormalizedDoc,
    RuleTrigger,
    SummaryMetrics,
    ValidationReport,
)

logger = structlog.get_logger(__name__)

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
RESIDENT_ID_PATTERN = re.compile(r"^\d{6}[-\s]?\d{7}$")
BUSINESS_REG_PATTERN = re.compile(r"^\d{3}[-\s]?\d{2}[-\s]?\d{5}$")
BIRTH_DATE_PATTERN = re.compile(r"^\d{4}[-./]?\d{2}[-./]?\d{2}$")

# Normalizer notes that mark a name it changed or could not read cleanly
NAME_CORRECTION_MARKERS = ("name corrected", "name suspect", "성명 오타 교정", "성명 의심")

SUM_TOLERANCE = 0.01
RATIO_SUM_LOW = 99.5
RATIO_SUM_HIGH = 100.5
CROSS_RATIO_TOLERANCE = 1.0
COVERAGE_FOR_SUM = 0.8
LOW_CONFIDENCE = 0.5
LOW_CONFIDENCE_SHARE = 0.3
UNKNOWN_ENTITY_SHARE = 0.3

EXPECTED_ID_LENGTH = {
    IdentifierType.BUSINESS_REG: 10,
    IdentifierType.CORPORATE_REG: 13,
    IdentifierType.RESIDENT_ID: 13,
}


def _coverage(count: int, total: int) -> float:
    return count / total if total else 0.0


def _parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value or not ISO_DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def document_age_days(document_date: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Whole days between the document date and today, None when the date is unusable."""
    parsed = _parse_iso_date(document_date)
    if parsed is None:
        return None
    return ((today or date.today()) - parsed).days


def summarize(doc: NormalizedDoc) -> SummaryMetrics:
    holders = doc.shareholders
    total = len(holders)

    shares = [h.shares for h in holders]
    ratios = [h.ratio for h in holders if h.ratio is not None]
    amounts = [h.amount for h in holders if h.amount is not None]

    ratio_cov = _coverage(len(ratios), total)
    amount_cov = _coverage(len(amounts), total)

    return SummaryMetrics(
        total_shareholders=total,
        sum_shares=sum(shares) if total and all(s is not None for s in shares) else None,
        sum_ratio=sum(ratios) if total and ratio_cov >= COVERAGE_FOR_SUM else None,
        sum_amount=sum(amounts) if total and amount_cov >= COVERAGE_FOR_SUM else None,
        identifier_coverage=_coverage(sum(1 for h in holders if h.identifier), total),
        ratio_coverage=ratio_cov,
        amount_coverage=amount_cov,
        unknown_entity_count=sum(1 for h in holders if h.entity_type == EntityType.UNKNOWN),
    )


def _blocker(rule_id: str, message: str, suggestion: Optional[RequiredAction] = None, **metrics) -> RuleTrigger:
    return RuleTrigger(
        rule_id=rule_id,
        severity=Severity.BLOCKER,
        message=message,
        metrics=metrics,
        suggestion=suggestion,
    )


# ─── Check groups ─────────────────────────────────────────────

def _check_records(doc: NormalizedDoc) -> list[RuleTrigger]:
    if doc.shareholders:
        return []
    return [_blocker("E-MIN-001", "No shareholder records were extracted", RequiredAction.RESCAN_REQUEST, count=0)]


def _check_metadata(doc: NormalizedDoc, today: date, staleness_days: int) -> list[RuleTrigger]:
    props = doc.document_properties
    triggers = []

    if not props.company_name or not props.company_name.strip():
        triggers.append(_blocker("E-META-001", "Company name is missing", RequiredAction.MANUAL_CORRECTION))

    if not props.document_date:
        triggers.append(_blocker("E-META-002", "Document date is missing", RequiredAction.MANUAL_CORRECTION))
        return triggers

    if not ISO_DATE_PATTERN.match(props.document_date):
        triggers.append(_blocker(
            "E-META-004",
            f"Document date '{props.document_date}' is not a complete YYYY-MM-DD date",
            RequiredAction.MANUAL_CORRECTION,
            document_date=props.document_date,
        ))

    days = document_age_days(props.document_date, today)
    if days is not None and days > staleness_days:
        triggers.append(_blocker(
            "E-META-003",
            f"Document is {days} days old (limit {staleness_days})",
            RequiredAction.RESCAN_REQUEST,
            days_diff=days,
            threshold_days=staleness_days,
        ))
    return triggers


def _check_values(doc: NormalizedDoc) -> list[RuleTrigger]:
    holders = doc.shareholders
    triggers = []

    bad_shares = [h.name for h in holders if h.shares is not None and h.shares <= 0]
    if bad_shares:
        triggers.append(_blocker(
            "E-ZERO-001",
            f"{len(bad_shares)} shareholder(s) with zero or negative shares",
            RequiredAction.MANUAL_CORRECTION,
            count=len(bad_shares),
            names=bad_shares,
        ))

    bad_amounts = [h.name for h in holders if h.amount is not None and h.amount <= 0]
    if bad_amounts:
        triggers.append(_blocker(
            "E-ZERO-002",
            f"{len(bad_amounts)} shareholder(s) with zero or negative amount",
            RequiredAction.MANUAL_CORRECTION,
            count=len(bad_amounts),
            names=bad_amounts,
        ))

    ratios = [h.ratio for h in holders if h.ratio is not None]
    if ratios and all(r == 0 for r in ratios):
        triggers.append(_blocker(
            "E-ZERO-RATIO",
            "Every reported ratio is zero",
            RequiredAction.MANUAL_CORRECTION,
            count=len(ratios),
        ))
    return triggers


def _check_sums(doc: NormalizedDoc, metrics: SummaryMetrics) -> list[RuleTrigger]:
    props = doc.document_properties
    triggers = []

    declared = props.total_shares_issued
    if declared and declared > 0 and metrics.sum_shares is not None:
        diff = abs(metrics.sum_shares - declared) / declared
        if diff > SUM_TOLERANCE:
            triggers.append(_blocker(
                "E-SUM-001",
                f"Sum of shares {metrics.sum_shares:,.0f} differs from declared total {declared:,.0f} by {diff * 100:.2f}%",
                RequiredAction.REFERENCE_VALUE_INPUT,
                declared_total=declared,
                sum_shares=metrics.sum_shares,
                diff_percent=round(diff * 100, 2),
            ))

    capital = props.total_capital
    if capital and capital > 0 and metrics.sum_amount is not None:
        diff = abs(metrics.sum_amount - capital) / capital
        if diff > SUM_TOLERANCE:
            triggers.append(_blocker(
                "E-SUM-002",
                f"Sum of amounts {metrics.sum_amount:,.0f} differs from total capital {capital:,.0f} by {diff * 100:.2f}%",
                RequiredAction.REFERENCE_VALUE_INPUT,
                declared_total=capital,
                sum_amount=metrics.sum_amount,
                diff_percent=round(diff * 100, 2),
            ))

    if metrics.sum_ratio is not None and not RATIO_SUM_LOW <= metrics.sum_ratio <= RATIO_SUM_HIGH:
        triggers.append(_blocker(
            "E-RAT-001",
            f"Ratios sum to {metrics.sum_ratio:.2f}%, expected 100%",
            RequiredAction.MANUAL_CORRECTION,
            sum_ratio=round(metrics.sum_ratio, 4),
            coverage=round(metrics.ratio_coverage, 4),
        ))
    return triggers


def _check_consistency(doc: NormalizedDoc) -> list[RuleTrigger]:
    holders = doc.shareholders
    props = doc.document_properties
    ref_shares = reference_total(props.total_shares_issued, [h.shares for h in holders])
    ref_amount = reference_total(props.total_capital, [h.amount for h in holders])

    inconsistencies = []
    for h in holders:
        if not h.name:
            continue
        share_part = h.shares / ref_shares * 100 if h.shares is not None and ref_shares else None
        amount_part = h.amount / ref_amount * 100 if h.amount is not None and ref_amount else None

        if h.ratio is not None and share_part is not None and abs(h.ratio - share_part) > CROSS_RATIO_TOLERANCE:
            inconsistencies.append({
                "name": h.name, "check": "ratio_vs_shares",
                "ratio": h.ratio, "derived": round(share_part, 4),
            })
        if h.ratio is not None and amount_part is not None and abs(h.ratio - amount_part) > CROSS_RATIO_TOLERANCE:
            inconsistencies.append({
                "name": h.name, "check": "ratio_vs_amount",
                "ratio": h.ratio, "derived": round(amount_part, 4),
            })
        if share_part is not None and amount_part is not None and abs(share_part - amount_part) / 100 > SUM_TOLERANCE:
            inconsistencies.append({
                "name": h.name, "check": "shares_vs_amount",
                "shares_part": round(share_part, 4), "amount_part": round(amount_part, 4),
            })

    if not inconsistencies:
        return []
    return [_blocker(
        "E-CON-001",
        f"{len(inconsistencies)} cross-metric inconsistencies between ratio, shares and amount",
        RequiredAction.MANUAL_CORRECTION,
        inconsistencies=inconsistencies,
    )]


def _check_identifiers(doc: NormalizedDoc) -> list[RuleTrigger]:
    holders = doc.shareholders
    triggers = []

    missing = [h.name for h in holders if not h.identifier]
    if missing:
        triggers.append(_blocker(
            "E-ID-002",
            f"{len(missing)} shareholder(s) without an identifier",
            RequiredAction.MANUAL_CORRECTION,
            names=missing,
        ))

    unique_names = {h.name for h in holders}
    unique_ids = {h.identifier for h in holders if h.identifier}
    if holders and len(unique_names) != len(unique_ids):
        triggers.append(_blocker(
            "E-ID-003",
            f"{len(unique_names)} distinct names but {len(unique_ids)} distinct identifiers",
            RequiredAction.MANUAL_CORRECTION,
            unique_names=len(unique_names),
            unique_identifiers=len(unique_ids),
        ))

    malformed = []
    for h in holders:
        if not h.identifier or h.identifier_type is None:
            continue
        if h.identifier_type == IdentifierType.BIRTH_DATE:
            if not ISO_DATE_PATTERN.match(h.identifier):
                malformed.append({
                    "name": h.name, "identifier_type": h.identifier_type.value,
                    "expected": 10, "actual": len(h.identifier),
                })
            continue
        expected = EXPECTED_ID_LENGTH.get(h.identifier_type)
        if expected is None:
            continue
        digits = re.sub(r"[-\s]", "", h.identifier)
        if len(digits) != expected or not digits.isdigit():
            malformed.append({
                "name": h.name, "identifier_type": h.identifier_type.value,
                "expected": expected, "actual": len(digits),
            })
    if malformed:
        triggers.append(_blocker(
            "E-ID-004",
            f"{len(malformed)} identifier(s) with the wrong format or length",
            RequiredAction.MANUAL_CORRECTION,
            malformed=malformed,
        ))

    nonstandard = [
        h.name for h in holders
        if h.identifier
        and not RESIDENT_ID_PATTERN.match(h.identifier)
        and not BUSINESS_REG_PATTERN.match(h.identifier)
        and not BIRTH_DATE_PATTERN.match(h.identifier)
    ]
    if nonstandard:
        triggers.append(RuleTrigger(
            rule_id="E-ID-001",
            severity=Severity.INFO,
            message=f"{len(nonstandard)} identifier(s) match no known format",
            metrics={"names": nonstandard},
        ))
    return triggers


def _check_duplicates(doc: NormalizedDoc) -> list[RuleTrigger]:
    triggers = []

    name_counts = Counter(h.name for h in doc.shareholders)
    repeated = sorted(name for name, n in name_counts.items() if n > 1)
    if repeated:
        triggers.append(RuleTrigger(
            rule_id="E-DUP-001",
            severity=Severity.WARNING,
            message=f"Repeated shareholder names: {', '.join(repeated)}",
            metrics={"duplicates": repeated},
        ))

    pair_counts = Counter(f"{h.name}|{h.identifier}" for h in doc.shareholders if h.identifier)
    repeated_pairs = sorted(pair for pair, n in pair_counts.items() if n > 1)
    if repeated_pairs:
        triggers.append(_blocker(
            "E-DUP-002",
            f"{len(repeated_pairs)} record(s) repeated with the same name and identifier",
            RequiredAction.MANUAL_CORRECTION,
            duplicates=repeated_pairs,
        ))
    return triggers


def _check_names(doc: NormalizedDoc) -> list[RuleTrigger]:
    flagged = []
    for h in doc.shareholders:
        notes = " ".join(h.normalization_notes).lower()
        if any(marker in notes for marker in NAME_CORRECTION_MARKERS):
            flagged.append(h.name)
    if not flagged:
        return []
    return [_blocker(
        "E-NAME-001",
        f"{len(flagged)} name(s) were corrected or flagged as suspect during normalization",
        RequiredAction.MANUAL_CORRECTION,
        names=flagged,
    )]


def _check_quality(doc: NormalizedDoc, metrics: SummaryMetrics) -> list[RuleTrigger]:
    holders = doc.shareholders
    total = len(holders)
    props = doc.document_properties
    triggers = []

    low_conf = sum(1 for h in holders if h.confidence < LOW_CONFIDENCE)
    if total and low_conf > total * LOW_CONFIDENCE_SHARE:
        triggers.append(RuleTrigger(
            rule_id="E-CONF-001",
            severity=Severity.WARNING,
            message=f"{low_conf} of {total} records have confidence below {LOW_CONFIDENCE}",
            metrics={"low_confidence_count": low_conf, "total": total},
        ))

    null_shares = sum(1 for h in holders if h.shares is None)
    if (
        total
        and null_shares / total > 0.5
        and metrics.ratio_coverage < 0.5
        and metrics.amount_coverage < 0.5
    ):
        triggers.append(RuleTrigger(
            rule_id="E-NULL-001",
            severity=Severity.WARNING,
            message="Most records carry neither shares, ratio nor amount",
            metrics={
                "null_shares_ratio": round(null_shares / total, 4),
                "ratio_coverage": round(metrics.ratio_coverage, 4),
                "amount_coverage": round(metrics.amount_coverage, 4),
            },
        ))

    has_reference = bool(
        (props.total_shares_issued and props.total_shares_issued > 0)
        or (props.total_capital and props.total_capital > 0)
    )
    if total and not has_reference and metrics.ratio_coverage < 0.5:
        triggers.append(RuleTrigger(
            rule_id="E-REF-001",
            severity=Severity.WARNING,
            message="No declared total shares or capital and ratios are mostly missing",
            metrics={"ratio_coverage": round(metrics.ratio_coverage, 4)},
            suggestion=RequiredAction.REFERENCE_VALUE_INPUT,
        ))

    if total and metrics.unknown_entity_count / total > UNKNOWN_ENTITY_SHARE:
        triggers.append(RuleTrigger(
            rule_id="E-ENT-001",
            severity=Severity.INFO,
            message=f"{metrics.unknown_entity_count} of {total} shareholders have an unknown entity type",
            metrics={"unknown_count": metrics.unknown_entity_count, "total": total},
            suggestion=RequiredAction.ENTITY_TYPE_CLARIFICATION,
        ))
    return triggers


# ─── Entry point ──────────────────────────────────────────────

def quality_score(metrics: SummaryMetrics, has_blockers: bool) -> int:
    """0-100: 40 identifier coverage + 40 ratio coverage + 20 blocker-free."""
    raw = metrics.identifier_coverage * 40 + metrics.ratio_coverage * 40 + (0 if has_blockers else 20)
    return int(math.floor(raw + 0.5))


def validate(
    doc: NormalizedDoc,
    today: Optional[date] = None,
    staleness_days: int = 365,
) -> ValidationReport:
    """Run every check against a normalized document."""
    today = today or date.today()
    metrics = summarize(doc)

    triggers: list[RuleTrigger] = []
    triggers += _check_records(doc)
    triggers += _check_metadata(doc, today, staleness_days)
    triggers += _check_values(doc)
    triggers += _check_sums(doc, metrics)
    triggers += _check_consistency(doc)
    triggers += _check_identifiers(doc)
    triggers += _check_duplicates(doc)
    triggers += _check_names(doc)
    triggers += _check_quality(doc, metrics)

    blockers = [t.rule_id for t in triggers if t.severity == Severity.BLOCKER]
    status = ValidationStatus.NEED_HITL if blockers else ValidationStatus.PASS

    logger.info(
        "validation_completed",
        status=status.value,
        blocker_count=len(blockers),
        trigger_count=len(triggers),
    )

    return ValidationReport(
        status=status,
        triggers=triggers,
        summary_metrics=metrics,
        data_quality_score=quality_score(metrics, bool(blockers)),
        structural_failures=blockers,
    )
