"""
Final answer synthesis.

The collaborator only judges decidability and writes the narrative. Every
number in the answer set (ratios, beneficial owners, totals, staleness,
trust level) is computed here from the normalized document.
"""

from datetime import date
from typing import Optional

import structlog

from register_audit.errors import CollaboratorError
from register_audit.models.enums import Severity, TrustLevel
from register_audit.pipeline import agents
from register_audit.pipeline.collaborator import ReasoningCollaborator
from register_audit.pipeline.ownership import effective_ratios, select_beneficial_owners
from register_audit.pipeline.rule_engine import document_age_days
from register_audit.schemas.contracts import (
    AnalystSynthesis,
    AnswerSet,
    Decidability,
    DocumentAssessment,
    NormalizedDoc,
    Staleness,
    Totals,
    UnknownAnswer,
    ValidationReport,
    ValidationSummary,
)

logger = structlog.get_logger(__name__)

FAST_SYNTHESIS = AnalystSynthesis(
    is_decidable=True,
    reasoning="Fast track analysis completed",
    confidence=0.8,
)


def trust_level_for(coverage: float, total: int) -> TrustLevel:
    if total == 0:
        return TrustLevel.LOW
    if coverage >= 1.0:
        return TrustLevel.HIGH
    if coverage >= 0.7:
        return TrustLevel.MEDIUM
    return TrustLevel.LOW


def build_answer_set(
    doc: NormalizedDoc,
    report: ValidationReport,
    synthesis: AnalystSynthesis,
    assessment: Optional[DocumentAssessment] = None,
    today: Optional[date] = None,
    threshold: float = 25.0,
    staleness_days: int = 365,
) -> AnswerSet:
    props = doc.document_properties
    holders = effective_ratios(doc.shareholders, props)
    total = len(holders)
    with_ratio = [h for h in holders if h.ratio is not None]
    coverage = len(with_ratio) / total if total else 0.0

    cannot_determine = list(synthesis.cannot_determine)
    if total == 0:
        reason = "No shareholder records available"
    elif len(with_ratio) < total:
        reason = f"Ownership ratio unknown for {total - len(with_ratio)} of {total} shareholders"
    elif not synthesis.is_decidable:
        reason = "Analyst could not confirm the ownership structure"
    else:
        reason = None
    is_decidable = reason is None

    if is_decidable:
        over_25 = select_beneficial_owners(holders, threshold)
    else:
        over_25 = UnknownAnswer(reason=reason)
        if reason not in cannot_determine:
            cannot_determine.append(reason)

    days = document_age_days(props.document_date, today)
    staleness = Staleness(
        is_stale=days is not None and days > staleness_days,
        days_diff=days,
        threshold_days=staleness_days,
    )

    share_classes: list[str] = []
    for h in holders:
        if h.share_class and h.share_class not in share_classes:
            share_classes.append(h.share_class)

    reasoning = synthesis.reasoning
    if report.triggers:
        lines = "\n".join(f"- {t.rule_id}: {t.message}" for t in report.triggers)
        reasoning = f"{reasoning}\n\n[Validation summary]\n{lines}"

    severities = [t.severity for t in report.triggers]
    return AnswerSet(
        document_assessment=assessment,
        over_25_percent=over_25,
        ordering_rule=doc.ordering_detected,
        totals=Totals(
            total_shares_issued=props.total_shares_issued,
            total_capital=props.total_capital,
            sum_ratio=sum(h.ratio for h in with_ratio) if with_ratio else None,
            ratio_coverage=coverage,
        ),
        document_date=props.document_date,
        staleness=staleness,
        company_name=props.company_name,
        share_classes_found=share_classes,
        trust_level=trust_level_for(coverage, total),
        cannot_determine=cannot_determine,
        synthesis_reasoning=reasoning,
        synthesis_confidence=synthesis.confidence,
        validation_summary=ValidationSummary(
            status=report.status,
            data_quality_score=report.data_quality_score,
            blocker_count=severities.count(Severity.BLOCKER),
            warning_count=severities.count(Severity.WARNING),
            info_count=severities.count(Severity.INFO),
            decidability=Decidability(is_decidable=is_decidable, reason=reason),
        ),
    )


class AnalystService:
    """Runs the INSIGHTS stage."""

    def __init__(
        self,
        collaborator: ReasoningCollaborator,
        threshold: float = 25.0,
        staleness_days: int = 365,
    ):
        self.collaborator = collaborator
        self.threshold = threshold
        self.staleness_days = staleness_days

    async def synthesize(
        self,
        doc: NormalizedDoc,
        report: ValidationReport,
        assessment: Optional[DocumentAssessment] = None,
        today: Optional[date] = None,
    ) -> AnswerSet:
        try:
            synthesis = await agents.run_analyst(self.collaborator, doc, report)
        except CollaboratorError as e:
            # The answer set is still built, marked undecidable
            logger.warning("analyst_synthesis_failed", error=e.message)
            synthesis = AnalystSynthesis(
                is_decidable=False,
                reasoning=f"analysis failed: {e.message}",
                confidence=0.0,
            )
        return build_answer_set(
            doc, report, synthesis, assessment, today,
            threshold=self.threshold, staleness_days=self.staleness_days,
        )

    def fast_synthesize(
        self,
        doc: NormalizedDoc,
        report: ValidationReport,
        today: Optional[date] = None,
    ) -> AnswerSet:
        """Deterministic synthesis for FAST runs, no collaborator call."""
        return build_answer_set(
            doc, report, FAST_SYNTHESIS, None, today,
            threshold=self.threshold, staleness_days=self.staleness_days,
        )
