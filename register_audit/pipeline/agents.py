"""
Stage calls to the reasoning collaborator.
One instruction set and one entry function per stage. Each function records
the call outcome in metrics and returns a validated contract model.
"""

from typing import Any, Optional

import structlog

from register_audit.errors import CollaboratorError
from register_audit.observability import metrics
from register_audit.pipeline.collaborator import ReasoningCollaborator
from register_audit.pipeline.renderer import PageImage
from register_audit.schemas.contracts import (
    AnalystSynthesis,
    DocumentAssessment,
    ExtractorOutput,
    FastExtraction,
    NormalizedDoc,
    ValidationReport,
)

logger = structlog.get_logger(__name__)


GATEKEEPER_INSTRUCTIONS = """You classify scanned Korean corporate documents.
Decide whether the pages are a shareholder register (주주명부) or a shareholder list.

Check for: the issuing company name, shareholder names, shares or ownership
ratio or amount per holder, and a document or reference date.

route_suggestion:
- EXTRACT when it is a register and the required fields are readable
- REQUEST_MORE_INPUT when it is a register but pages or fields seem missing
- HITL_TRIAGE when you cannot tell what the document is
- REJECT only when it is clearly something else (résumé, receipt, registry extract)

Report readability as HIGH, MEDIUM or LOW and list scan artifacts you notice.
Quote the text that supports your decision in evidence_refs."""

EXTRACTOR_INSTRUCTIONS = """You transcribe shareholder registers exactly as written.

- One record per table row, across every page, in page order.
- Keep every value as the literal text in the cell: do not convert units,
  do not compute totals, do not fill gaps. Unreadable cells are null.
- Record the column headers, and name the header of the identifier column
  (e.g. 주민등록번호, 생년월일, 사업자등록번호, 법인등록번호).
- Take company_name only from the title, header, footer or seal area. A
  corporate shareholder inside the table is not the issuing company.
- document_date: prefer dates next to 기준일/작성일/발행일, then "as of"
  dates, then the date near the seal, then the date at the bottom or under
  the title. Never append a missing day or month.
- If a total row exists, set has_total_row and copy its values.
- Put anything that makes reliable extraction impossible (cut-off table,
  pages out of order, illegible columns) in blockers."""

NORMALIZER_INSTRUCTIONS = """You normalize transcribed shareholder register rows.

- name: trim whitespace and stray symbols, keep corporate markers such as (주).
  Judge whether each name is a plausible Korean name. If a character was
  clearly misread, correct it and add a note
  "name corrected: <original> -> <corrected> (<reason>)". If you are unsure,
  do not change it and add "name suspect (needs review): <reason>".
- entity_type: INDIVIDUAL, CORPORATE or UNKNOWN, with entity_type_confidence.
- shares: integer count ("10,000주" -> 10000, "1만" -> 10000).
- ratio: percent between 0 and 100 ("25.5%" -> 25.5). Leave null when not stated.
- amount: integer won ("1,000,000원" -> 1000000, "1억" -> 100000000).
- identifier: keep resident, business and corporate registration numbers as
  digits with their usual hyphens; write birth dates as YYYY-MM-DD. Set
  identifier_type to RESIDENT_ID, BIRTH_DATE, BUSINESS_REG, CORPORATE_REG,
  FOREIGN_ID, OTHER or UNKNOWN.
- Anything you could not convert stays null and gets an entry in unknown_reasons.
- document_properties: copy declared totals, par value and the document date
  (YYYY-MM-DD only when day, month and year are all present).
- Never invent values."""

FAST_EXTRACTOR_INSTRUCTIONS = """You analyse a shareholder register in a single pass.

First decide whether the pages are a shareholder register. Set
is_valid_document to false only when it is clearly another kind of document
and explain why in rejection_reason. Missing or masked identifiers are not a
reason to reject.

Then extract:
- document_info: company_name from the title, header, footer or seal area,
  document_date as YYYY-MM-DD (null when incomplete), declared total shares
  and total capital, and the identifier column header.
- shareholders: every holder with name, entity_type, identifier, shares,
  ratio (percent, 0-100), amount, share_class and remarks.
  When a name looks misread, keep it and write "name suspect (needs review)"
  in remarks.
- ordering_detected: RATIO_DESC, SHARES_DESC, AMOUNT_DESC or UNKNOWN.

Ratios must add up to 100% when every holder is listed. Do not guess digits
that are not visible."""

ANALYST_INSTRUCTIONS = """You review a validated shareholder register and judge whether
its beneficial owners (holders of 25% or more) can be determined.

You receive the normalized document and the validation report. Set
is_decidable to true only when ownership ratios are known for every holder
and nothing in the report undermines them. Explain your reasoning in a few
sentences and list anything that cannot be determined from the document.
Do not restate numbers that are not in the input."""


def _record(stage: str, outcome: str) -> None:
    metrics.collaborator_calls_total.labels(stage=stage, outcome=outcome).inc()


async def _call(
    stage: str,
    collaborator: ReasoningCollaborator,
    images: list[PageImage],
    instructions: str,
    schema,
    context: Optional[dict[str, Any]] = None,
):
    logger.info("agent_call_started", stage=stage, collaborator=collaborator.name, pages=len(images))
    try:
        result = await collaborator.understand(images, instructions, schema, context)
    except CollaboratorError:
        _record(stage, "error")
        raise
    _record(stage, "success")
    return result


async def run_gatekeeper(collaborator: ReasoningCollaborator, images: list[PageImage]) -> DocumentAssessment:
    return await _call("B", collaborator, images, GATEKEEPER_INSTRUCTIONS, DocumentAssessment)


async def run_extractor(
    collaborator: ReasoningCollaborator,
    images: list[PageImage],
    assessment: DocumentAssessment,
) -> ExtractorOutput:
    context = {
        "is_shareholder_register": assessment.is_shareholder_register,
        "readability": assessment.doc_quality.readability,
        "missing_pages_suspected": assessment.doc_quality.missing_pages_suspected,
    }
    output = await _call("C", collaborator, images, EXTRACTOR_INSTRUCTIONS, ExtractorOutput, context)
    logger.info("extractor_completed", records=len(output.records), blockers=len(output.blockers))
    return output


async def run_normalizer(collaborator: ReasoningCollaborator, extractor_output: ExtractorOutput) -> NormalizedDoc:
    context = {"extractor_output": extractor_output.model_dump(mode="json")}
    doc = await _call("D", collaborator, [], NORMALIZER_INSTRUCTIONS, NormalizedDoc, context)
    logger.info("normalizer_completed", shareholders=len(doc.shareholders))
    return doc


async def run_fast_extractor(
    collaborator: ReasoningCollaborator,
    images: list[PageImage],
    feedback: Optional[str] = None,
) -> FastExtraction:
    context = {"feedback": feedback} if feedback else None
    return await _call("FastExtractor", collaborator, images, FAST_EXTRACTOR_INSTRUCTIONS, FastExtraction, context)


async def run_analyst(
    collaborator: ReasoningCollaborator,
    doc: NormalizedDoc,
    report: ValidationReport,
) -> AnalystSynthesis:
    context = {
        "normalized_doc": doc.model_dump(mode="json"),
        "validation_report": report.model_dump(mode="json"),
    }
    return await _call("INSIGHTS", collaborator, [], ANALYST_INSTRUCTIONS, AnalystSynthesis, context)
