"""
Core pipeline contracts.
Every artifact, run record and audit entry is one of these models and is
persisted with model_dump(mode="json"). Collaborator output is validated
into these shapes before any downstream stage sees it.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from register_audit.models.enums import (
    EntityType,
    EventType,
    ExecutionMode,
    HITLStatus,
    IdentifierType,
    LogLevel,
    NextAction,
    OrderingRule,
    OwnershipBasis,
    ReasonCode,
    RequiredAction,
    RouteSuggestion,
    RunStatus,
    Severity,
    StageName,
    TrustLevel,
    ValidationStatus,
)
from register_audit.pipeline.number_parser import to_float


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_enum(enum_cls, value, default):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().upper())
        except ValueError:
            return default
    return default


# ── Evidence & triggers ──────────────────────────────────────

class EvidenceRef(BaseModel):
    page_no: int = 1
    line_snippet: str = ""
    source: str = "VISION"


class RuleTrigger(BaseModel):
    """A single finding emitted by the rule engine or a stage gate."""
    rule_id: str
    severity: Severity
    message: str
    metrics: dict[str, Any] = Field(default_factory=dict)
    suggestion: Optional[RequiredAction] = None
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)


# ── Stage B: Gatekeeper ──────────────────────────────────────

class RequiredFieldsPresent(BaseModel):
    company_name: bool = False
    shareholder_names: bool = False
    shares_or_ratio: bool = False
    document_date: bool = False


class DocQuality(BaseModel):
    readability: str = "MEDIUM"  # HIGH, MEDIUM, LOW
    missing_pages_suspected: bool = False
    scan_artifacts: list[str] = Field(default_factory=list)


class DocumentAssessment(BaseModel):
    is_shareholder_register: bool = False
    document_type_guess: str = "UNKNOWN"
    required_fields_present: RequiredFieldsPresent = Field(default_factory=RequiredFieldsPresent)
    doc_quality: DocQuality = Field(default_factory=DocQuality)
    route_suggestion: RouteSuggestion = RouteSuggestion.HITL_TRIAGE
    rationale: str = ""
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)

    @field_validator("route_suggestion", mode="before")
    @classmethod
    def _route(cls, v):
        return _coerce_enum(RouteSuggestion, v, RouteSuggestion.HITL_TRIAGE)


# ── Stage C: Extractor ───────────────────────────────────────

class RawShareholderRecord(BaseModel):
    """One table row exactly as transcribed. Values stay text."""
    raw_name: str = ""
    raw_entity_type: Optional[str] = None
    raw_identifier: Optional[str] = None
    raw_shares: Optional[str] = None
    raw_ratio: Optional[str] = None
    raw_amount: Optional[str] = None
    raw_share_class: Optional[str] = None
    raw_remarks: Optional[str] = None
    page_no: int = 1
    row_index: int = 0
    confidence: float = 0.5

    @field_validator(
        "raw_name", "raw_entity_type", "raw_identifier", "raw_shares",
        "raw_ratio", "raw_amount", "raw_share_class", "raw_remarks",
        mode="before",
    )
    @classmethod
    def _as_text(cls, v):
        if v is None:
            return v
        return str(v)


class ExtractorDocumentInfo(BaseModel):
    company_name: Optional[str] = None
    company_registration_number: Optional[str] = None
    business_registration_number: Optional[str] = None
    document_date: Optional[str] = None
    raw_total_shares: Optional[str] = None
    raw_total_capital: Optional[str] = None
    raw_par_value: Optional[str] = None
    document_type: Optional[str] = None
    page_count: Optional[int] = None

    @field_validator("raw_total_shares", "raw_total_capital", "raw_par_value", mode="before")
    @classmethod
    def _as_text(cls, v):
        if v is None:
            return v
        return str(v)


class TableStructure(BaseModel):
    column_headers: list[str] = Field(default_factory=list)
    identifier_column_header: Optional[str] = None
    has_total_row: bool = False
    total_row_values: dict[str, Any] = Field(default_factory=dict)


class ExtractorOutput(BaseModel):
    records: list[RawShareholderRecord] = Field(default_factory=list)
    document_info: ExtractorDocumentInfo = Field(default_factory=ExtractorDocumentInfo)
    table_structure: TableStructure = Field(default_factory=TableStructure)
    extraction_notes: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


# ── Stage D: Normalizer ──────────────────────────────────────

class DocumentProperties(BaseModel):
    company_name: Optional[str] = None
    company_registration_number: Optional[str] = None
    business_registration_number: Optional[str] = None
    total_shares_issued: Optional[float] = None
    total_capital: Optional[float] = None
    par_value_per_share: Optional[float] = None
    authorized_shares: Optional[float] = None
    document_date: Optional[str] = None
    document_type: Optional[str] = None
    page_count: Optional[int] = None
    ownership_basis: OwnershipBasis = OwnershipBasis.UNKNOWN
    has_total_row: bool = False
    total_row_values: dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "total_shares_issued", "total_capital", "par_value_per_share", "authorized_shares",
        mode="before",
    )
    @classmethod
    def _numeric(cls, v):
        return to_float(v)

    @field_validator("ownership_basis", mode="before")
    @classmethod
    def _basis(cls, v):
        return _coerce_enum(OwnershipBasis, v, OwnershipBasis.UNKNOWN)


class NormalizedShareholder(BaseModel):
    name: str
    entity_type: EntityType = EntityType.UNKNOWN
    entity_type_confidence: float = 0.0
    identifier: Optional[str] = None
    identifier_type: Optional[IdentifierType] = None
    shares: Optional[float] = None
    ratio: Optional[float] = None
    amount: Optional[float] = None
    share_class: Optional[str] = None
    confidence: float = 0.5
    unknown_reasons: list[str] = Field(default_factory=list)
    normalization_notes: list[str] = Field(default_factory=list)
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)

    @field_validator("shares", "ratio", "amount", mode="before")
    @classmethod
    def _numeric(cls, v):
        return to_float(v)

    @field_validator("entity_type", mode="before")
    @classmethod
    def _entity(cls, v):
        return _coerce_enum(EntityType, v, EntityType.UNKNOWN)

    @field_validator("identifier_type", mode="before")
    @classmethod
    def _identifier_type(cls, v):
        if v is None:
            return None
        return _coerce_enum(IdentifierType, v, IdentifierType.UNKNOWN)

    @field_validator("identifier", mode="before")
    @classmethod
    def _identifier(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class NormalizedDoc(BaseModel):
    shareholders: list[NormalizedShareholder] = Field(default_factory=list)
    document_properties: DocumentProperties = Field(default_factory=DocumentProperties)
    ordering_detected: OrderingRule = OrderingRule.UNKNOWN
    ownership_basis_detected: OwnershipBasis = OwnershipBasis.UNKNOWN
    normalization_notes: list[str] = Field(default_factory=list)

    @field_validator("ordering_detected", mode="before")
    @classmethod
    def _ordering(cls, v):
        return _coerce_enum(OrderingRule, v, OrderingRule.UNKNOWN)

    @field_validator("ownership_basis_detected", mode="before")
    @classmethod
    def _basis(cls, v):
        return _coerce_enum(OwnershipBasis, v, OwnershipBasis.UNKNOWN)


# ── Stage E: Validator ───────────────────────────────────────

class SummaryMetrics(BaseModel):
    total_shareholders: int = 0
    sum_shares: Optional[float] = None
    sum_ratio: Optional[float] = None
    sum_amount: Optional[float] = None
    identifier_coverage: float = 0.0
    ratio_coverage: float = 0.0
    amount_coverage: float = 0.0
    unknown_entity_count: int = 0


class ValidationReport(BaseModel):
    status: ValidationStatus
    triggers: list[RuleTrigger] = Field(default_factory=list)
    summary_metrics: SummaryMetrics = Field(default_factory=SummaryMetrics)
    data_quality_score: int = 0
    structural_failures: list[str] = Field(default_factory=list)

    @property
    def blockers(self) -> list[RuleTrigger]:
        return [t for t in self.triggers if t.severity == Severity.BLOCKER]


# ── INSIGHTS: Analyst ────────────────────────────────────────

class UnknownAnswer(BaseModel):
    UNKNOWN: bool = True
    reason: str


class Decidability(BaseModel):
    is_decidable: bool
    reason: Optional[str] = None


class Staleness(BaseModel):
    is_stale: bool = False
    days_diff: Optional[int] = None
    threshold_days: int = 365


class Totals(BaseModel):
    total_shares_issued: Optional[float] = None
    total_capital: Optional[float] = None
    sum_ratio: Optional[float] = None
    ratio_coverage: float = 0.0


class ValidationSummary(BaseModel):
    status: ValidationStatus
    data_quality_score: int = 0
    blocker_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    decidability: Decidability


class AnswerSet(BaseModel):
    document_assessment: Optional[DocumentAssessment] = None
    over_25_percent: Union[list[NormalizedShareholder], UnknownAnswer] = Field(default_factory=list)
    ordering_rule: OrderingRule = OrderingRule.UNKNOWN
    totals: Totals = Field(default_factory=Totals)
    document_date: Optional[str] = None
    staleness: Staleness = Field(default_factory=Staleness)
    company_name: Optional[str] = None
    share_classes_found: list[str] = Field(default_factory=list)
    trust_level: TrustLevel = TrustLevel.LOW
    cannot_determine: list[str] = Field(default_factory=list)
    synthesis_reasoning: str = ""
    synthesis_confidence: float = 0.0
    validation_summary: Optional[ValidationSummary] = None


class AnalystSynthesis(BaseModel):
    """The collaborator's judgement on whether the document answers the ownership question."""
    is_decidable: bool = False
    reasoning: str = ""
    confidence: float = 0.0
    cannot_determine: list[str] = Field(default_factory=list)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _join(cls, v):
        if isinstance(v, list):
            return "\n".join(str(item) for item in v)
        return v or ""


# ── FAST: single-pass extraction ─────────────────────────────

class FastShareholder(BaseModel):
    name: str
    entity_type: Optional[str] = None
    identifier: Optional[str] = None
    shares: Optional[float] = None
    ratio: Optional[float] = None
    amount: Optional[float] = None
    share_class: Optional[str] = None
    remarks: Optional[str] = None

    @field_validator("shares", "ratio", "amount", mode="before")
    @classmethod
    def _numeric(cls, v):
        return to_float(v)

    @field_validator("identifier", "remarks", mode="before")
    @classmethod
    def _as_text(cls, v):
        if v is None:
            return v
        return str(v)


class FastDocumentInfo(BaseModel):
    company_name: Optional[str] = None
    document_date: Optional[str] = None
    total_shares_issued: Optional[float] = None
    total_capital: Optional[float] = None
    par_value_per_share: Optional[float] = None
    identifier_column_header: Optional[str] = None

    @field_validator("total_shares_issued", "total_capital", "par_value_per_share", mode="before")
    @classmethod
    def _numeric(cls, v):
        return to_float(v)


class FastExtraction(BaseModel):
    is_valid_document: bool = True
    rejection_reason: Optional[str] = None
    document_info: FastDocumentInfo = Field(default_factory=FastDocumentInfo)
    shareholders: list[FastShareholder] = Field(default_factory=list)
    ordering_detected: OrderingRule = OrderingRule.UNKNOWN
    notes: list[str] = Field(default_factory=list)

    @field_validator("ordering_detected", mode="before")
    @classmethod
    def _ordering(cls, v):
        return _coerce_enum(OrderingRule, v, OrderingRule.UNKNOWN)


# ── Runs & audit trail ───────────────────────────────────────

class FileMeta(BaseModel):
    key: str
    original_name: str
    content_type: str
    size_bytes: int


class Run(BaseModel):
    id: str
    status: RunStatus = RunStatus.PENDING
    execution_mode: ExecutionMode = ExecutionMode.MULTI_AGENT
    files: list[str] = Field(default_factory=list)
    file_metadata: list[FileMeta] = Field(default_factory=list)
    current_stage: Optional[StageName] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    storage_provider: str = "local"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StageEvent(BaseModel):
    run_id: str
    stage_name: StageName
    summary: str
    rationale: str = ""
    confidence: float = 0.0
    outputs: dict[str, Any] = Field(default_factory=dict)
    triggers: list[RuleTrigger] = Field(default_factory=list)
    next_action: NextAction = NextAction.AUTO_NEXT
    timestamp: datetime = Field(default_factory=utcnow)


# ── HITL ─────────────────────────────────────────────────────

class HITLResolution(BaseModel):
    action_taken: str
    resolved_by: str = "operator"
    notes: Optional[str] = None
    corrections: dict[str, Any] = Field(default_factory=dict)


class DocumentSnapshot(BaseModel):
    company_name: str = "UNKNOWN"
    document_date: Optional[str] = None
    shareholder_count: int = 0
    sample_names: list[str] = Field(default_factory=list)


class HITLPacket(BaseModel):
    packet_id: str
    run_id: str
    stage: StageName
    status: HITLStatus = HITLStatus.PENDING
    reason_codes: list[ReasonCode] = Field(default_factory=list)
    required_action: RequiredAction = RequiredAction.MANUAL_CORRECTION
    triggers: list[RuleTrigger] = Field(default_factory=list)
    context_data: dict[str, Any] = Field(default_factory=dict)
    document_snapshot: Optional[DocumentSnapshot] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[HITLResolution] = None


# ── Session lock ─────────────────────────────────────────────

class SessionLock(BaseModel):
    is_locked: bool = False
    current_run_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None


# ── Run log ──────────────────────────────────────────────────

class RunLogEntry(BaseModel):
    stage: Optional[StageName] = None
    level: LogLevel = LogLevel.INFO
    title: str
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class RunSummary(BaseModel):
    stages_completed: list[str] = Field(default_factory=list)
    key_findings: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class RunLog(BaseModel):
    run_id: str
    execution_mode: Optional[ExecutionMode] = None
    entries: list[RunLogEntry] = Field(default_factory=list)
    final_status: Optional[RunStatus] = None
    summary: RunSummary = Field(default_factory=RunSummary)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


# ── Event bus ────────────────────────────────────────────────

class EventMessage(BaseModel):
    type: EventType
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
