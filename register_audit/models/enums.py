"""
Python enums shared by the run records, artifacts and API schemas.
Values are persisted verbatim in the JSON store.
"""

from enum import Enum


class RunStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    HITL = "hitl"
    REJECTED = "rejected"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = {
    RunStatus.COMPLETED,
    RunStatus.REJECTED,
    RunStatus.ERROR,
    RunStatus.CANCELLED,
}


class ExecutionMode(str, Enum):
    FAST = "FAST"
    MULTI_AGENT = "MULTI_AGENT"


class StageName(str, Enum):
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    INSIGHTS = "INSIGHTS"
    FAST_EXTRACTOR = "FastExtractor"
    FAST = "FAST"


class ArtifactKind(str, Enum):
    ASSESSMENT = "assessment"
    EXTRACTOR_OUTPUT = "extractor_output"
    NORMALIZED_DOC = "normalized_doc"
    VALIDATION_REPORT = "validation_report"
    ANSWER_SET = "answer_set"


class NextAction(str, Enum):
    AUTO_NEXT = "AUTO_NEXT"
    AUTO_RETRY = "AUTO_RETRY"
    HITL = "HITL"
    REJECT = "REJECT"


class Severity(str, Enum):
    BLOCKER = "BLOCKER"
    WARNING = "WARNING"
    INFO = "INFO"


class ValidationStatus(str, Enum):
    PASS = "PASS"
    NEED_HITL = "NEED_HITL"
    REJECT = "REJECT"


class EntityType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    CORPORATE = "CORPORATE"
    UNKNOWN = "UNKNOWN"


class IdentifierType(str, Enum):
    BIRTH_DATE = "BIRTH_DATE"
    RESIDENT_ID = "RESIDENT_ID"
    BUSINESS_REG = "BUSINESS_REG"
    CORPORATE_REG = "CORPORATE_REG"
    FOREIGN_ID = "FOREIGN_ID"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


class OwnershipBasis(str, Enum):
    SHARE_COUNT = "SHARE_COUNT"
    RATIO_PERCENT = "RATIO_PERCENT"
    AMOUNT_KRW = "AMOUNT_KRW"
    AMOUNT_SHARES = "AMOUNT_SHARES"
    UNKNOWN = "UNKNOWN"


class OrderingRule(str, Enum):
    RATIO_DESC = "RATIO_DESC"
    SHARES_DESC = "SHARES_DESC"
    AMOUNT_DESC = "AMOUNT_DESC"
    UNKNOWN = "UNKNOWN"


class RouteSuggestion(str, Enum):
    EXTRACT = "EXTRACT"
    REQUEST_MORE_INPUT = "REQUEST_MORE_INPUT"
    HITL_TRIAGE = "HITL_TRIAGE"
    REJECT = "REJECT"


class TrustLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RequiredAction(str, Enum):
    RESCAN_REQUEST = "RESCAN_REQUEST"
    MISSING_PAGES_REQUEST = "MISSING_PAGES_REQUEST"
    MANUAL_CORRECTION = "MANUAL_CORRECTION"
    DOCUMENT_CLASSIFICATION = "DOCUMENT_CLASSIFICATION"
    REFERENCE_VALUE_INPUT = "REFERENCE_VALUE_INPUT"
    ENTITY_TYPE_CLARIFICATION = "ENTITY_TYPE_CLARIFICATION"


class HITLStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class ReasonCode(str, Enum):
    MISSING_REQUIRED_FIELD_OR_PARSE_FAILURE = "MISSING_REQUIRED_FIELD_OR_PARSE_FAILURE"
    TOTAL_SHARES_MISMATCH = "TOTAL_SHARES_MISMATCH"
    AMOUNT_INCONSISTENCY = "AMOUNT_INCONSISTENCY"
    RATIO_INCONSISTENCY = "RATIO_INCONSISTENCY"
    NAME_CORRECTION_DETECTED = "NAME_CORRECTION_DETECTED"
    IDENTIFIER_MISMATCH_OR_MISSING = "IDENTIFIER_MISMATCH_OR_MISSING"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"
    METADATA_MISSING = "METADATA_MISSING"
    STALE_DOCUMENT = "STALE_DOCUMENT"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    DOCUMENT_CLASSIFICATION_NEEDED = "DOCUMENT_CLASSIFICATION_NEEDED"


class EventType(str, Enum):
    STAGE_EVENT = "stage_event"
    HITL_REQUIRED = "hitl_required"
    FINAL_ANSWER = "final_answer"
    ERROR = "error"
    COMPLETED = "completed"


class LogLevel(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
