"""
Identifier classification and birth-date canonicalisation.

Registers put very different things in the identifier column: resident
numbers, business/corporate registration numbers, or plain birth dates in
several layouts. The normalizer's guess is refined here from the shape of
the value, the holder's entity type and the column header.
"""

import re
from datetime import date
from typing import Optional

from register_audit.models.enums import EntityType, IdentifierType
from register_audit.schemas.contracts import NormalizedShareholder

BUSINESS_REG_PATTERN = re.compile(r"^\d{3}-?\d{2}-?\d{5}$")
THIRTEEN_DIGIT_PATTERN = re.compile(r"^\d{6}-?\d{7}$")
BIRTH_DATE_PATTERNS = [
    re.compile(r"^\d{4}[-./년]\s?\d{1,2}[-./월]\s?\d{1,2}일?$"),
    re.compile(r"^\d{2}[-./]\d{1,2}[-./]\d{1,2}$"),
    re.compile(r"^\d{6}$"),
    re.compile(r"^\d{8}$"),
]

CORPORATE_HEADER_MARKERS = ("법인", "사업자", "corporate", "business", "company")
RESIDENT_HEADER_MARKERS = ("주민", "resident")

# Types whose digits are an id number, never a date
_NUMBER_TYPES = {
    IdentifierType.RESIDENT_ID,
    IdentifierType.BUSINESS_REG,
    IdentifierType.CORPORATE_REG,
}

_SEPARATED_DATE = re.compile(r"^(\d{4}|\d{2})\s?[-./년]\s?(\d{1,2})\s?[-./월]\s?(\d{1,2})\s?일?$")


def detect_identifier_type(
    identifier: Optional[str],
    entity_type: EntityType = EntityType.UNKNOWN,
    column_header: Optional[str] = None,
) -> IdentifierType:
    """Classify an identifier from its shape, entity type and column header."""
    if not identifier or not identifier.strip():
        return IdentifierType.UNKNOWN

    value = identifier.strip()
    compact = re.sub(r"\s", "", value)

    if BUSINESS_REG_PATTERN.match(compact):
        return IdentifierType.BUSINESS_REG

    if THIRTEEN_DIGIT_PATTERN.match(compact):
        header = (column_header or "").lower()
        if any(marker in header for marker in CORPORATE_HEADER_MARKERS):
            return IdentifierType.CORPORATE_REG
        if any(marker in header for marker in RESIDENT_HEADER_MARKERS):
            return IdentifierType.RESIDENT_ID
        if entity_type == EntityType.CORPORATE:
            return IdentifierType.CORPORATE_REG
        if entity_type == EntityType.INDIVIDUAL:
            return IdentifierType.RESIDENT_ID
        return IdentifierType.UNKNOWN

    if any(p.match(value) for p in BIRTH_DATE_PATTERNS):
        return IdentifierType.BIRTH_DATE

    return IdentifierType.OTHER


def _century(yy: int, today: date) -> int:
    return 2000 + yy if 2000 + yy <= today.year else 1900 + yy


def canonical_birth_date(identifier: str, today: Optional[date] = None) -> Optional[str]:
    """
    Convert a birth-date-looking identifier to YYYY-MM-DD.
    8 digits are read as YYYYMMDD; 6 digits as YYMMDD, placed in the 2000s
    unless that lands in the future, then the 1900s.
    """
    today = today or date.today()
    value = identifier.strip()

    m = _SEPARATED_DATE.match(value)
    if m:
        year_text, month, day = m.group(1), int(m.group(2)), int(m.group(3))
        year = int(year_text) if len(year_text) == 4 else _century(int(year_text), today)
    else:
        digits = re.sub(r"\D", "", value)
        if len(digits) == 8:
            year, month, day = int(digits[:4]), int(digits[4:6]), int(digits[6:8])
        elif len(digits) == 6:
            year = _century(int(digits[:2]), today)
            month, day = int(digits[2:4]), int(digits[4:6])
        else:
            return None

    if not 1 <= month <= 12 or not 1 <= day <= 31:
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def looks_like_birth_date(identifier: str) -> bool:
    value = identifier.strip()
    return any(p.match(value) for p in BIRTH_DATE_PATTERNS)


def assign_identifier_types(
    shareholders: list[NormalizedShareholder],
    column_header: Optional[str] = None,
) -> list[NormalizedShareholder]:
    """Fill identifier_type where the normalizer left it empty or UNKNOWN."""
    result = []
    for holder in shareholders:
        if holder.identifier and holder.identifier_type in (None, IdentifierType.UNKNOWN):
            detected = detect_identifier_type(holder.identifier, holder.entity_type, column_header)
            holder = holder.model_copy(update={"identifier_type": detected})
        result.append(holder)
    return result


def refine_birth_dates(
    shareholders: list[NormalizedShareholder],
    today: Optional[date] = None,
) -> list[NormalizedShareholder]:
    """
    Rewrite date-shaped identifiers as YYYY-MM-DD and mark them BIRTH_DATE.
    A birth date implies a natural person, so UNKNOWN entities become
    INDIVIDUAL. Every inference is recorded in unknown_reasons.
    """
    result = []
    for holder in shareholders:
        if not holder.identifier or holder.identifier_type in _NUMBER_TYPES:
            result.append(holder)
            continue
        if holder.identifier_type != IdentifierType.BIRTH_DATE and not looks_like_birth_date(holder.identifier):
            result.append(holder)
            continue

        canonical = canonical_birth_date(holder.identifier, today)
        if canonical is None:
            result.append(holder)
            continue

        reasons = list(holder.unknown_reasons)
        update = {"identifier": canonical, "identifier_type": IdentifierType.BIRTH_DATE}
        if canonical != holder.identifier:
            reasons.append(f"identifier '{holder.identifier}' read as birth date {canonical}")
        if holder.entity_type == EntityType.UNKNOWN:
            update["entity_type"] = EntityType.INDIVIDUAL
            reasons.append("entity type inferred as INDIVIDUAL from birth date identifier")
        update["unknown_reasons"] = reasons
        result.append(holder.model_copy(update=update))
    return result
