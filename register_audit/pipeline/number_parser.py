"""
Numeric parser for register cells.

Handles the conventions seen in scanned shareholder registers:
- 10,000 / 10000 / 10,000주        -> 10000
- 25.5% / 25.5 %                   -> 25.5
- ₩1,000,000 / 1,000,000원 / KRW   -> 1000000
- (500) / -500 / 500-              -> -500
- "-", "—", "N/A", ""              -> None
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel


_EMPTY_MARKERS = {"", "-", "--", "---", "—", "–", "n/a", "na", "none", "null", "없음"}

# Unit suffixes and currency markers stripped before parsing
_UNIT_PATTERN = re.compile(r"(주|원|株|shares?|krw|won|%|퍼센트)", re.IGNORECASE)
_CURRENCY_CHARS = ("₩", "￦", "$", "€", chr(163))


class NumberParseResult(BaseModel):
    value: Optional[Decimal] = None
    raw_text: str
    is_negative: bool = False
    is_percent: bool = False
    unit: Optional[str] = None  # SHARES, KRW, PERCENT, NONE
    confidence: float = 0.0


def parse_number(raw: Any) -> NumberParseResult:
    """
    Parse a numeric cell value as written in a register.
    """
    if raw is None:
        return NumberParseResult(raw_text="", confidence=0.0)
    if isinstance(raw, bool):
        return NumberParseResult(raw_text=str(raw), confidence=0.0)
    if isinstance(raw, (int, float, Decimal)):
        try:
            value = Decimal(str(raw))
        except InvalidOperation:
            return NumberParseResult(raw_text=str(raw), confidence=0.0)
        if not value.is_finite():
            return NumberParseResult(raw_text=str(raw), confidence=0.0)
        return NumberParseResult(
            value=value,
            raw_text=str(raw),
            is_negative=value < 0,
            unit="NONE",
            confidence=1.0,
        )

    s = str(raw).strip()
    if s.lower() in _EMPTY_MARKERS:
        return NumberParseResult(raw_text=str(raw), confidence=0.0)

    unit = "NONE"
    lowered = s.lower()
    if "%" in s or "퍼센트" in s:
        unit = "PERCENT"
    elif "주" in s or "株" in s or "share" in lowered:
        unit = "SHARES"
    elif "원" in s or "krw" in lowered or "won" in lowered or any(c in s for c in ("₩", "￦")):
        unit = "KRW"

    for char in _CURRENCY_CHARS:
        s = s.replace(char, "")
    s = _UNIT_PATTERN.sub("", s).strip()

    if not s:
        return NumberParseResult(raw_text=str(raw), unit=unit, confidence=0.0)

    is_negative = False

    # Parentheses: (500) -> negative
    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1].strip()
        is_negative = True

    # Trailing minus: 500-
    if not is_negative and s.endswith("-"):
        s = s[:-1].strip()
        is_negative = True

    # Leading minus, including the unicode minus sign
    if not is_negative and (s.startswith("-") or s.startswith(chr(8722))):
        s = s[1:].strip()
        is_negative = True

    # Thousand separators and stray spaces
    s = s.replace(",", "").replace(" ", "")

    try:
        value = Decimal(s)
    except (InvalidOperation, ValueError):
        return NumberParseResult(raw_text=str(raw), unit=unit, confidence=0.0)

    if not value.is_finite():
        return NumberParseResult(raw_text=str(raw), unit=unit, confidence=0.0)

    if is_negative:
        value = value * Decimal("-1")

    confidence = 0.95
    if unit == "PERCENT" and abs(value) > Decimal("100"):
        confidence = 0.5  # A percentage above 100 is almost certainly misread

    return NumberParseResult(
        value=value,
        raw_text=str(raw),
        is_negative=is_negative,
        is_percent=unit == "PERCENT",
        unit=unit,
        confidence=confidence,
    )


def to_float(raw: Any) -> Optional[float]:
    """Coerce a collaborator-supplied value to float, or None when unparseable."""
    result = parse_number(raw)
    if result.value is None:
        return None
    return float(result.value)


def is_number_like(text: str) -> bool:
    """Quick check if text looks like it could be a numeric cell."""
    return parse_number(text).value is not None
