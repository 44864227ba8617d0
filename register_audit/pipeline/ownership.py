"""
Ownership ratio calculator.

Resolves each shareholder's effective ratio by priority:
1. a ratio already declared on the register
2. shares / reference total shares * 100
3. amount / reference total capital * 100
4. None

A reference total is the declared total when positive. Otherwise it is the
sum over shareholders, but only when every shareholder carries that value:
a partial list would produce a biased denominator.
"""

from typing import Optional

from register_audit.schemas.contracts import DocumentProperties, NormalizedShareholder


def reference_total(declared: Optional[float], values: list[Optional[float]]) -> Optional[float]:
    """Declared total if > 0, else the complete-list sum, else None."""
    if declared is not None and declared > 0:
        return declared
    if not values or any(v is None for v in values):
        return None
    total = sum(values)
    return total if total > 0 else None


def effective_ratios(
    shareholders: list[NormalizedShareholder],
    document_properties: DocumentProperties,
) -> list[NormalizedShareholder]:
    """Return copies of the shareholders with ratio filled where it can be derived."""
    ref_shares = reference_total(
        document_properties.total_shares_issued,
        [s.shares for s in shareholders],
    )
    ref_amount = reference_total(
        document_properties.total_capital,
        [s.amount for s in shareholders],
    )

    resolved = []
    for holder in shareholders:
        ratio = holder.ratio
        if ratio is None and holder.shares is not None and ref_shares:
            ratio = holder.shares / ref_shares * 100
        elif ratio is None and holder.amount is not None and ref_amount:
            ratio = holder.amount / ref_amount * 100
        resolved.append(holder.model_copy(update={"ratio": ratio}))
    return resolved


def ratio_coverage(shareholders: list[NormalizedShareholder]) -> float:
    if not shareholders:
        return 0.0
    return sum(1 for s in shareholders if s.ratio is not None) / len(shareholders)


def select_beneficial_owners(
    shareholders: list[NormalizedShareholder],
    threshold: float = 25.0,
) -> list[NormalizedShareholder]:
    """
    Holders at or above the threshold, highest first.
    When nobody reaches it, the single largest holder with a positive ratio
    is reported instead. Empty when no holder has a positive ratio.
    """
    with_ratio = [s for s in shareholders if s.ratio is not None]
    ranked = sorted(with_ratio, key=lambda s: s.ratio, reverse=True)

    over = [s for s in ranked if s.ratio >= threshold]
    if over:
        return over

    if ranked and ranked[0].ratio > 0:
        return [ranked[0]]
    return []
