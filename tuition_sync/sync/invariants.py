"""
tuition_sync/sync/invariants.py
Fee Ledger invariant checker

A fee record is consistent when, checked in this order:

1. total_fee >= 0
2. paid_fee >= 0
3. paid_fee <= total_fee * (1 + overpayment tolerance)
4. pending_fee == max(0, total_fee - paid_fee)

The same checks guard a payment before it is committed and every fee
record the Ledger Service sends back after a refetch.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from tuition_sync.core.exceptions import InvariantViolation

ZERO = Decimal("0")


@dataclass(frozen=True)
class Violation:
    rule: str
    message: str


def to_decimal(value: Any) -> Decimal:
    """Coerce ints, strings and floats to Decimal without binary float noise"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def compute_pending(total_fee: Any, paid_fee: Any) -> Decimal:
    """pending = max(0, total - paid). The only place pending is derived."""
    return max(ZERO, to_decimal(total_fee) - to_decimal(paid_fee))


def overpayment_ceiling(total_fee: Any, tolerance: Any = ZERO) -> Decimal:
    return to_decimal(total_fee) * (1 + to_decimal(tolerance))


def validate(record: Any, tolerance: Any = ZERO) -> Optional[Violation]:
    """
    Check a fee record against the ledger invariants

    Args:
        record: Any object exposing total_fee, paid_fee and pending_fee
        tolerance: Allowed overpayment as a fraction of total_fee

    Returns:
        Violation: The first broken rule, or None when the record is consistent
    """
    total = to_decimal(record.total_fee)
    paid = to_decimal(record.paid_fee)

    if total < ZERO:
        return Violation("total_fee_non_negative", f"total_fee is negative ({total})")
    if paid < ZERO:
        return Violation("paid_fee_non_negative", f"paid_fee is negative ({paid})")

    ceiling = overpayment_ceiling(total, tolerance)
    if paid > ceiling:
        return Violation(
            "overpayment",
            f"paid_fee {paid} exceeds total_fee {total} beyond tolerance (ceiling {ceiling})"
        )

    expected = compute_pending(total, paid)
    reported = to_decimal(record.pending_fee)
    if reported != expected:
        return Violation(
            "pending_fee_derived",
            f"pending_fee {reported} does not match max(0, {total} - {paid}) = {expected}"
        )

    return None


def ensure_valid(record: Any, tolerance: Any = ZERO) -> Any:
    """Raise InvariantViolation unless the record passes validate()"""
    violation = validate(record, tolerance)
    if violation is not None:
        raise InvariantViolation(violation.message, rule=violation.rule, record=record)
    return record


__all__ = [
    "Violation",
    "to_decimal",
    "compute_pending",
    "overpayment_ceiling",
    "validate",
    "ensure_valid",
]
