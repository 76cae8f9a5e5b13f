"""
tuition_sync/core/exceptions.py
Typed errors raised by the ledger engine and the Ledger Service client
"""
from enum import Enum
from typing import Any, Optional


class RejectionReason(str, Enum):
    NON_POSITIVE_AMOUNT = "non_positive_amount"
    INVALID_PERIOD = "invalid_period"
    INVALID_METHOD = "invalid_method"
    INVALID_FEE_PLAN = "invalid_fee_plan"
    UNKNOWN_STUDENT = "unknown_student"
    UNKNOWN_ENTITY = "unknown_entity"
    OVERPAYMENT = "overpayment"
    DUPLICATE_PERIOD = "duplicate_period"
    DUPLICATE_PAYMENT = "duplicate_payment"
    DUPLICATE_ENTITY = "duplicate_entity"
    TRANSPORT = "transport"
    INVARIANT = "invariant"


class LedgerError(Exception):
    """Base class for every error the ledger engine surfaces to callers"""

    default_reason: Optional[RejectionReason] = None

    def __init__(
        self,
        message: str,
        reason: Optional[RejectionReason] = None,
        prior: Any = None
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        # Projection the caller should keep displaying (unmodified)
        self.prior = prior

    def to_detail(self) -> dict:
        """Serializable form used in HTTP error bodies"""
        return {
            "reason": self.reason.value if self.reason else None,
            "message": self.message
        }


class ValidationError(LedgerError):
    """Rejected before dispatch; never sent to the Ledger Service"""


class ConflictError(LedgerError):
    """Duplicate or otherwise conflicting mutation"""

    default_reason = RejectionReason.DUPLICATE_PERIOD


class TransportError(LedgerError):
    """Timeout or connection failure talking to the Ledger Service"""

    default_reason = RejectionReason.TRANSPORT


class InvariantViolation(LedgerError):
    """A fee record (usually a Ledger Service response) breaks the ledger invariants"""

    default_reason = RejectionReason.INVARIANT

    def __init__(self, message: str, rule: str = "", record: Any = None):
        super().__init__(message)
        self.rule = rule
        self.record = record


__all__ = [
    "RejectionReason",
    "LedgerError",
    "ValidationError",
    "ConflictError",
    "TransportError",
    "InvariantViolation",
]
