"""
tuition_sync/models/schemas.py
Pydantic schemas for the fee ledger and the catalog entities that feed it
"""
from __future__ import annotations

from enum import Enum
from typing import ClassVar, List, Optional
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel, EmailStr, Field, computed_field

from tuition_sync.sync.invariants import compute_pending, to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class InstituteType(str, Enum):
    SCHOOL = "school"
    COLLEGE = "college"
    ACADEMY = "academy"
    SHORT_COURSE = "short_course"


class CategoryType(str, Enum):
    COURSE = "course"
    TEACHER = "teacher"
    STAFF = "staff"
    STUDENT = "student"
    EXPENSE = "expense"
    INCOME = "income"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    ONLINE = "online"
    CHEQUE = "cheque"


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    PENDING_REFETCH = "pending-refetch"


class ConfirmationState(str, Enum):
    """What a view may claim about the data it renders"""
    FRESH = "fresh"              # last write came from the Ledger Service
    OPTIMISTIC = "optimistic"    # local projection, confirmation in flight
    STALE = "stale"              # confirmed once, refetch outstanding
    UNCONFIRMED = "unconfirmed"  # refetch exhausted or rejected


class OutcomeStatus(str, Enum):
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"


# ============================================
# FEE LEDGER MODELS
# ============================================

class FeeRecord(BaseModel):
    """Per-student balance. pending_fee is always derived, never stored."""
    student_id: str
    total_fee: Decimal = Decimal("0")
    paid_fee: Decimal = Decimal("0")

    model_config = {"frozen": True}

    @computed_field
    @property
    def pending_fee(self) -> Decimal:
        return compute_pending(self.total_fee, self.paid_fee)

    def with_payment(self, amount: Decimal) -> "FeeRecord":
        return self.model_copy(update={"paid_fee": self.paid_fee + to_decimal(amount)})

    def with_total(self, total_fee: Decimal) -> "FeeRecord":
        return self.model_copy(update={"total_fee": to_decimal(total_fee)})


class FeeRecordResponse(BaseModel):
    """Fee record as reported by the Ledger Service (pending is the server's own figure)"""
    student_id: str
    total_fee: Decimal
    paid_fee: Decimal
    pending_fee: Decimal

    def to_record(self) -> FeeRecord:
        return FeeRecord(
            student_id=self.student_id,
            total_fee=self.total_fee,
            paid_fee=self.paid_fee
        )


class FeePlanUpdate(BaseModel):
    total_fee: Decimal = Field(..., ge=0)


class BillingPeriod(BaseModel):
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)

    model_config = {"frozen": True}


class LedgerPolicy(BaseModel):
    """
    Named overpayment option plus the monthly de-duplication switch.

    overpayment_tolerance is a fraction of the total fee: with 0 a payment
    may never take paid_fee above total_fee, with 0.1 it may reach 110%.
    """
    overpayment_tolerance: Decimal = Field(Decimal("0"), ge=0)
    dedupe_monthly: bool = True

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, settings) -> "LedgerPolicy":
        return cls(
            overpayment_tolerance=settings.OVERPAYMENT_TOLERANCE,
            dedupe_monthly=settings.DEDUPE_MONTHLY_PAYMENTS
        )


# ============================================
# PAYMENT MODELS
# ============================================

class PaymentDraft(BaseModel):
    """Client-side transaction draft; payment_id makes RecordPayment retryable"""
    payment_id: str = Field(default_factory=lambda: uuid4().hex)
    student_id: str
    period_month: int = Field(..., ge=1, le=12)
    period_year: int = Field(..., ge=2000, le=2100)
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod
    recorded_at: datetime = Field(default_factory=utcnow)
    receipt_no: Optional[str] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None
    monthly: bool = True

    model_config = {"frozen": True}

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(month=self.period_month, year=self.period_year)


class PaymentTransaction(PaymentDraft):
    """Recorded, append-only payment"""
    transaction_no: Optional[str] = None

    model_config = {"frozen": True, "from_attributes": True}


class RecordPaymentResult(BaseModel):
    payment: PaymentTransaction
    fee_record: FeeRecordResponse


class PaymentHistory(BaseModel):
    fee_record: FeeRecordResponse
    payments: List[PaymentTransaction] = []
    total_paid: Decimal = Decimal("0")
    monthly_total: Decimal = Decimal("0")
    payment_count: int = 0
    last_payment_at: Optional[datetime] = None


# ============================================
# CATALOG MODELS
# ============================================

class CatalogEntity(BaseModel):
    """Base for entities whose id is assigned by the Ledger Service"""
    id_field: ClassVar[str] = "id"

    model_config = {"frozen": True}

    @property
    def identity(self) -> Optional[str]:
        return getattr(self, self.id_field)

    def with_identity(self, value: str) -> "CatalogEntity":
        return self.model_copy(update={self.id_field: value})


class Category(CatalogEntity):
    id_field: ClassVar[str] = "category_id"

    category_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    institute_type: InstituteType
    category_type: CategoryType = CategoryType.COURSE
    description: Optional[str] = None
    is_active: bool = True


class Course(CatalogEntity):
    id_field: ClassVar[str] = "course_id"

    course_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=150)
    institute_type: InstituteType
    category_id: Optional[str] = None
    instructor_id: Optional[str] = None
    monthly_fee: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None
    is_active: bool = True


class Staff(CatalogEntity):
    id_field: ClassVar[str] = "staff_id"

    staff_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=150)
    institute_type: InstituteType
    staff_category_id: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    is_active: bool = True


# ============================================
# EXPORTS
# ============================================

__all__ = [
    # Enums
    "InstituteType",
    "CategoryType",
    "PaymentMethod",
    "Freshness",
    "ConfirmationState",
    "OutcomeStatus",
    # Fee ledger
    "FeeRecord",
    "FeeRecordResponse",
    "FeePlanUpdate",
    "BillingPeriod",
    "LedgerPolicy",
    # Payments
    "PaymentDraft",
    "PaymentTransaction",
    "RecordPaymentResult",
    "PaymentHistory",
    # Catalog
    "CatalogEntity",
    "Category",
    "Course",
    "Staff",
    "utcnow",
]
