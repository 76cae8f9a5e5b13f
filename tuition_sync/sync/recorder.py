"""
tuition_sync/sync/recorder.py
Payment Recorder: local validation and projection of proposed payments
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as SchemaError

from tuition_sync.core.exceptions import ConflictError, RejectionReason, ValidationError
from tuition_sync.models.schemas import (
    BillingPeriod, FeeRecord, LedgerPolicy, PaymentDraft, PaymentMethod, PaymentTransaction
)
from tuition_sync.sync.cache import ViewCache
from tuition_sync.sync.invariants import ZERO, overpayment_ceiling, to_decimal, validate
from tuition_sync.sync.queries import PAYMENTS, fee_record_query

PeriodLike = Union[BillingPeriod, Tuple[int, int], Mapping[str, int]]

METADATA_FIELDS = ("receipt_no", "collected_by", "notes", "recorded_at", "payment_id")


@dataclass(frozen=True)
class ProposedPayment:
    draft: PaymentDraft
    prior: FeeRecord
    projected: FeeRecord


@dataclass(frozen=True)
class ProposedFeePlan:
    student_id: str
    total_fee: Decimal
    prior: FeeRecord
    projected: FeeRecord


class PaymentRecorder:
    """
    Validates payments against the cached ledger snapshot

    Nothing here contacts the Ledger Service or writes to the cache; the
    result is handed to the Reconciliation Scheduler for commit.
    """

    def __init__(self, cache: ViewCache, policy: Optional[LedgerPolicy] = None):
        self.cache = cache
        self.policy = policy or LedgerPolicy()

    def current_record(self, student_id: str) -> Optional[FeeRecord]:
        snapshot = self.cache.read(fee_record_query(student_id))
        return snapshot.payload if snapshot is not None else None

    def propose(
        self,
        student_id: str,
        amount: Any,
        period: PeriodLike,
        method: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        monthly: bool = True
    ) -> ProposedPayment:
        """
        Validate a payment and project its effect on the student's fee record

        Args:
            student_id: Student paying
            amount: Positive amount (Decimal, int or numeric string)
            period: BillingPeriod, (month, year) tuple or {"month", "year"} mapping
            method: PaymentMethod or its value
            metadata: Optional receipt_no, collected_by, notes, recorded_at, payment_id
            monthly: True for the monthly-recording flow (one payment per period)

        Returns:
            ProposedPayment: Transaction draft plus prior and projected fee records

        Raises:
            ValidationError: Bad amount, period or method, unknown student, overpayment
            ConflictError: The period already has a monthly payment in cached data
        """
        prior = self.current_record(student_id)
        if prior is None:
            raise ValidationError(
                f"No fee record loaded for student {student_id}",
                reason=RejectionReason.UNKNOWN_STUDENT
            )

        value = self._coerce_amount(amount, prior)
        billing_period = self._coerce_period(period, prior)
        payment_method = self._coerce_method(method, prior)

        if monthly and self.policy.dedupe_monthly:
            existing = self._find_monthly_payment(student_id, billing_period)
            if existing is not None:
                raise ConflictError(
                    f"Payment for {billing_period.month:02d}/{billing_period.year} already recorded "
                    f"({existing.payment_id})",
                    reason=RejectionReason.DUPLICATE_PERIOD,
                    prior=prior
                )

        projected = prior.with_payment(value)
        self._check_projection(projected, prior)

        extra = {key: item for key, item in (metadata or {}).items() if key in METADATA_FIELDS and item is not None}
        draft = PaymentDraft(
            student_id=student_id,
            period_month=billing_period.month,
            period_year=billing_period.year,
            amount=value,
            method=payment_method,
            monthly=monthly,
            **extra
        )
        return ProposedPayment(draft=draft, prior=prior, projected=projected)

    def propose_fee_plan(self, student_id: str, total_fee: Any) -> ProposedFeePlan:
        """Validate an explicit fee-plan edit (changes total_fee only)"""
        prior = self.current_record(student_id)
        if prior is None:
            raise ValidationError(
                f"No fee record loaded for student {student_id}",
                reason=RejectionReason.UNKNOWN_STUDENT
            )
        try:
            total = to_decimal(total_fee)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Invalid total fee: {total_fee!r}", reason=RejectionReason.INVALID_FEE_PLAN, prior=prior)
        if not total.is_finite() or total < ZERO:
            raise ValidationError(f"Total fee must be >= 0, got {total}", reason=RejectionReason.INVALID_FEE_PLAN, prior=prior)

        projected = prior.with_total(total)
        if validate(projected, self.policy.overpayment_tolerance) is not None:
            raise ValidationError(
                f"Total fee {total} is below the {prior.paid_fee} already paid",
                reason=RejectionReason.INVALID_FEE_PLAN,
                prior=prior
            )
        return ProposedFeePlan(student_id=student_id, total_fee=total, prior=prior, projected=projected)

    # ============================================
    # HELPERS
    # ============================================

    def _coerce_amount(self, amount: Any, prior: FeeRecord) -> Decimal:
        try:
            value = to_decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Invalid amount: {amount!r}", reason=RejectionReason.NON_POSITIVE_AMOUNT, prior=prior)
        if not value.is_finite() or value <= ZERO:
            raise ValidationError(f"Amount must be greater than 0, got {value}", reason=RejectionReason.NON_POSITIVE_AMOUNT, prior=prior)
        return value

    def _coerce_period(self, period: PeriodLike, prior: FeeRecord) -> BillingPeriod:
        if isinstance(period, BillingPeriod):
            return period
        try:
            if isinstance(period, Mapping):
                return BillingPeriod(**period)
            month, year = period
            return BillingPeriod(month=month, year=year)
        except (SchemaError, TypeError, ValueError):
            raise ValidationError(f"Invalid billing period: {period!r}", reason=RejectionReason.INVALID_PERIOD, prior=prior)

    def _coerce_method(self, method: Any, prior: FeeRecord) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Invalid payment method: {method!r}", reason=RejectionReason.INVALID_METHOD, prior=prior)

    def _check_projection(self, projected: FeeRecord, prior: FeeRecord) -> None:
        violation = validate(projected, self.policy.overpayment_tolerance)
        if violation is None:
            return
        if violation.rule == "overpayment":
            ceiling = overpayment_ceiling(prior.total_fee, self.policy.overpayment_tolerance)
            raise ValidationError(
                f"Payment would raise paid fee to {projected.paid_fee}, above the allowed {ceiling}",
                reason=RejectionReason.OVERPAYMENT,
                prior=prior
            )
        raise ValidationError(violation.message, reason=RejectionReason.INVALID_FEE_PLAN, prior=prior)

    def _find_monthly_payment(self, student_id: str, period: BillingPeriod) -> Optional[PaymentTransaction]:
        for payment in self._cached_payments():
            if (
                payment.student_id == student_id
                and payment.monthly
                and payment.period_month == period.month
                and payment.period_year == period.year
            ):
                return payment
        return None

    def _cached_payments(self) -> Iterable[PaymentTransaction]:
        for signature in self.cache.signatures(PAYMENTS):
            snapshot = self.cache.read(signature)
            if snapshot is not None:
                yield from snapshot.payload or []


__all__ = ["ProposedPayment", "ProposedFeePlan", "PaymentRecorder"]
