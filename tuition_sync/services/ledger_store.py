"""
tuition_sync/services/ledger_store.py
Ledger Service implementation backed by Supabase

Tables:
    students      student_id, name, email, total_fee, paid_fee, pending_fee
    fee_payments  one append-only row per PaymentTransaction
    categories / courses / staff   catalog rows keyed by their *_id column
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type, TypeVar
from uuid import uuid4
import logging

from tuition_sync.core.config import settings
from tuition_sync.core.exceptions import ConflictError, RejectionReason, ValidationError
from tuition_sync.db.supabase import StorageError
from tuition_sync.models.schemas import (
    Category, CatalogEntity, CategoryType, Course, FeeRecord, FeeRecordResponse, LedgerPolicy,
    PaymentDraft, PaymentHistory, PaymentTransaction, RecordPaymentResult, Staff
)
from tuition_sync.services.ledger_client import LedgerService
from tuition_sync.sync.invariants import ZERO, overpayment_ceiling, to_decimal, validate

logger = logging.getLogger(__name__)

STUDENTS_TABLE = "students"
PAYMENTS_TABLE = "fee_payments"
CATEGORIES_TABLE = "categories"
COURSES_TABLE = "courses"
STAFF_TABLE = "staff"

TXN_NUMBER_ATTEMPTS = 3

EntityT = TypeVar("EntityT", bound=CatalogEntity)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _response(record: FeeRecord) -> FeeRecordResponse:
    return FeeRecordResponse(
        student_id=record.student_id,
        total_fee=record.total_fee,
        paid_fee=record.paid_fee,
        pending_fee=record.pending_fee
    )


class LedgerStore(LedgerService):
    """
    Authoritative fee ledger

    Args:
        db: SupabaseQueries (or anything with the same async methods)
        policy: Overpayment tolerance and monthly de-duplication
        email_service: Receipt sender; None disables receipts
        duplicate_window_seconds: Window in which an identical payment is rejected
    """

    def __init__(
        self,
        db,
        policy: Optional[LedgerPolicy] = None,
        email_service=None,
        duplicate_window_seconds: Optional[int] = None
    ):
        self.db = db
        self.policy = policy or LedgerPolicy.from_settings(settings)
        self.email_service = email_service
        self.duplicate_window = timedelta(
            seconds=settings.DUPLICATE_WINDOW_SECONDS if duplicate_window_seconds is None else duplicate_window_seconds
        )

    # ============================================
    # FEE RECORDS
    # ============================================

    async def _student(self, student_id: str) -> Dict[str, Any]:
        student = await self.db.select_by_id(STUDENTS_TABLE, "student_id", student_id)
        if not student:
            raise ValidationError(f"Student {student_id} not found", reason=RejectionReason.UNKNOWN_STUDENT)
        return student

    @staticmethod
    def _fee_record(student: Dict[str, Any]) -> FeeRecord:
        return FeeRecord(
            student_id=str(student["student_id"]),
            total_fee=to_decimal(student.get("total_fee") or 0),
            paid_fee=to_decimal(student.get("paid_fee") or 0)
        )

    async def get_fee_record(self, student_id: str) -> FeeRecordResponse:
        return _response(self._fee_record(await self._student(student_id)))

    async def update_fee_plan(self, student_id: str, total_fee: Decimal) -> FeeRecordResponse:
        record = self._fee_record(await self._student(student_id))
        try:
            total = to_decimal(total_fee)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Invalid total fee: {total_fee!r}", reason=RejectionReason.INVALID_FEE_PLAN)
        if not total.is_finite() or total < ZERO:
            raise ValidationError(f"Total fee must be >= 0, got {total}", reason=RejectionReason.INVALID_FEE_PLAN)

        projected = record.with_total(total)
        if validate(projected, self.policy.overpayment_tolerance) is not None:
            raise ValidationError(
                f"Total fee {total} is below the {record.paid_fee} already paid",
                reason=RejectionReason.INVALID_FEE_PLAN
            )

        await self.db.update_by_id(STUDENTS_TABLE, "student_id", student_id, {
            "total_fee": str(projected.total_fee),
            "pending_fee": str(projected.pending_fee)
        })
        logger.info(f"Fee plan for {student_id} set to {projected.total_fee}")
        return _response(projected)

    # ============================================
    # PAYMENTS
    # ============================================

    async def record_payment(self, draft: PaymentDraft) -> RecordPaymentResult:
        """
        Append one payment and update the student's balance

        Replaying a payment_id that is already stored returns the stored
        transaction and the current balance without writing anything.

        Raises:
            ValidationError: Unknown student or overpayment
            ConflictError: Period already paid (monthly flow) or identical
                payment inside the duplicate window
        """
        existing = await self.db.select_one(PAYMENTS_TABLE, {"payment_id": draft.payment_id})
        if existing:
            logger.info(f"Payment {draft.payment_id} already recorded; replaying stored result")
            return RecordPaymentResult(
                payment=PaymentTransaction.model_validate(existing),
                fee_record=await self.get_fee_record(existing["student_id"])
            )

        student = await self._student(draft.student_id)
        record = self._fee_record(student)

        if draft.monthly and self.policy.dedupe_monthly:
            await self._reject_paid_period(draft)
        await self._reject_duplicate(draft)

        projected = record.with_payment(draft.amount)
        violation = validate(projected, self.policy.overpayment_tolerance)
        if violation is not None:
            ceiling = overpayment_ceiling(record.total_fee, self.policy.overpayment_tolerance)
            raise ValidationError(
                f"Payment would raise paid fee to {projected.paid_fee}, above the allowed {ceiling}",
                reason=RejectionReason.OVERPAYMENT if violation.rule == "overpayment" else RejectionReason.INVALID_FEE_PLAN
            )

        transaction = await self._insert_numbered(draft)
        if transaction is None:
            # A concurrent request with the same payment_id got there first
            return await self.record_payment(draft)

        await self.db.update_by_id(STUDENTS_TABLE, "student_id", draft.student_id, {
            "paid_fee": str(projected.paid_fee),
            "pending_fee": str(projected.pending_fee)
        })
        logger.info(
            f"Recorded {transaction.transaction_no}: {draft.amount} from {draft.student_id} "
            f"for {draft.period_month:02d}/{draft.period_year}"
        )

        fee_record = _response(projected)
        if self.email_service and student.get("email"):
            await self.email_service.send_payment_receipt(
                to_email=student["email"],
                name=student.get("name") or "Student",
                payment=transaction,
                fee_record=fee_record
            )

        return RecordPaymentResult(payment=transaction, fee_record=fee_record)

    async def _insert_numbered(self, draft: PaymentDraft) -> Optional[PaymentTransaction]:
        """
        Insert the payment under the next free TXN number

        transaction_no and payment_id are unique columns. A number taken by a
        concurrent writer is retried with a fresh count; a taken payment_id
        returns None so the caller replays the stored payment.
        """
        for attempt in range(TXN_NUMBER_ATTEMPTS):
            sequence = await self.db.count(PAYMENTS_TABLE) + 1 + attempt
            transaction = PaymentTransaction(**draft.model_dump(), transaction_no=f"TXN-{sequence:06d}")
            try:
                await self.db.insert_one(PAYMENTS_TABLE, transaction.model_dump(mode="json"))
                return transaction
            except StorageError as e:
                if not e.unique_violation:
                    raise
                if await self.db.select_one(PAYMENTS_TABLE, {"payment_id": draft.payment_id}):
                    return None
                if attempt == TXN_NUMBER_ATTEMPTS - 1:
                    raise
                logger.warning(f"{transaction.transaction_no} already taken; renumbering payment {draft.payment_id}")

    async def _reject_paid_period(self, draft: PaymentDraft) -> None:
        rows = await self.db.select_all(PAYMENTS_TABLE, {
            "student_id": draft.student_id,
            "period_month": draft.period_month,
            "period_year": draft.period_year,
            "monthly": True
        })
        if rows:
            raise ConflictError(
                f"Payment for {draft.period_month:02d}/{draft.period_year} already recorded "
                f"({rows[0].get('transaction_no') or rows[0].get('payment_id')})",
                reason=RejectionReason.DUPLICATE_PERIOD
            )

    async def _reject_duplicate(self, draft: PaymentDraft) -> None:
        if self.duplicate_window.total_seconds() <= 0:
            return
        rows = await self.db.select_all(PAYMENTS_TABLE, {
            "student_id": draft.student_id,
            "period_month": draft.period_month,
            "period_year": draft.period_year,
            "method": draft.method
        })
        recorded_at = _aware(draft.recorded_at)
        for row in rows:
            payment = PaymentTransaction.model_validate(row)
            if payment.amount != draft.amount or payment.receipt_no != draft.receipt_no:
                continue
            if abs(recorded_at - _aware(payment.recorded_at)) <= self.duplicate_window:
                raise ConflictError(
                    f"Identical payment {payment.transaction_no or payment.payment_id} recorded "
                    f"within the last {int(self.duplicate_window.total_seconds())}s",
                    reason=RejectionReason.DUPLICATE_PAYMENT
                )

    async def list_payments(
        self,
        student_id: Optional[str] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[PaymentTransaction]:
        """Newest first; start_date and end_date bound recorded_at (UTC days, inclusive)"""
        between = None
        if start_date or end_date:
            between = {"recorded_at": (
                start_date.isoformat() if start_date else None,
                (end_date + timedelta(days=1)).isoformat() if end_date else None
            )}
        rows = await self.db.select_all(
            PAYMENTS_TABLE,
            {"student_id": student_id, "period_month": month, "period_year": year},
            order_by="recorded_at",
            ascending=False,
            between=between
        )
        return [PaymentTransaction.model_validate(row) for row in rows]

    async def get_payment_history(self, student_id: str) -> PaymentHistory:
        fee_record = await self.get_fee_record(student_id)
        payments = await self.list_payments(student_id=student_id)
        return PaymentHistory(
            fee_record=fee_record,
            payments=payments,
            total_paid=sum((p.amount for p in payments), ZERO),
            monthly_total=sum((p.amount for p in payments if p.monthly), ZERO),
            payment_count=len(payments),
            last_payment_at=max((p.recorded_at for p in payments), default=None)
        )

    # ============================================
    # CATALOG
    # ============================================

    async def _require(self, table: str, id_column: str, value: Optional[str], label: str) -> Optional[Dict[str, Any]]:
        if not value:
            return None
        row = await self.db.select_by_id(table, id_column, value)
        if not row:
            raise ValidationError(f"{label} {value} not found", reason=RejectionReason.UNKNOWN_ENTITY)
        return row

    async def _upsert(self, table: str, entity: EntityT, model: Type[EntityT]) -> EntityT:
        id_column = model.id_field
        data = entity.model_dump(mode="json", exclude={id_column})

        if entity.identity is None:
            data[id_column] = str(uuid4())
            row = await self.db.insert_one(table, data)
            logger.info(f"Created {table} row {data[id_column]}")
        else:
            await self._require(table, id_column, entity.identity, model.__name__)
            row = await self.db.update_by_id(table, id_column, entity.identity, data)

        if not row:
            raise StorageError(f"Failed to write {table} row")
        return model.model_validate(row)

    async def upsert_category(self, category: Category) -> Category:
        siblings = await self.db.select_all(CATEGORIES_TABLE, {
            "institute_type": category.institute_type,
            "category_type": category.category_type
        })
        for row in siblings:
            if row.get("category_id") != category.category_id and str(row.get("name", "")).lower() == category.name.lower():
                raise ConflictError(
                    f"Category '{category.name}' already exists for {category.institute_type.value}",
                    reason=RejectionReason.DUPLICATE_ENTITY
                )
        return await self._upsert(CATEGORIES_TABLE, category, Category)

    async def upsert_course(self, course: Course) -> Course:
        await self._require(CATEGORIES_TABLE, "category_id", course.category_id, "Category")
        await self._require(STAFF_TABLE, "staff_id", course.instructor_id, "Instructor")
        return await self._upsert(COURSES_TABLE, course, Course)

    async def upsert_staff(self, staff: Staff) -> Staff:
        category = await self._require(CATEGORIES_TABLE, "category_id", staff.staff_category_id, "Staff category")
        if category and category.get("category_type") != CategoryType.STAFF.value:
            raise ValidationError(
                f"Category {staff.staff_category_id} is not a staff category",
                reason=RejectionReason.UNKNOWN_ENTITY
            )
        return await self._upsert(STAFF_TABLE, staff, Staff)

    async def list_categories(self, institute_type=None, category_type=None) -> List[Category]:
        rows = await self.db.select_all(
            CATEGORIES_TABLE,
            {"institute_type": institute_type, "category_type": category_type},
            order_by="name"
        )
        return [Category.model_validate(row) for row in rows]

    async def list_courses(self, institute_type=None, category_id=None) -> List[Course]:
        rows = await self.db.select_all(
            COURSES_TABLE,
            {"institute_type": institute_type, "category_id": category_id},
            order_by="name"
        )
        return [Course.model_validate(row) for row in rows]

    async def list_staff(self, institute_type=None) -> List[Staff]:
        rows = await self.db.select_all(STAFF_TABLE, {"institute_type": institute_type}, order_by="name")
        return [Staff.model_validate(row) for row in rows]


__all__ = ["LedgerStore"]
