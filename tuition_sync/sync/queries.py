"""
tuition_sync/sync/queries.py
Query signatures, their Ledger Service fetchers and post-fetch validators
"""
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from tuition_sync.models.schemas import FeeRecord, FeeRecordResponse, LedgerPolicy
from tuition_sync.sync.cache import QuerySignature
from tuition_sync.sync.invariants import ensure_valid

FEE_RECORD = "fee_record"
PAYMENTS = "payments"
CATEGORIES = "categories"
COURSES = "courses"
STAFF = "staff"

Fetcher = Callable[[Any, QuerySignature], Awaitable[Any]]


# ============================================
# SIGNATURES
# ============================================

def fee_record_query(student_id: str) -> QuerySignature:
    return QuerySignature.of(FEE_RECORD, student_id=student_id)


def payments_query(
    student_id: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None
) -> QuerySignature:
    """Payments list; start_date and end_date bound recorded_at, both days inclusive"""
    return QuerySignature.of(
        PAYMENTS, student_id=student_id, month=month, year=year, start_date=start_date, end_date=end_date
    )


def recorded_within(signature: QuerySignature, recorded_at: datetime) -> bool:
    day = recorded_at.date()
    start, end = signature.param("start_date"), signature.param("end_date")
    return (start is None or day >= start) and (end is None or day <= end)


def categories_query(institute_type: Optional[str] = None, category_type: Optional[str] = None) -> QuerySignature:
    return QuerySignature.of(CATEGORIES, institute_type=institute_type, category_type=category_type)


def courses_query(institute_type: Optional[str] = None, category_id: Optional[str] = None) -> QuerySignature:
    return QuerySignature.of(COURSES, institute_type=institute_type, category_id=category_id)


def staff_query(institute_type: Optional[str] = None) -> QuerySignature:
    return QuerySignature.of(STAFF, institute_type=institute_type)


# ============================================
# FETCHERS
# ============================================

async def _fetch_fee_record(ledger, signature: QuerySignature) -> FeeRecordResponse:
    return await ledger.get_fee_record(signature.param("student_id"))


async def _fetch_payments(ledger, signature: QuerySignature):
    return await ledger.list_payments(
        student_id=signature.param("student_id"),
        month=signature.param("month"),
        year=signature.param("year"),
        start_date=signature.param("start_date"),
        end_date=signature.param("end_date")
    )


async def _fetch_categories(ledger, signature: QuerySignature):
    return await ledger.list_categories(**signature.filters)


async def _fetch_courses(ledger, signature: QuerySignature):
    return await ledger.list_courses(**signature.filters)


async def _fetch_staff(ledger, signature: QuerySignature):
    return await ledger.list_staff(**signature.filters)


FETCHERS: Dict[str, Fetcher] = {
    FEE_RECORD: _fetch_fee_record,
    PAYMENTS: _fetch_payments,
    CATEGORIES: _fetch_categories,
    COURSES: _fetch_courses,
    STAFF: _fetch_staff,
}


async def fetch(ledger, signature: QuerySignature) -> Any:
    """Run the authoritative read for a signature against the Ledger Service"""
    try:
        fetcher = FETCHERS[signature.entity]
    except KeyError:
        raise ValueError(f"No fetcher registered for entity '{signature.entity}'")
    return await fetcher(ledger, signature)


# ============================================
# VALIDATORS
# ============================================

def fee_record_validator(policy: LedgerPolicy) -> Callable[[Any], FeeRecord]:
    """Check a Ledger Service fee record and convert it to the derived-pending form"""

    def validate_fee_record(payload: Any) -> FeeRecord:
        ensure_valid(payload, policy.overpayment_tolerance)
        if isinstance(payload, FeeRecordResponse):
            return payload.to_record()
        return payload

    return validate_fee_record


def default_validators(policy: LedgerPolicy) -> Dict[str, Callable[[Any], Any]]:
    return {FEE_RECORD: fee_record_validator(policy)}


__all__ = [
    "FEE_RECORD",
    "PAYMENTS",
    "CATEGORIES",
    "COURSES",
    "STAFF",
    "fee_record_query",
    "payments_query",
    "categories_query",
    "courses_query",
    "staff_query",
    "FETCHERS",
    "fetch",
    "fee_record_validator",
    "default_validators",
]
