from decimal import Decimal

import pytest

from tuition_sync.core.exceptions import ConflictError, RejectionReason, ValidationError
from tuition_sync.models.schemas import BillingPeriod, FeeRecord, LedgerPolicy, PaymentMethod, PaymentTransaction
from tuition_sync.sync.cache import ViewCache
from tuition_sync.sync.queries import fee_record_query, payments_query
from tuition_sync.sync.recorder import PaymentRecorder


def _setup(total="5000", paid="0", policy=None, payments=None):
    cache = ViewCache()
    cache.store(fee_record_query("stu-1"), FeeRecord(student_id="stu-1", total_fee=Decimal(total), paid_fee=Decimal(paid)))
    if payments is not None:
        cache.store(payments_query(student_id="stu-1"), payments)
    return cache, PaymentRecorder(cache, policy)


def _paid(month, year, monthly=True):
    return PaymentTransaction(
        student_id="stu-1", period_month=month, period_year=year,
        amount=Decimal("100"), method=PaymentMethod.CASH, monthly=monthly
    )


def test_projection_for_valid_payment():
    _, recorder = _setup()
    proposal = recorder.propose("stu-1", "2000", (3, 2024), "cash", metadata={"receipt_no": "R-1", "ignored": "x"})

    assert proposal.prior.paid_fee == Decimal("0")
    assert proposal.projected.paid_fee == Decimal("2000")
    assert proposal.projected.pending_fee == Decimal("3000")
    assert proposal.draft.amount == Decimal("2000")
    assert proposal.draft.period == BillingPeriod(month=3, year=2024)
    assert proposal.draft.method == PaymentMethod.CASH
    assert proposal.draft.receipt_no == "R-1"


@pytest.mark.parametrize("amount", [0, -5, "abc", "NaN"])
def test_non_positive_or_garbage_amount(amount):
    _, recorder = _setup()
    with pytest.raises(ValidationError) as exc:
        recorder.propose("stu-1", amount, (3, 2024), "cash")
    assert exc.value.reason == RejectionReason.NON_POSITIVE_AMOUNT
    assert exc.value.prior.paid_fee == Decimal("0")


@pytest.mark.parametrize("period", [(13, 2024), (0, 2024), {"month": 2}, "March"])
def test_invalid_period(period):
    _, recorder = _setup()
    with pytest.raises(ValidationError) as exc:
        recorder.propose("stu-1", 100, period, "cash")
    assert exc.value.reason == RejectionReason.INVALID_PERIOD


def test_invalid_method():
    _, recorder = _setup()
    with pytest.raises(ValidationError) as exc:
        recorder.propose("stu-1", 100, (3, 2024), "barter")
    assert exc.value.reason == RejectionReason.INVALID_METHOD


def test_unknown_student():
    _, recorder = _setup()
    with pytest.raises(ValidationError) as exc:
        recorder.propose("ghost", 100, (3, 2024), "cash")
    assert exc.value.reason == RejectionReason.UNKNOWN_STUDENT


def test_overpayment_rejected_without_touching_cache():
    cache, recorder = _setup(paid="2000")
    sig = fee_record_query("stu-1")
    before = cache.read(sig)

    with pytest.raises(ValidationError) as exc:
        recorder.propose("stu-1", 3500, (4, 2024), "cash")

    assert exc.value.reason == RejectionReason.OVERPAYMENT
    after = cache.read(sig)
    assert after.version == before.version
    assert after.payload == before.payload


def test_overpayment_tolerance():
    _, recorder = _setup(paid="4900", policy=LedgerPolicy(overpayment_tolerance=Decimal("0.1")))
    proposal = recorder.propose("stu-1", 500, (4, 2024), "cash")
    assert proposal.projected.paid_fee == Decimal("5400")
    assert proposal.projected.pending_fee == Decimal("0")

    with pytest.raises(ValidationError):
        recorder.propose("stu-1", 700, (4, 2024), "cash")


def test_monthly_duplicate_is_a_conflict():
    _, recorder = _setup(payments=[_paid(3, 2024)])
    with pytest.raises(ConflictError) as exc:
        recorder.propose("stu-1", 100, (3, 2024), "cash")
    assert exc.value.reason == RejectionReason.DUPLICATE_PERIOD


def test_duplicate_check_only_in_monthly_flow_and_when_enabled():
    _, recorder = _setup(payments=[_paid(3, 2024)])
    assert recorder.propose("stu-1", 100, (3, 2024), "cash", monthly=False).draft.monthly is False

    _, lenient = _setup(payments=[_paid(3, 2024)], policy=LedgerPolicy(dedupe_monthly=False))
    assert lenient.propose("stu-1", 100, (3, 2024), "cash").projected.paid_fee == Decimal("100")

    _, recorder = _setup(payments=[_paid(3, 2024, monthly=False)])
    assert recorder.propose("stu-1", 100, (3, 2024), "cash").draft.period_month == 3


def test_fee_plan_cannot_drop_below_paid():
    _, recorder = _setup(paid="2000")
    plan = recorder.propose_fee_plan("stu-1", "6000")
    assert plan.projected.pending_fee == Decimal("4000")

    for total in ("1500", "-1", "lots"):
        with pytest.raises(ValidationError) as exc:
            recorder.propose_fee_plan("stu-1", total)
        assert exc.value.reason == RejectionReason.INVALID_FEE_PLAN
