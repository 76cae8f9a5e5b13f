import asyncio
from datetime import date
from decimal import Decimal

import httpx
import pytest

from tuition_sync.core.dependencies import get_ledger_store
from tuition_sync.core.exceptions import (
    ConflictError, InvariantViolation, RejectionReason, TransportError, ValidationError
)
from tuition_sync.main import app
from tuition_sync.models.schemas import ConfirmationState, InstituteType, LedgerPolicy, PaymentDraft, PaymentMethod
from tuition_sync.services.ledger_client import HttpLedgerClient
from tuition_sync.services.ledger_sync import LedgerSync
from tuition_sync.sync.queries import fee_record_query
from tuition_sync.sync.retry import RetryPolicy

BASE_URL = "http://ledger.test/api/v1"


def _client(handler):
    return HttpLedgerClient(client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler)))


def _run(handler, call):
    async def scenario():
        ledger = _client(handler)
        try:
            return await call(ledger)
        finally:
            await ledger.client.aclose()

    return asyncio.run(scenario())


def _draft():
    return PaymentDraft(student_id="stu-1", period_month=3, period_year=2024, amount=Decimal("10"), method=PaymentMethod.CASH)


def test_fee_record_is_parsed():
    def handler(request):
        assert request.url.path == "/api/v1/fees/records/stu-1"
        return httpx.Response(200, json={"student_id": "stu-1", "total_fee": "100", "paid_fee": "40", "pending_fee": "60"})

    record = _run(handler, lambda ledger: ledger.get_fee_record("stu-1"))
    assert record.pending_fee == Decimal("60")


def test_none_params_are_dropped_and_enums_sent_by_value():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json=[])

    _run(handler, lambda ledger: ledger.list_categories(institute_type=InstituteType.SCHOOL))
    assert seen == {"institute_type": "school"}


def test_payment_date_range_sent_as_iso_days():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json=[])

    _run(handler, lambda ledger: ledger.list_payments(student_id="stu-1", start_date=date(2024, 4, 1)))
    assert seen == {"student_id": "stu-1", "start_date": "2024-04-01"}


@pytest.mark.parametrize("status, detail, error_type, reason", [
    (400, {"reason": "overpayment", "message": "too much"}, ValidationError, RejectionReason.OVERPAYMENT),
    (422, [{"loc": ["body", "amount"], "msg": "bad"}], ValidationError, None),
    (404, {"reason": "unknown_student", "message": "missing"}, ValidationError, RejectionReason.UNKNOWN_STUDENT),
    (409, {"reason": "duplicate_period", "message": "paid"}, ConflictError, RejectionReason.DUPLICATE_PERIOD),
    (503, "unavailable", TransportError, RejectionReason.TRANSPORT),
])
def test_status_mapping(status, detail, error_type, reason):
    def handler(request):
        return httpx.Response(status, json={"detail": detail})

    with pytest.raises(error_type) as exc:
        _run(handler, lambda ledger: ledger.record_payment(_draft()))
    assert exc.value.reason == reason


def test_connection_failures_are_transport_errors():
    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    for handler in (refused, slow):
        with pytest.raises(TransportError):
            _run(handler, lambda ledger: ledger.get_fee_record("stu-1"))


def test_malformed_body_is_an_invariant_violation():
    def handler(request):
        return httpx.Response(200, json={"student_id": "stu-1"})

    with pytest.raises(InvariantViolation) as exc:
        _run(handler, lambda ledger: ledger.get_fee_record("stu-1"))
    assert exc.value.rule == "response_shape"

    def not_json(request):
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(InvariantViolation):
        _run(not_json, lambda ledger: ledger.list_payments(student_id="stu-1"))


def test_sync_engine_against_the_real_api(store):
    app.dependency_overrides[get_ledger_store] = lambda: store

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        ledger = HttpLedgerClient(client=httpx.AsyncClient(base_url="http://test/api/v1", transport=transport))
        sync = LedgerSync(ledger, policy=LedgerPolicy(), retry_policy=RetryPolicy.fixed(2, 0))
        try:
            await sync.load_student("stu-1")
            outcome = await sync.record_payment("stu-1", "2000", (3, 2024), "cash")
            assert outcome.confirmed
            snapshot = sync.read(fee_record_query("stu-1"))
            assert snapshot.state == ConfirmationState.FRESH
            assert snapshot.payload.pending_fee == Decimal("3000")

            # Ledger rejects the period even though this client never cached the list
            await store.record_payment(PaymentDraft(
                student_id="stu-2", period_month=3, period_year=2024, amount=Decimal("100"), method=PaymentMethod.CASH
            ))
            await sync.load(fee_record_query("stu-2"))
            with pytest.raises(ConflictError):
                await sync.record_payment("stu-2", "100", (3, 2024), "online")
            assert sync.read(fee_record_query("stu-2")).payload.paid_fee == Decimal("500")
        finally:
            await ledger.client.aclose()

    try:
        asyncio.run(scenario())
    finally:
        app.dependency_overrides.clear()
