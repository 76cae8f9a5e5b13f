import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest

from tuition_sync.db.supabase import StorageError, SupabaseQueries
from tuition_sync.models.schemas import FeeRecord, PaymentMethod, PaymentTransaction
from tuition_sync.services.email_service import EmailService


class FakeQuery:
    """Records the builder calls made against one table"""

    def __init__(self, calls, rows, fail=None):
        self.calls = calls
        self.rows = rows
        self.fail = fail

    def __getattr__(self, name):
        def chain(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return chain

    def execute(self):
        if self.fail:
            raise self.fail
        return SimpleNamespace(data=self.rows, count=len(self.rows))


class FakeClient:
    def __init__(self, rows=(), fail=None):
        self.rows = list(rows)
        self.fail = fail
        self.calls = []

    def table(self, name):
        self.calls.append(("table", (name,), {}))
        return FakeQuery(self.calls, self.rows, self.fail)


def test_none_filters_skipped_and_enums_written_by_value():
    client = FakeClient(rows=[{"payment_id": "p1"}])
    db = SupabaseQueries(client)

    rows = asyncio.run(db.select_all(
        "fee_payments",
        {"student_id": "stu-1", "period_month": None, "method": PaymentMethod.CASH},
        order_by="recorded_at",
        ascending=False
    ))

    assert rows == [{"payment_id": "p1"}]
    eqs = [args for name, args, _ in client.calls if name == "eq"]
    assert eqs == [("student_id", "stu-1"), ("method", "cash")]
    assert ("order", ("recorded_at",), {"desc": True}) in client.calls


def test_between_bounds_low_inclusive_high_exclusive():
    client = FakeClient()
    asyncio.run(SupabaseQueries(client).select_all(
        "fee_payments", between={"recorded_at": ("2024-04-01", "2024-05-01"), "amount": (None, "100")}
    ))

    bounds = [(name, args) for name, args, _ in client.calls if name in ("gte", "lt")]
    assert bounds == [("gte", ("recorded_at", "2024-04-01")), ("lt", ("recorded_at", "2024-05-01")), ("lt", ("amount", "100"))]


def test_select_one_and_count():
    db = SupabaseQueries(FakeClient(rows=[{"student_id": "stu-1"}, {"student_id": "stu-2"}]))
    assert asyncio.run(db.select_one("students", {"student_id": "stu-1"})) == {"student_id": "stu-1"}
    assert asyncio.run(db.count("students")) == 2
    assert asyncio.run(SupabaseQueries(FakeClient()).select_by_id("students", "student_id", "x")) is None


def test_database_failure_raises_storage_error():
    db = SupabaseQueries(FakeClient(fail=RuntimeError("connection reset")))
    with pytest.raises(StorageError, match="students") as exc:
        asyncio.run(db.update_by_id("students", "student_id", "stu-1", {"paid_fee": "10"}))
    assert not exc.value.unique_violation


def test_unique_violation_keeps_database_code():
    class DuplicateKey(Exception):
        code = "23505"

    db = SupabaseQueries(FakeClient(fail=DuplicateKey("duplicate key value violates unique constraint")))
    with pytest.raises(StorageError) as exc:
        asyncio.run(db.insert_one("fee_payments", {"transaction_no": "TXN-000001"}))
    assert exc.value.code == "23505"
    assert exc.value.unique_violation


def _payment():
    return PaymentTransaction(
        student_id="stu-1", period_month=3, period_year=2024, amount=Decimal("2000"),
        method=PaymentMethod.BANK_TRANSFER, transaction_no="TXN-000001", receipt_no="R-7"
    )


def test_receipt_is_logged_without_sendgrid_key(caplog):
    service = EmailService(api_key="")
    record = FeeRecord(student_id="stu-1", total_fee=Decimal("5000"), paid_fee=Decimal("2000"))

    with caplog.at_level("INFO", logger="tuition_sync.services.email_service"):
        sent = asyncio.run(service.send_payment_receipt("parent@example.com", "Asha", _payment(), record))

    assert sent is True
    assert service.sg is None
    assert "Payment receipt for 03/2024" in caplog.text


def test_sendgrid_failure_does_not_raise():
    class Rejecting:
        def send(self, message):
            raise RuntimeError("401 unauthorized")

    service = EmailService(api_key="")
    service.sg = Rejecting()
    assert asyncio.run(service.send_email("parent@example.com", "Receipt", "<p>x</p>")) is False
