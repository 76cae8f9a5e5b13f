import asyncio
import copy
from collections import defaultdict
from decimal import Decimal
from enum import Enum

import pytest

from tuition_sync.db.supabase import UNIQUE_VIOLATION, StorageError
from tuition_sync.models.schemas import LedgerPolicy
from tuition_sync.services.ledger_client import LedgerService
from tuition_sync.services.ledger_store import LedgerStore
from tuition_sync.services.ledger_sync import LedgerSync
from tuition_sync.sync.retry import RetryPolicy


def _plain(value):
    return value.value if isinstance(value, Enum) else value


class InMemoryQueries:
    """Same async surface as SupabaseQueries, over plain dicts"""

    unique = {"fee_payments": ("payment_id", "transaction_no")}

    def __init__(self, tables=None):
        self.tables = defaultdict(list)
        for table, rows in (tables or {}).items():
            self.tables[table] = [dict(row) for row in rows]

    def _matching(self, table, filters):
        wanted = {key: _plain(value) for key, value in (filters or {}).items() if value is not None}
        return [row for row in self.tables[table] if all(row.get(k) == v for k, v in wanted.items())]

    async def insert_one(self, table, data):
        for column in self.unique.get(table, ()):
            if data.get(column) is not None and self._matching(table, {column: data.get(column)}):
                raise StorageError(f"duplicate key value violates unique constraint on {column}", code=UNIQUE_VIOLATION)
        self.tables[table].append(copy.deepcopy(data))
        return copy.deepcopy(data)

    async def select_all(self, table, filters=None, order_by=None, ascending=True, between=None):
        rows = self._matching(table, filters)
        for column, (low, high) in (between or {}).items():
            rows = [
                row for row in rows
                if (low is None or str(row.get(column)) >= low) and (high is None or str(row.get(column)) < high)
            ]
        if order_by:
            rows = sorted(rows, key=lambda row: str(row.get(order_by) or ""), reverse=not ascending)
        return copy.deepcopy(rows)

    async def select_by_id(self, table, id_column, id_value):
        rows = self._matching(table, {id_column: id_value})
        return copy.deepcopy(rows[0]) if rows else None

    async def select_one(self, table, filters):
        rows = self._matching(table, filters)
        return copy.deepcopy(rows[0]) if rows else None

    async def count(self, table, filters=None):
        return len(self._matching(table, filters))

    async def update_by_id(self, table, id_column, id_value, data):
        for row in self.tables[table]:
            if row.get(id_column) == id_value:
                row.update(copy.deepcopy(data))
                return copy.deepcopy(row)
        return None


class RecordingEmailService:
    def __init__(self):
        self.receipts = []

    async def send_payment_receipt(self, to_email, name, payment, fee_record):
        self.receipts.append((to_email, payment.transaction_no, fee_record.pending_fee))
        return True


class FakeLedger(LedgerService):
    """
    LedgerService over a real LedgerStore with switches for tests

    The store is called as soon as a request arrives; a held operation then
    waits for its gate before returning, so responses can be delivered in
    any order. Queued errors are raised instead of calling the store, or after
    it when queued with applied=True (the write landed but the reply was lost).
    """

    def __init__(self, store):
        self.store = store
        self.calls = []
        self.closed = False
        self._errors = defaultdict(list)
        self._responders = {}
        self._held = set()
        self.gates = defaultdict(list)

    def fail(self, operation, error, times=1, applied=False):
        self._errors[operation].extend([(error, applied)] * times)

    def respond(self, operation, responder):
        self._responders[operation] = responder

    def hold(self, operation):
        self._held.add(operation)

    def unhold(self, operation):
        self._held.discard(operation)

    async def _call(self, operation, *args, **kwargs):
        self.calls.append(operation)
        queued = self._errors.get(operation)
        error, applied = queued.pop(0) if queued else (None, False)
        result = None
        if error is None or applied:
            responder = self._responders.get(operation)
            if responder is not None:
                result = responder(*args, **kwargs)
            else:
                result = await getattr(self.store, operation)(*args, **kwargs)
        if operation in self._held:
            gate = asyncio.Event()
            self.gates[operation].append(gate)
            await gate.wait()
        if error is not None:
            raise error
        return result

    def count(self, operation):
        return self.calls.count(operation)

    async def record_payment(self, draft):
        return await self._call("record_payment", draft)

    async def get_fee_record(self, student_id):
        return await self._call("get_fee_record", student_id)

    async def list_payments(self, student_id=None, month=None, year=None, start_date=None, end_date=None):
        return await self._call(
            "list_payments", student_id=student_id, month=month, year=year, start_date=start_date, end_date=end_date
        )

    async def update_fee_plan(self, student_id, total_fee):
        return await self._call("update_fee_plan", student_id, total_fee)

    async def get_payment_history(self, student_id):
        return await self._call("get_payment_history", student_id)

    async def upsert_category(self, category):
        return await self._call("upsert_category", category)

    async def upsert_course(self, course):
        return await self._call("upsert_course", course)

    async def upsert_staff(self, staff):
        return await self._call("upsert_staff", staff)

    async def list_categories(self, institute_type=None, category_type=None):
        return await self._call("list_categories", institute_type=institute_type, category_type=category_type)

    async def list_courses(self, institute_type=None, category_id=None):
        return await self._call("list_courses", institute_type=institute_type, category_id=category_id)

    async def list_staff(self, institute_type=None):
        return await self._call("list_staff", institute_type=institute_type)

    async def aclose(self):
        self.closed = True


async def settle(condition=None, rounds=50):
    """Let other tasks run until condition() holds (or for a fixed number of rounds)"""
    for _ in range(rounds):
        if condition is not None and condition():
            return
        await asyncio.sleep(0)
    if condition is not None:
        assert condition(), "condition never became true"


async def no_sleep(delay):
    return None


def student_row(student_id, total_fee, paid_fee="0", email=None):
    total, paid = Decimal(str(total_fee)), Decimal(str(paid_fee))
    return {
        "student_id": student_id,
        "name": f"Student {student_id}",
        "email": email,
        "total_fee": str(total),
        "paid_fee": str(paid),
        "pending_fee": str(max(Decimal("0"), total - paid)),
    }


@pytest.fixture
def db():
    return InMemoryQueries({
        "students": [
            student_row("stu-1", 5000, email="stu1@example.com"),
            student_row("stu-2", 1000, 400),
        ],
        "categories": [
            {"category_id": "cat-school", "name": "Primary", "institute_type": "school",
             "category_type": "course", "description": None, "is_active": True},
            {"category_id": "cat-college", "name": "Engineering", "institute_type": "college",
             "category_type": "course", "description": None, "is_active": True},
            {"category_id": "cat-staff", "name": "Faculty", "institute_type": "school",
             "category_type": "staff", "description": None, "is_active": True},
        ],
        "staff": [
            {"staff_id": "staff-school", "name": "Asha", "institute_type": "school",
             "staff_category_id": "cat-staff", "email": None, "phone": None, "is_active": True},
            {"staff_id": "staff-college", "name": "Ravi", "institute_type": "college",
             "staff_category_id": None, "email": None, "phone": None, "is_active": True},
        ],
    })


@pytest.fixture
def emails():
    return RecordingEmailService()


@pytest.fixture
def store(db, emails):
    return LedgerStore(db, policy=LedgerPolicy(), email_service=emails, duplicate_window_seconds=120)


@pytest.fixture
def ledger(store):
    return FakeLedger(store)


@pytest.fixture
def sync(ledger):
    return LedgerSync(
        ledger,
        policy=LedgerPolicy(),
        retry_policy=RetryPolicy.fixed(2, 0),
        max_entries=64,
        sleep=no_sleep
    )
