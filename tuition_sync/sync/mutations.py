"""
tuition_sync/sync/mutations.py
Mutation intents: what a user action changes, locally and on the Ledger Service
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from uuid import uuid4

from tuition_sync.models.schemas import CatalogEntity, Category, Course, PaymentTransaction, Staff
from tuition_sync.sync.cache import QuerySignature, Transform, ViewCache
from tuition_sync.sync.queries import (
    CATEGORIES, COURSES, FEE_RECORD, PAYMENTS, STAFF, fee_record_query, recorded_within
)
from tuition_sync.sync.recorder import ProposedFeePlan, ProposedPayment
from tuition_sync.sync.resolver import DependentFieldResolver, is_empty

logger = logging.getLogger(__name__)


class MutationIntent(ABC):
    """One user action, committed through the Reconciliation Scheduler"""

    def __init__(self):
        self.intent_id = uuid4().hex

    def prepare(self, resolver: Optional[DependentFieldResolver]) -> None:
        """Hook run before any optimistic apply (dependent-field resolution)"""

    @abstractmethod
    def affected(self, cache: ViewCache) -> List[QuerySignature]:
        """Cached signatures whose payload this mutation changes"""

    @abstractmethod
    def transform(self, signature: QuerySignature) -> Optional[Transform]:
        """Local payload rewrite for one affected signature"""

    @abstractmethod
    async def dispatch(self, ledger) -> Any:
        """Send the mutation to the Ledger Service (called exactly once)"""

    def describe(self) -> str:
        return f"{type(self).__name__}({self.intent_id[:8]})"


# ============================================
# FEE LEDGER INTENTS
# ============================================

class RecordPaymentIntent(MutationIntent):

    def __init__(self, proposal: ProposedPayment):
        super().__init__()
        self.proposal = proposal
        self.transaction = PaymentTransaction(**proposal.draft.model_dump())

    @property
    def student_id(self) -> str:
        return self.proposal.draft.student_id

    def affected(self, cache: ViewCache) -> List[QuerySignature]:
        draft = self.proposal.draft
        payment_lists = [
            sig for sig in cache.signatures(PAYMENTS)
            if sig.matches(student_id=draft.student_id, month=draft.period_month, year=draft.period_year)
            and recorded_within(sig, draft.recorded_at)
        ]
        return [fee_record_query(draft.student_id)] + payment_lists

    def transform(self, signature: QuerySignature) -> Optional[Transform]:
        amount = self.proposal.draft.amount
        transaction = self.transaction
        if signature.entity == FEE_RECORD:
            return lambda record: record.with_payment(amount)
        if signature.entity == PAYMENTS:
            return lambda rows: [transaction] + [row for row in (rows or []) if row.payment_id != transaction.payment_id]
        return None

    async def dispatch(self, ledger):
        return await ledger.record_payment(self.proposal.draft)

    def describe(self) -> str:
        draft = self.proposal.draft
        return (
            f"RecordPayment({self.intent_id[:8]}: {draft.amount} for {draft.student_id} "
            f"{draft.period_month:02d}/{draft.period_year})"
        )


class FeePlanEditIntent(MutationIntent):

    def __init__(self, plan: ProposedFeePlan):
        super().__init__()
        self.plan = plan

    def affected(self, cache: ViewCache) -> List[QuerySignature]:
        return [fee_record_query(self.plan.student_id)]

    def transform(self, signature: QuerySignature) -> Optional[Transform]:
        total = self.plan.total_fee
        if signature.entity == FEE_RECORD:
            return lambda record: record.with_total(total)
        return None

    async def dispatch(self, ledger):
        return await ledger.update_fee_plan(self.plan.student_id, self.plan.total_fee)


# ============================================
# CATALOG INTENTS
# ============================================

class UpsertIntent(MutationIntent):
    """Create or update a catalog entity shown in filtered list views"""

    entity: ClassVar[str] = ""
    # Fields that participate in dependent-field edges
    selection_fields: ClassVar[Tuple[str, ...]] = ()
    # Signature filter name -> entity attribute
    filter_fields: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, record: CatalogEntity):
        super().__init__()
        self.record = record
        self.cleared_fields: List[str] = []

    @property
    def is_new(self) -> bool:
        return self.record.identity is None

    @property
    def optimistic_row(self) -> CatalogEntity:
        if self.is_new:
            return self.record.with_identity(f"pending-{self.intent_id}")
        return self.record

    def prepare(self, resolver: Optional[DependentFieldResolver]) -> None:
        if resolver is None or not self.selection_fields:
            return
        selections = {name: getattr(self.record, name) for name in self.selection_fields}
        revised = resolver.resolve({name: ("" if value is None else value) for name, value in selections.items()})
        updates: Dict[str, Any] = {}
        for name in self.selection_fields:
            if not is_empty(selections[name]) and is_empty(revised.get(name)):
                updates[name] = None
        if updates:
            self.cleared_fields = sorted(updates)
            logger.info(f"{self.describe()} cleared stale selections: {', '.join(self.cleared_fields)}")
            self.record = self.record.model_copy(update=updates)

    def _filter_values(self) -> Dict[str, Any]:
        return {name: getattr(self.record, name) for name in self.filter_fields}

    def _lists_containing(self, cache: ViewCache, identity: str) -> List[QuerySignature]:
        found = []
        for signature in cache.signatures(self.entity):
            snapshot = cache.read(signature)
            if snapshot is not None and any(row.identity == identity for row in snapshot.payload or []):
                found.append(signature)
        return found

    def affected(self, cache: ViewCache) -> List[QuerySignature]:
        matching = [sig for sig in cache.signatures(self.entity) if sig.matches(**self._filter_values())]
        if self.is_new:
            return matching
        extra = [sig for sig in self._lists_containing(cache, self.record.identity) if sig not in matching]
        return matching + extra

    def transform(self, signature: QuerySignature) -> Optional[Transform]:
        if signature.entity != self.entity:
            return None
        row = self.optimistic_row
        belongs = signature.matches(**self._filter_values())

        def upsert_row(rows):
            rows = list(rows or [])
            for index, existing in enumerate(rows):
                if existing.identity == row.identity:
                    if belongs:
                        rows[index] = row
                    else:
                        del rows[index]
                    return rows
            return [row] + rows if belongs else rows

        return upsert_row

    def describe(self) -> str:
        return f"{type(self).__name__}({self.intent_id[:8]}: {self.record.identity or 'new'})"


class UpsertCategoryIntent(UpsertIntent):
    entity = CATEGORIES
    filter_fields = ("institute_type", "category_type")

    def __init__(self, category: Category):
        super().__init__(category)

    async def dispatch(self, ledger):
        return await ledger.upsert_category(self.record)


class UpsertCourseIntent(UpsertIntent):
    entity = COURSES
    selection_fields = ("institute_type", "category_id", "instructor_id")
    filter_fields = ("institute_type", "category_id")

    def __init__(self, course: Course):
        super().__init__(course)

    async def dispatch(self, ledger):
        return await ledger.upsert_course(self.record)


class UpsertStaffIntent(UpsertIntent):
    entity = STAFF
    selection_fields = ("institute_type", "staff_category_id")
    filter_fields = ("institute_type",)

    def __init__(self, staff: Staff):
        super().__init__(staff)

    async def dispatch(self, ledger):
        return await ledger.upsert_staff(self.record)


__all__ = [
    "MutationIntent",
    "RecordPaymentIntent",
    "FeePlanEditIntent",
    "UpsertIntent",
    "UpsertCategoryIntent",
    "UpsertCourseIntent",
    "UpsertStaffIntent",
]
