"""
tuition_sync/services/ledger_sync.py
Client-side entry point: one View Cache, Payment Recorder and Reconciliation
Scheduler wired to a Ledger Service
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from tuition_sync.core.config import settings
from tuition_sync.models.schemas import Category, Course, LedgerPolicy, Staff
from tuition_sync.services.ledger_client import HttpLedgerClient, LedgerService
from tuition_sync.sync import queries
from tuition_sync.sync.cache import CacheRead, Listener, QuerySignature, ViewCache
from tuition_sync.sync.mutations import (
    FeePlanEditIntent, RecordPaymentIntent, UpsertCategoryIntent, UpsertCourseIntent, UpsertStaffIntent
)
from tuition_sync.sync.recorder import PaymentRecorder, PeriodLike
from tuition_sync.sync.resolver import Catalog, default_resolver
from tuition_sync.sync.retry import RetryPolicy
from tuition_sync.sync.scheduler import Outcome, ReconciliationScheduler

logger = logging.getLogger(__name__)


class LedgerSync:
    """
    Args:
        ledger: Ledger Service client
        policy: Ledger policy; defaults to the configured one
        retry_policy: Refetch retry policy; defaults to the configured one
        max_entries: View Cache capacity
        sleep: Awaitable used for refetch delays
    """

    def __init__(
        self,
        ledger: LedgerService,
        policy: Optional[LedgerPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_entries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.ledger = ledger
        self.policy = policy or LedgerPolicy.from_settings(settings)
        self.cache = ViewCache(
            max_entries=max_entries or settings.CACHE_MAX_ENTRIES,
            validators=queries.default_validators(self.policy)
        )
        self.recorder = PaymentRecorder(self.cache, self.policy)
        self.scheduler = ReconciliationScheduler(
            self.cache,
            ledger,
            retry_policy=retry_policy or RetryPolicy.from_settings(settings),
            sleep=sleep
        )

    @classmethod
    def over_http(cls, base_url: Optional[str] = None, **kwargs) -> "LedgerSync":
        return cls(HttpLedgerClient(base_url=base_url), **kwargs)

    # ============================================
    # READS
    # ============================================

    async def load(self, signature: QuerySignature) -> CacheRead:
        """
        Fetch a query from the Ledger Service and install it in the cache

        Raises:
            LedgerError: The fetch failed or the response violates invariants
        """
        stamp = self.cache.issue_stamp()
        payload = await queries.fetch(self.ledger, signature)
        self.cache.confirm(signature, payload, stamp)
        return self.cache.read(signature)

    async def load_student(self, student_id: str, month: Optional[int] = None, year: Optional[int] = None) -> CacheRead:
        """Load a student's fee record together with their payment list"""
        record, _ = await asyncio.gather(
            self.load(queries.fee_record_query(student_id)),
            self.load(queries.payments_query(student_id=student_id, month=month, year=year))
        )
        return record

    def read(self, signature: QuerySignature) -> Optional[CacheRead]:
        return self.cache.read(signature)

    def subscribe(
        self,
        listener: Listener,
        signature: Optional[QuerySignature] = None,
        entity: Optional[str] = None
    ) -> Callable[[], None]:
        return self.cache.subscribe(listener, signature=signature, entity=entity)

    # ============================================
    # MUTATIONS
    # ============================================

    async def record_payment(
        self,
        student_id: str,
        amount: Any,
        period: PeriodLike,
        method: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        monthly: bool = True
    ) -> Outcome:
        """
        Validate, optimistically apply and commit one payment

        Raises:
            ValidationError, ConflictError: Rejected locally; nothing was applied
            LedgerError: Rejected by the Ledger Service; everything was rolled back
        """
        proposal = self.recorder.propose(student_id, amount, period, method, metadata=metadata, monthly=monthly)
        return await self.scheduler.commit(RecordPaymentIntent(proposal))

    async def edit_fee_plan(self, student_id: str, total_fee: Any) -> Outcome:
        plan = self.recorder.propose_fee_plan(student_id, total_fee)
        return await self.scheduler.commit(FeePlanEditIntent(plan))

    async def upsert_category(self, category: Category) -> Outcome:
        return await self.scheduler.commit(UpsertCategoryIntent(category))

    async def upsert_course(self, course: Course) -> Outcome:
        return await self.scheduler.commit(UpsertCourseIntent(course))

    async def upsert_staff(self, staff: Staff) -> Outcome:
        return await self.scheduler.commit(UpsertStaffIntent(staff))

    # ============================================
    # DEPENDENT FIELDS
    # ============================================

    def on_parent_change(
        self,
        parent_field: str,
        new_value: Any,
        current_selections: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Form-side resolution: children not offered by the cached catalog are cleared"""
        resolver = default_resolver(Catalog.from_cache(self.cache), strict=True)
        return resolver.on_parent_change(parent_field, new_value, current_selections)

    def resolve_selections(self, selections: Mapping[str, Any]) -> Dict[str, Any]:
        return default_resolver(Catalog.from_cache(self.cache), strict=True).resolve(selections)

    async def aclose(self) -> None:
        await self.scheduler.drain()
        await self.ledger.aclose()


__all__ = ["LedgerSync"]
