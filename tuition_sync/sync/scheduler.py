"""
tuition_sync/sync/scheduler.py
Reconciliation Scheduler

Every mutation goes through the same sequence:

1. optimistic apply   - rewrite each cached affected entry (synchronous)
2. dispatch           - send the mutation to the Ledger Service exactly once
3. confirm            - on success mark entries stale and refetch them; a
                        refetch is installed only if it was issued after the
                        last installed one (see ViewCache.confirm)
4. rollback           - on failure drop the optimistic layer and re-raise;
                        when the failure leaves the outcome unknown (transport
                        errors, malformed responses) the entries are refetched
                        first, since the ledger may have applied the mutation

Only the refetch is ever retried, under a bounded RetryPolicy. Running out
of attempts leaves the entry stale and flagged unconfirmed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from tuition_sync.core.exceptions import ConflictError, InvariantViolation, LedgerError, ValidationError
from tuition_sync.models.schemas import ConfirmationState, OutcomeStatus
from tuition_sync.sync import queries
from tuition_sync.sync.cache import QuerySignature, ViewCache
from tuition_sync.sync.mutations import MutationIntent
from tuition_sync.sync.resolver import Catalog, DependentFieldResolver, default_resolver
from tuition_sync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    intent_id: str
    status: OutcomeStatus
    result: Any = None
    states: Dict[QuerySignature, ConfirmationState] = field(default_factory=dict)
    errors: List[LedgerError] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.status == OutcomeStatus.CONFIRMED


class ReconciliationScheduler:
    """
    Orchestrates optimistic apply, dispatch, confirmation and rollback

    Args:
        cache: The View Cache; the scheduler is its only writer
        ledger: Ledger Service client (see services/ledger_client.py)
        retry_policy: Refetch retry policy
        resolver_factory: Builds the Dependent-Field Resolver run before each
            optimistic apply; defaults to the dashboard edge table over the
            catalog lists currently cached
        sleep: Awaitable used for refetch delays
    """

    def __init__(
        self,
        cache: ViewCache,
        ledger,
        retry_policy: Optional[RetryPolicy] = None,
        resolver_factory: Optional[Callable[[], Optional[DependentFieldResolver]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.cache = cache
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy()
        self.resolver_factory = resolver_factory or self._cached_catalog_resolver
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    def _cached_catalog_resolver(self) -> DependentFieldResolver:
        return default_resolver(Catalog.from_cache(self.cache), strict=False)

    # ============================================
    # COMMIT
    # ============================================

    async def commit(
        self,
        intent: MutationIntent,
        affected: Optional[Iterable[QuerySignature]] = None
    ) -> Outcome:
        """
        Commit one mutation intent

        Args:
            intent: The mutation
            affected: Signatures to rewrite and refetch; defaults to intent.affected()

        Returns:
            Outcome: CONFIRMED when every affected entry was refetched,
            UNCONFIRMED otherwise (details in Outcome.errors). An entry whose
            refetch was held back behind another in-flight mutation reports
            OPTIMISTIC in Outcome.states until that mutation settles.

        Raises:
            LedgerError: Dispatch failed; every optimistic rewrite was rolled
                back, and refetched when the ledger may have applied it anyway
        """
        # Everything up to the dispatch await is synchronous, so two commits
        # apply optimistically in call order.
        intent.prepare(self.resolver_factory())
        signatures = self._dedupe(intent.affected(self.cache) if affected is None else affected)
        applied = self._apply(intent, signatures)

        logger.info(f"Dispatching {intent.describe()} ({len(applied)} cached views rewritten)")
        for signature in applied:
            self.cache.mark_dispatched(signature, intent.intent_id)
        try:
            result = await intent.dispatch(self.ledger)
        except asyncio.CancelledError:
            # The request may or may not have reached the Ledger Service
            self._rollback(intent, applied)
            for signature in applied:
                self.cache.invalidate(signature)
            logger.warning(f"{intent.describe()} cancelled in flight; rolled back and invalidated")
            raise
        except LedgerError as e:
            self._rollback(intent, applied)
            logger.warning(f"{intent.describe()} rejected ({e.reason.value if e.reason else 'error'}): {e}")
            await self._reconcile_failed(intent, applied, e)
            raise
        except Exception as e:
            self._rollback(intent, applied)
            logger.error(f"{intent.describe()} failed unexpectedly: {e}")
            await self._reconcile_failed(intent, applied, e)
            raise

        for signature in applied:
            self.cache.acknowledge(signature, intent.intent_id)

        results = await asyncio.gather(*(self._refetch(signature) for signature in applied))
        errors = [error for error in results if error is not None]

        states = {}
        for signature in applied:
            entry = self.cache.entry(signature)
            if entry is not None:
                states[signature] = entry.state

        status = OutcomeStatus.UNCONFIRMED if errors else OutcomeStatus.CONFIRMED
        if errors:
            logger.warning(f"{intent.describe()} accepted but {len(errors)} view(s) remain unconfirmed")
        else:
            logger.info(f"{intent.describe()} confirmed")
        return Outcome(intent_id=intent.intent_id, status=status, result=result, states=states, errors=errors)

    def submit(
        self,
        intent: MutationIntent,
        affected: Optional[Iterable[QuerySignature]] = None
    ) -> "asyncio.Task[Outcome]":
        """
        Run commit() as a background task owned by the scheduler

        The task keeps running if the view that started it goes away; await
        the returned task (or drain()) to observe its outcome or error.
        """
        task = asyncio.ensure_future(self.commit(intent, affected))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def drain(self) -> None:
        """Wait for every submitted commit to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ============================================
    # REFETCH
    # ============================================

    async def refetch(self, signature: QuerySignature) -> Optional[LedgerError]:
        """Authoritative reload of one entry under the retry policy"""
        return await self._refetch(signature)

    async def _refetch(self, signature: QuerySignature) -> Optional[LedgerError]:
        policy = self.retry_policy
        last_error: Optional[LedgerError] = None

        for attempt in range(policy.max_attempts):
            delay = policy.delay_before(attempt)
            if delay:
                await self._sleep(delay)
            if signature not in self.cache:
                logger.debug(f"Skipping refetch of evicted entry {signature}")
                return None

            stamp = self.cache.issue_stamp()
            try:
                payload = await queries.fetch(self.ledger, signature)
            except LedgerError as e:
                last_error = e
                logger.warning(f"Refetch of {signature} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}")
                continue

            try:
                self.cache.confirm(signature, payload, stamp)
            except InvariantViolation as e:
                # Already logged and flagged by the cache; retrying would fetch the same record
                return e
            return None

        self.cache.mark_unconfirmed(signature)
        logger.warning(f"Refetch of {signature} gave up after {policy.max_attempts} attempt(s); left unconfirmed")
        return last_error

    # ============================================
    # HELPERS
    # ============================================

    def _apply(self, intent: MutationIntent, signatures: List[QuerySignature]) -> List[QuerySignature]:
        applied: List[QuerySignature] = []
        for signature in signatures:
            transform = intent.transform(signature)
            if transform is None:
                continue
            try:
                version = self.cache.apply(signature, intent.intent_id, transform)
            except Exception:
                self._rollback(intent, applied)
                raise
            if version is not None:
                applied.append(signature)
        return applied

    def _rollback(self, intent: MutationIntent, applied: List[QuerySignature]) -> None:
        for signature in applied:
            self.cache.rollback(signature, intent.intent_id)

    async def _reconcile_failed(
        self,
        intent: MutationIntent,
        applied: List[QuerySignature],
        error: Exception
    ) -> None:
        # Validation and conflict rejections mean nothing was written; any
        # other failure may have happened after the ledger applied the change.
        rejected = isinstance(error, (ValidationError, ConflictError))
        signatures = [
            signature for signature in applied
            if not rejected or self.cache.awaiting_refetch(signature)
        ]
        if not signatures:
            return
        logger.info(f"Refetching {len(signatures)} view(s) after failed {intent.describe()}")
        await asyncio.gather(*(self._refetch(signature) for signature in signatures))

    @staticmethod
    def _dedupe(signatures: Iterable[QuerySignature]) -> List[QuerySignature]:
        unique: List[QuerySignature] = []
        for signature in signatures:
            if signature not in unique:
                unique.append(signature)
        return unique

    def _task_done(self, task: "asyncio.Task") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background commit finished with error: {error}")


__all__ = ["Outcome", "ReconciliationScheduler"]
