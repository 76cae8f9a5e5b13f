"""
tuition_sync/sync/cache.py
View Cache: process-local materialized query results

Each entry keeps the last payload confirmed by the Ledger Service (the base)
plus an ordered stack of optimistic layers, one per in-flight mutation. The
visible payload is always base + layers, so dropping a failed mutation or
installing a newer confirmation never loses another mutation's edit.

Only the methods of ViewCache write an entry's payload.
"""
from __future__ import annotations

import copy
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tuition_sync.core.exceptions import InvariantViolation
from tuition_sync.models.schemas import ConfirmationState, Freshness, utcnow

logger = logging.getLogger(__name__)

Transform = Callable[[Any], Any]
Listener = Callable[["CacheEvent"], None]


def _canonical(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


# ============================================
# QUERY SIGNATURES
# ============================================

@dataclass(frozen=True)
class QuerySignature:
    """Entity type plus a canonical, hashable record of filter parameters"""
    entity: str
    params: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, entity: str, **params: Any) -> "QuerySignature":
        canonical = tuple(sorted(
            (key, _canonical(value)) for key, value in params.items() if value is not None
        ))
        return cls(entity, canonical)

    @property
    def filters(self) -> Dict[str, Any]:
        return dict(self.params)

    def param(self, name: str, default: Any = None) -> Any:
        return self.filters.get(name, default)

    def matches(self, **values: Any) -> bool:
        """True when every filter of this signature accepts the given values"""
        for key, expected in self.params:
            if key in values and _canonical(values[key]) != expected:
                return False
        return True

    def __str__(self) -> str:
        args = ",".join(f"{key}={value}" for key, value in self.params)
        return f"{self.entity}({args})"


# ============================================
# ENTRIES
# ============================================

@dataclass
class _Layer:
    intent_id: str
    transform: Transform
    dispatched_at: Optional[int] = None
    acknowledged_at: Optional[int] = None

    def may_be_in(self, stamp: int) -> bool:
        """Sent but not acknowledged before a fetch issued at `stamp`"""
        return self.acknowledged_at is None and self.dispatched_at is not None and self.dispatched_at < stamp


@dataclass
class CacheEntry:
    signature: QuerySignature
    payload: Any
    version: int = 1
    last_confirmed_at: Optional[datetime] = None
    base_payload: Any = None
    base_stamp: int = 0
    base_freshness: Freshness = Freshness.FRESH
    base_unconfirmed: bool = False
    layers: "OrderedDict[str, _Layer]" = field(default_factory=OrderedDict)

    @property
    def freshness(self) -> Freshness:
        if self.layers:
            if any(layer.acknowledged_at is None for layer in self.layers.values()):
                return Freshness.PENDING_REFETCH
            return Freshness.STALE
        return self.base_freshness

    @property
    def unconfirmed(self) -> bool:
        return self.base_unconfirmed

    @property
    def state(self) -> ConfirmationState:
        if self.base_unconfirmed:
            return ConfirmationState.UNCONFIRMED
        freshness = self.freshness
        if freshness == Freshness.PENDING_REFETCH:
            return ConfirmationState.OPTIMISTIC
        if freshness == Freshness.STALE:
            return ConfirmationState.STALE
        return ConfirmationState.FRESH

    @property
    def pending_intents(self) -> List[str]:
        return list(self.layers)


@dataclass(frozen=True)
class CacheRead:
    """Copy of an entry handed to readers; mutating it never touches the cache"""
    signature: QuerySignature
    payload: Any
    version: int
    freshness: Freshness
    state: ConfirmationState
    last_confirmed_at: Optional[datetime]

    @property
    def confirmed(self) -> bool:
        return self.state == ConfirmationState.FRESH


@dataclass(frozen=True)
class CacheEvent:
    kind: str
    signature: QuerySignature
    version: int
    state: Optional[ConfirmationState]


# ============================================
# VIEW CACHE
# ============================================

class ViewCache:
    """
    Typed query cache keyed by QuerySignature

    Args:
        max_entries: LRU capacity; entries with optimistic layers are never evicted
        validators: Per-entity callables run on every confirmed payload before
            it is installed; the value they return is what gets installed. A
            validator raising InvariantViolation causes the payload to be
            discarded and the entry to be flagged unconfirmed.
    """

    def __init__(
        self,
        max_entries: int = 256,
        validators: Optional[Mapping[str, Callable[[Any], Any]]] = None
    ):
        self.max_entries = max_entries
        self.validators: Dict[str, Callable[[Any], Any]] = dict(validators or {})
        self._entries: "OrderedDict[QuerySignature, CacheEntry]" = OrderedDict()
        self._clock = itertools.count(1)
        self._listeners: List[Tuple[Listener, Optional[QuerySignature], Optional[str]]] = []

    def __contains__(self, signature: QuerySignature) -> bool:
        return signature in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def issue_stamp(self) -> int:
        """Monotonic stamp ordering acknowledgements and refetches"""
        return next(self._clock)

    def signatures(self, entity: Optional[str] = None) -> List[QuerySignature]:
        return [sig for sig in self._entries if entity is None or sig.entity == entity]

    def entry(self, signature: QuerySignature) -> Optional[CacheEntry]:
        return self._entries.get(signature)

    # ============================================
    # READS
    # ============================================

    def read(self, signature: QuerySignature) -> Optional[CacheRead]:
        entry = self._entries.get(signature)
        if entry is None:
            return None
        self._entries.move_to_end(signature)
        return CacheRead(
            signature=signature,
            payload=copy.deepcopy(entry.payload),
            version=entry.version,
            freshness=entry.freshness,
            state=entry.state,
            last_confirmed_at=entry.last_confirmed_at
        )

    # ============================================
    # CONFIRMED WRITES
    # ============================================

    def store(self, signature: QuerySignature, payload: Any) -> CacheEntry:
        """Seed an entry with an authoritative payload fetched right now"""
        self.confirm(signature, payload, self.issue_stamp())
        return self._entries[signature]

    def confirm(self, signature: QuerySignature, payload: Any, stamp: int) -> bool:
        """
        Install an authoritative payload obtained by a fetch issued at `stamp`

        The payload is accepted only if the stamp is newer than the last
        installed confirmation, so a slow refetch never replaces a newer one.
        Optimistic layers acknowledged before the fetch was issued are already
        part of the payload and are dropped; the rest are re-applied on top.

        A layer dispatched before the fetch but not yet acknowledged may or
        may not be in the payload. Such a payload is held back and the entry
        keeps its current base until that layer is settled and refetched.

        Returns:
            bool: True if installed, False if discarded as out of date or held back

        Raises:
            InvariantViolation: The payload failed the entity's validator
        """
        entry = self._entries.get(signature)
        if entry is not None and stamp <= entry.base_stamp:
            logger.info(f"Discarded out-of-date confirmation for {signature} (stamp {stamp} <= {entry.base_stamp})")
            return False

        validator = self.validators.get(signature.entity)
        if validator is not None:
            try:
                payload = validator(payload)
            except InvariantViolation as e:
                logger.error(f"Ledger response for {signature} violates invariants ({e.rule}): {e}")
                if entry is not None:
                    self._flag_unconfirmed(entry)
                raise

        if entry is not None:
            unsettled = [key for key, layer in entry.layers.items() if layer.may_be_in(stamp)]
            if unsettled:
                logger.info(f"Held back confirmation for {signature}: {len(unsettled)} dispatched mutation(s) unsettled")
                return False

        now = utcnow()
        if entry is None:
            entry = CacheEntry(
                signature=signature,
                payload=copy.deepcopy(payload),
                base_payload=payload,
                base_stamp=stamp,
                last_confirmed_at=now
            )
            self._entries[signature] = entry
            self._broadcast("stored", entry)
            self._evict_overflow()
            return True

        entry.base_payload = payload
        entry.base_stamp = stamp
        entry.base_freshness = Freshness.FRESH
        entry.base_unconfirmed = False
        entry.last_confirmed_at = now
        for intent_id in [
            key for key, layer in entry.layers.items()
            if layer.acknowledged_at is not None and layer.acknowledged_at < stamp
        ]:
            del entry.layers[intent_id]
        self._materialize(entry)
        self._entries.move_to_end(signature)
        self._broadcast("confirmed", entry)
        return True

    # ============================================
    # OPTIMISTIC WRITES
    # ============================================

    def apply(self, signature: QuerySignature, intent_id: str, transform: Transform) -> Optional[int]:
        """
        Optimistically rewrite an entry on behalf of an in-flight mutation

        Returns:
            int: The entry's new version, or None if the signature is not cached
        """
        entry = self._entries.get(signature)
        if entry is None:
            return None
        if intent_id in entry.layers:
            raise ValueError(f"Intent {intent_id} already applied to {signature}")

        entry.layers[intent_id] = _Layer(intent_id=intent_id, transform=transform)
        entry.payload = transform(copy.deepcopy(entry.payload))
        entry.version += 1
        self._entries.move_to_end(signature)
        self._broadcast("optimistic", entry)
        return entry.version

    def mark_dispatched(self, signature: QuerySignature, intent_id: str) -> Optional[int]:
        """The mutation is about to be sent; from here its outcome is unknown until settled"""
        entry = self._entries.get(signature)
        if entry is None or intent_id not in entry.layers:
            return None
        stamp = self.issue_stamp()
        entry.layers[intent_id].dispatched_at = stamp
        return stamp

    def awaiting_refetch(self, signature: QuerySignature) -> bool:
        """An accepted mutation is still layered over the base"""
        entry = self._entries.get(signature)
        if entry is None:
            return False
        return any(layer.acknowledged_at is not None for layer in entry.layers.values())

    def acknowledge(self, signature: QuerySignature, intent_id: str) -> Optional[int]:
        """The Ledger Service accepted the mutation; the entry is now stale"""
        entry = self._entries.get(signature)
        if entry is None or intent_id not in entry.layers:
            return None
        stamp = self.issue_stamp()
        entry.layers[intent_id].acknowledged_at = stamp
        self._broadcast("acknowledged", entry)
        return stamp

    def rollback(self, signature: QuerySignature, intent_id: str) -> bool:
        """
        Remove a failed mutation's layer

        With no other mutation in flight this restores exactly the payload and
        freshness the entry had before the mutation was applied.
        """
        entry = self._entries.get(signature)
        if entry is None or intent_id not in entry.layers:
            return False
        del entry.layers[intent_id]
        self._materialize(entry)
        self._broadcast("rolled_back", entry)
        return True

    # ============================================
    # FRESHNESS & INVALIDATION
    # ============================================

    def mark_unconfirmed(self, signature: QuerySignature) -> None:
        entry = self._entries.get(signature)
        if entry is not None:
            self._flag_unconfirmed(entry)

    def invalidate(self, signature: QuerySignature) -> bool:
        entry = self._entries.get(signature)
        if entry is None:
            return False
        entry.base_freshness = Freshness.STALE
        self._broadcast("invalidated", entry)
        return True

    def invalidate_entity(self, entity: str) -> List[QuerySignature]:
        signatures = self.signatures(entity)
        for signature in signatures:
            self.invalidate(signature)
        return signatures

    def evict(self, signature: QuerySignature) -> bool:
        entry = self._entries.pop(signature, None)
        if entry is None:
            return False
        self._broadcast("evicted", entry)
        return True

    # ============================================
    # LISTENERS
    # ============================================

    def subscribe(
        self,
        listener: Listener,
        signature: Optional[QuerySignature] = None,
        entity: Optional[str] = None
    ) -> Callable[[], None]:
        """
        Register a view for change notifications

        Returns:
            callable: Unsubscribe function; call it when the view is torn down
        """
        registration = (listener, signature, entity)
        self._listeners.append(registration)

        def unsubscribe() -> None:
            if registration in self._listeners:
                self._listeners.remove(registration)

        return unsubscribe

    # ============================================
    # INTERNALS
    # ============================================

    def _flag_unconfirmed(self, entry: CacheEntry) -> None:
        entry.base_freshness = Freshness.STALE
        entry.base_unconfirmed = True
        self._broadcast("unconfirmed", entry)

    def _materialize(self, entry: CacheEntry) -> None:
        payload = copy.deepcopy(entry.base_payload)
        for layer in entry.layers.values():
            payload = layer.transform(payload)
        entry.payload = payload
        entry.version += 1

    def _evict_overflow(self) -> None:
        while len(self._entries) > self.max_entries:
            victim = next((sig for sig, e in self._entries.items() if not e.layers), None)
            if victim is None:
                break
            logger.debug(f"Evicting least recently used entry {victim}")
            self.evict(victim)

    def _broadcast(self, kind: str, entry: CacheEntry) -> None:
        # Best-effort: a view may have been torn down mid-commit
        event = CacheEvent(kind=kind, signature=entry.signature, version=entry.version, state=entry.state)
        for listener, signature, entity in list(self._listeners):
            if signature is not None and signature != entry.signature:
                continue
            if entity is not None and entity != entry.signature.entity:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Cache listener failed on {kind} for {entry.signature}: {e}")


__all__ = [
    "QuerySignature",
    "CacheEntry",
    "CacheRead",
    "CacheEvent",
    "ViewCache",
]
