"""Merge snapshots, push events and optimistic writes into cached collections."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog

from clinic_sync.errors import MergeConflict
from clinic_sync.identity import LOCAL_ID_FIELD, IdentityNormalizer, is_placeholder
from clinic_sync.observability import COLLECTION_SIZE, record_drop, record_mutation
from clinic_sync.resources import ResourceKind
from clinic_sync.time_utils import coerce_revision


logger = structlog.get_logger(__name__)

DEFAULT_REVISION_FIELDS = ("revision", "version", "updatedAt", "updated_at")


class EntityState(str, Enum):
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class MergeOutcome(str, Enum):
    INSERTED = "inserted"
    MERGED = "merged"
    UNCHANGED = "unchanged"
    STALE = "stale"
    ROLLED_BACK = "rolled_back"


@dataclass
class CacheEntry:
    entity: Dict[str, Any]
    state: EntityState = EntityState.CONFIRMED


@dataclass
class UpsertResult:
    """Outcome of a single-entity write."""

    canonical_id: str
    outcome: MergeOutcome
    entity: Optional[Dict[str, Any]] = None
    state: EntityState = EntityState.CONFIRMED

    @property
    def applied(self) -> bool:
        return self.outcome in (MergeOutcome.INSERTED, MergeOutcome.MERGED)


@dataclass
class ReplaceResult:
    """Reconciliation diff produced by a full snapshot replace."""

    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


class Collection:
    """Insertion-ordered mapping of canonical id to cached entity."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, canonical_id: object) -> bool:
        return canonical_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def ids(self) -> List[str]:
        return list(self._entries)

    def get(self, canonical_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(str(canonical_id))
        return copy.deepcopy(entry.entity) if entry else None

    def entry(self, canonical_id: str) -> Optional[CacheEntry]:
        return self._entries.get(str(canonical_id))

    def state_of(self, canonical_id: str) -> Optional[EntityState]:
        entry = self._entries.get(str(canonical_id))
        return entry.state if entry else None

    def to_list(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(entry.entity) for entry in self._entries.values()]

    def _put(self, canonical_id: str, entry: CacheEntry) -> None:
        self._entries[canonical_id] = entry

    def _pop(self, canonical_id: str) -> Optional[CacheEntry]:
        return self._entries.pop(canonical_id, None)

    def _rekey(self, old_id: str, new_id: str) -> None:
        """Move the entry at *old_id* to *new_id* keeping its position."""

        self._entries = {
            (new_id if key == old_id else key): value
            for key, value in self._entries.items()
        }

    def _replace(self, entries: Dict[str, CacheEntry]) -> None:
        self._entries = entries


class EntityUpsertMerger:
    """Single entry point for every write into a :class:`Collection`.

    Incoming fields always overwrite stored ones; fields absent from the
    incoming payload are preserved.  When both sides carry a revision the
    lower one loses regardless of arrival order.
    """

    def __init__(
        self,
        normalizer: Optional[IdentityNormalizer] = None,
        *,
        revision_fields: Sequence[str] = DEFAULT_REVISION_FIELDS,
    ) -> None:
        self.normalizer = normalizer or IdentityNormalizer()
        self.revision_fields = tuple(revision_fields)

    # ------------------------------------------------------------------
    # Single-entity writes
    # ------------------------------------------------------------------
    def upsert(
        self,
        collection: Collection,
        kind: str | ResourceKind,
        entity: Mapping[str, Any],
        *,
        state: EntityState = EntityState.CONFIRMED,
    ) -> UpsertResult:
        """Insert *entity* or merge it into the stored entry."""

        canonical_id = self.normalizer.canonical_id(kind, entity)
        incoming = dict(entity)
        existing = collection.entry(canonical_id)
        if existing is None:
            collection._put(canonical_id, CacheEntry(incoming, state))
            return self._finish(collection, canonical_id, MergeOutcome.INSERTED)
        return self._merge_into(collection, canonical_id, existing, incoming, state)

    def apply_update(
        self,
        collection: Collection,
        kind: str | ResourceKind,
        entity: Mapping[str, Any],
    ) -> UpsertResult:
        """Merge a (possibly partial) update into an existing entry.

        Raises :class:`MergeConflict` when the target was never cached.
        """

        canonical_id = self.normalizer.canonical_id(kind, entity)
        existing = collection.entry(canonical_id)
        if existing is None:
            raise MergeConflict(collection.kind, canonical_id)
        return self._merge_into(
            collection, canonical_id, existing, dict(entity), EntityState.CONFIRMED
        )

    def _merge_into(
        self,
        collection: Collection,
        canonical_id: str,
        existing: CacheEntry,
        incoming: Dict[str, Any],
        state: EntityState,
    ) -> UpsertResult:
        if self._is_older(incoming, existing.entity):
            record_drop(collection.kind, "stale_revision")
            logger.debug(
                "cache_stale_revision_ignored",
                kind=collection.kind,
                canonical_id=canonical_id,
            )
            return UpsertResult(
                canonical_id,
                MergeOutcome.STALE,
                copy.deepcopy(existing.entity),
                existing.state,
            )
        merged = dict(existing.entity)
        merged.update(incoming)
        new_state = EntityState.OPTIMISTIC if state is EntityState.OPTIMISTIC else existing.state
        if merged == existing.entity and new_state is existing.state:
            return self._finish(collection, canonical_id, MergeOutcome.UNCHANGED)
        collection._put(canonical_id, CacheEntry(merged, new_state))
        return self._finish(collection, canonical_id, MergeOutcome.MERGED)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def replace_all(
        self,
        collection: Collection,
        kind: str | ResourceKind,
        entities: Iterable[Mapping[str, Any]],
    ) -> ReplaceResult:
        """Replace the collection with a full snapshot.

        Entities missing from the snapshot are removed and reported in
        ``removed``; pending optimistic placeholders are kept.
        """

        previous = dict(collection._entries)
        fresh: Dict[str, CacheEntry] = {}
        result = ReplaceResult()

        for entity in entities or ():
            canonical_id = (
                self.normalizer.try_canonical_id(kind, entity)
                if isinstance(entity, Mapping)
                else None
            )
            if canonical_id is None:
                result.dropped += 1
                record_drop(collection.kind, "identity")
                logger.warning(
                    "snapshot_entity_without_identity",
                    kind=collection.kind,
                    fields=sorted(entity) if isinstance(entity, Mapping) else None,
                )
                continue
            incoming = dict(entity)
            if canonical_id in fresh:
                fresh[canonical_id].entity.update(incoming)
                continue
            prior = previous.get(canonical_id)
            if prior is not None and self._is_older(incoming, prior.entity):
                record_drop(collection.kind, "stale_revision")
                fresh[canonical_id] = CacheEntry(dict(prior.entity), prior.state)
                continue
            fresh[canonical_id] = CacheEntry(incoming, EntityState.CONFIRMED)
            if prior is None:
                result.added.append(canonical_id)
            elif prior.entity != incoming:
                result.updated.append(canonical_id)

        for canonical_id, prior in previous.items():
            if canonical_id in fresh:
                continue
            if prior.state is EntityState.OPTIMISTIC and is_placeholder(canonical_id):
                fresh[canonical_id] = prior
                continue
            result.removed.append(canonical_id)

        collection._replace(fresh)
        COLLECTION_SIZE.labels(kind=collection.kind).set(len(collection))
        record_mutation(collection.kind, "replaced")
        if result.removed:
            logger.info(
                "cache_entities_removed",
                kind=collection.kind,
                removed=len(result.removed),
            )
        return result

    # ------------------------------------------------------------------
    # Optimistic lifecycle
    # ------------------------------------------------------------------
    def confirm(
        self,
        collection: Collection,
        kind: str | ResourceKind,
        provisional_id: str,
        authoritative: Mapping[str, Any],
    ) -> UpsertResult:
        """Settle an optimistic entry with the server's version of it."""

        incoming = {k: v for k, v in authoritative.items() if k != LOCAL_ID_FIELD}
        canonical_id = self.normalizer.canonical_id(kind, incoming)
        provisional = collection.entry(provisional_id)

        base: Dict[str, Any] = {}
        if provisional_id != canonical_id:
            existing = collection.entry(canonical_id)
            if existing is not None:
                collection._pop(provisional_id)
                base = dict(existing.entity)
            elif provisional is not None:
                collection._rekey(provisional_id, canonical_id)
                base = dict(provisional.entity)
        elif provisional is not None:
            base = dict(provisional.entity)
        base.pop(LOCAL_ID_FIELD, None)

        if base and self._is_older(incoming, base):
            merged = base
        else:
            merged = dict(base)
            merged.update(incoming)
        collection._put(canonical_id, CacheEntry(merged, EntityState.CONFIRMED))
        outcome = MergeOutcome.MERGED if base else MergeOutcome.INSERTED
        return self._finish(collection, canonical_id, outcome)

    def rollback(
        self,
        collection: Collection,
        kind: str | ResourceKind,
        provisional_id: str,
        previous: Optional[Mapping[str, Any]],
        changes: Mapping[str, Any],
    ) -> UpsertResult:
        """Undo an optimistic write that the backend rejected.

        A placeholder entity is removed outright.  For an existing entity only
        the fields the optimistic write set, and that still hold the
        optimistic value, are reverted.
        """

        entry = collection.entry(provisional_id)
        if entry is None:
            return UpsertResult(provisional_id, MergeOutcome.UNCHANGED, None, EntityState.ROLLED_BACK)
        if previous is None:
            collection._pop(provisional_id)
            COLLECTION_SIZE.labels(kind=collection.kind).set(len(collection))
            record_mutation(collection.kind, MergeOutcome.ROLLED_BACK.value)
            return UpsertResult(provisional_id, MergeOutcome.ROLLED_BACK, None, EntityState.ROLLED_BACK)

        restored = dict(entry.entity)
        for key, value in changes.items():
            if key == LOCAL_ID_FIELD:
                continue
            if key in restored and restored[key] != value:
                continue
            if key in previous:
                restored[key] = previous[key]
            else:
                restored.pop(key, None)
        collection._put(provisional_id, CacheEntry(restored, EntityState.CONFIRMED))
        record_mutation(collection.kind, MergeOutcome.ROLLED_BACK.value)
        return UpsertResult(
            provisional_id,
            MergeOutcome.ROLLED_BACK,
            copy.deepcopy(restored),
            EntityState.ROLLED_BACK,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _finish(
        self, collection: Collection, canonical_id: str, outcome: MergeOutcome
    ) -> UpsertResult:
        entry = collection.entry(canonical_id)
        if outcome is not MergeOutcome.UNCHANGED:
            record_mutation(collection.kind, outcome.value)
            COLLECTION_SIZE.labels(kind=collection.kind).set(len(collection))
        return UpsertResult(
            canonical_id,
            outcome,
            copy.deepcopy(entry.entity) if entry else None,
            entry.state if entry else EntityState.CONFIRMED,
        )

    def shared_revision(
        self, incoming: Mapping[str, Any], stored: Mapping[str, Any]
    ) -> Optional[Tuple[float, float]]:
        """Return both revisions from the first field the two entities share."""

        for name in self.revision_fields:
            incoming_value = incoming.get(name)
            stored_value = stored.get(name)
            if incoming_value is None or stored_value is None:
                continue
            incoming_rev = coerce_revision(incoming_value)
            stored_rev = coerce_revision(stored_value)
            if incoming_rev is not None and stored_rev is not None:
                return incoming_rev, stored_rev
        return None

    def _is_older(self, incoming: Mapping[str, Any], stored: Mapping[str, Any]) -> bool:
        revisions = self.shared_revision(incoming, stored)
        if revisions is None:
            return False
        incoming_rev, stored_rev = revisions
        return incoming_rev < stored_rev


__all__ = [
    "CacheEntry",
    "Collection",
    "EntityState",
    "EntityUpsertMerger",
    "MergeOutcome",
    "ReplaceResult",
    "UpsertResult",
]
