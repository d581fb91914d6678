"""The normalized entity cache shared by every surface.

``SyncStore`` owns one :class:`~clinic_sync.merger.Collection` per resource
kind and is the only writer to them.  Three sources feed it:

* initial and refresh fetches (``load_once`` / ``refresh``), admitted by the
  :class:`~clinic_sync.load_guard.LoadGuard` so a kind is fetched once per
  session no matter how many surfaces ask;
* push events delivered through the connection's subscription registry;
* optimistic writes made by the application (``apply_optimistic``).

Every write goes through :class:`~clinic_sync.merger.EntityUpsertMerger`, so
snapshots, pushes and local writes follow the same identity and merge rules.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from clinic_sync.api_client import ClinicApiClient
from clinic_sync.connection import ConnectionEvent, ConnectionManager, ConnectionState
from clinic_sync.errors import (
    EntityNotFoundError,
    FetchError,
    IdentityError,
    MergeConflict,
)
from clinic_sync.identity import (
    LOCAL_ID_FIELD,
    IdentityNormalizer,
    new_placeholder_id,
    normalize_id,
)
from clinic_sync.load_guard import LoadGuard, LoadState
from clinic_sync.merger import (
    Collection,
    EntityState,
    EntityUpsertMerger,
    MergeOutcome,
    ReplaceResult,
    UpsertResult,
)
from clinic_sync.notifications_service import NotificationCenter
from clinic_sync.observability import record_drop
from clinic_sync.resources import ResourceCatalog, ResourceKind
from clinic_sync.subscriptions import Disposer
from clinic_sync.surface import Surface


logger = structlog.get_logger(__name__)

Fetcher = Callable[[str], Awaitable[Any]]
Mutator = Callable[[str, Dict[str, Any]], Awaitable[Any]]
ChangeListener = Callable[[str, str, Any], Any]


@dataclass(eq=False)
class _ResourceListener:
    on_snapshot: Optional[Callable[[List[Dict[str, Any]]], Any]] = None
    on_create: Optional[Callable[[Dict[str, Any]], Any]] = None
    on_update: Optional[Callable[[Dict[str, Any]], Any]] = None
    on_remove: Optional[Callable[[List[str]], Any]] = None
    active: bool = True


@dataclass
class _KindBinding:
    listeners: List[_ResourceListener] = field(default_factory=list)
    disposers: List[Disposer] = field(default_factory=list)


async def _call_listener(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SyncStore:
    """Keep one normalized collection per resource kind in sync."""

    def __init__(
        self,
        connection: ConnectionManager,
        api_client: Optional[ClinicApiClient] = None,
        *,
        catalog: Optional[ResourceCatalog] = None,
        merger: Optional[EntityUpsertMerger] = None,
        guard: Optional[LoadGuard] = None,
        notifications: Optional[NotificationCenter] = None,
        tenant_id: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> None:
        self.catalog = catalog or ResourceCatalog()
        self.normalizer = IdentityNormalizer(self.catalog)
        self.merger = merger or EntityUpsertMerger(self.normalizer)
        self.guard = guard or LoadGuard()
        self.notifications = notifications or NotificationCenter()
        self.connection = connection
        self.api = api_client
        self.tenant_id = tenant_id
        self.auth_token = auth_token
        self._collections: Dict[str, Collection] = {
            kind.name: Collection(kind.name) for kind in self.catalog
        }
        self._bindings: Dict[str, _KindBinding] = {}
        self._change_listeners: List[ChangeListener] = []
        self._started = False
        self._connection_disposer = connection.add_listener(self._on_connection_event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def collection(self, kind: str | ResourceKind) -> Collection:
        return self._collections[self.catalog.get(kind).name]

    def get_collection(self, kind: str | ResourceKind) -> List[Dict[str, Any]]:
        """Return the cached entities of *kind* in insertion order."""

        return self.collection(kind).to_list()

    def get_entity(self, kind: str | ResourceKind, entity_id: Any) -> Optional[Dict[str, Any]]:
        resource = self.catalog.get(kind)
        if resource.singleton:
            entities = self.collection(resource).to_list()
            return entities[0] if entities else None
        canonical_id = normalize_id(entity_id)
        if canonical_id is None:
            return None
        return self.collection(resource).get(canonical_id)

    def entity_state(self, kind: str | ResourceKind, entity_id: Any) -> Optional[EntityState]:
        canonical_id = normalize_id(entity_id)
        if canonical_id is None:
            return None
        return self.collection(kind).state_of(canonical_id)

    def load_state(self, kind: str | ResourceKind) -> LoadState:
        return self.guard.state(self.catalog.get(kind).name)

    def is_stale(self, kind: str | ResourceKind) -> bool:
        """True when the cached view of *kind* may lag the backend."""

        if self.connection.stale:
            return True
        return self.load_state(kind) is not LoadState.LOADED

    def listener_count(self, kind: str | ResourceKind) -> int:
        binding = self._bindings.get(self.catalog.get(kind).name)
        return len(binding.listeners) if binding else 0

    def status(self) -> Dict[str, Any]:
        kinds = {}
        for resource in self.catalog:
            kinds[resource.name] = {
                "loadState": self.guard.state(resource.name).value,
                "count": len(self._collections[resource.name]),
                "listeners": self.listener_count(resource),
                "stale": self.is_stale(resource),
            }
        return {
            "connection": self.connection.state.value,
            "stale": self.connection.stale,
            "rooms": self.connection.rooms,
            "lastError": str(self.connection.last_error) if self.connection.last_error else None,
            "kinds": kinds,
        }

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------
    def subscribe_to_resource(
        self,
        kind: str | ResourceKind,
        *,
        on_snapshot: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
        on_create: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_update: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_remove: Optional[Callable[[List[str]], Any]] = None,
    ) -> Disposer:
        """Watch *kind* for changes.

        The push topics of *kind* are bound on the live connection while at
        least one listener exists.  The returned disposer removes only this
        listener.
        """

        resource = self.catalog.get(kind)
        listener = _ResourceListener(on_snapshot, on_create, on_update, on_remove)
        binding = self._bindings.setdefault(resource.name, _KindBinding())
        binding.listeners.append(listener)
        if not binding.disposers and self.connection.is_connected:
            self._bind_topics(resource, binding)

        def _dispose() -> None:
            listener.active = False
            if listener in binding.listeners:
                binding.listeners.remove(listener)
            if not binding.listeners:
                self._unbind_topics(binding)

        return Disposer(_dispose)

    def add_change_listener(self, listener: ChangeListener) -> Disposer:
        """Call ``listener(kind, change, payload)`` after every cache change."""

        self._change_listeners.append(listener)

        def _remove() -> None:
            if listener in self._change_listeners:
                self._change_listeners.remove(listener)

        return Disposer(_remove)

    def surface(self, name: str) -> Surface:
        return Surface(self, name)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Hold the push connection and join the tenant room."""

        if self._started:
            return
        await self.connection.acquire(self.auth_token)
        self._started = True
        if self.tenant_id:
            await self.connection.join_room(self.tenant_id)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.connection.release()

    def close(self) -> None:
        """Detach from the connection; the collections stay readable."""

        self._connection_disposer()
        for binding in self._bindings.values():
            self._unbind_topics(binding)

    # ------------------------------------------------------------------
    # Fetches
    # ------------------------------------------------------------------
    def begin_load(self, kind: str | ResourceKind) -> Optional[int]:
        """Admit the initial fetch of *kind*; return its generation or ``None``."""

        name = self.catalog.get(kind).name
        if not self.guard.try_acquire(name):
            return None
        return self.guard.generation(name)

    async def load_once(self, kind: str | ResourceKind, fetcher: Optional[Fetcher] = None) -> bool:
        """Fetch *kind* unless it is loaded or already being fetched.

        Returns ``True`` when this call applied a snapshot.
        """

        generation = self.begin_load(kind)
        if generation is None:
            return False
        return await self.run_load(kind, generation, fetcher)

    async def refresh(self, kind: str | ResourceKind, fetcher: Optional[Fetcher] = None) -> bool:
        """Refetch *kind*, superseding any fetch still in flight."""

        generation = self.guard.restart(self.catalog.get(kind).name)
        return await self.run_load(kind, generation, fetcher)

    async def run_load(
        self,
        kind: str | ResourceKind,
        generation: int,
        fetcher: Optional[Fetcher] = None,
    ) -> bool:
        resource = self.catalog.get(kind)
        fetch = fetcher or self._default_fetcher
        try:
            entities = await fetch(resource.name)
        except Exception as exc:
            error = exc if isinstance(exc, FetchError) else FetchError(resource.name, str(exc))
            if not self.guard.release(resource.name, False, generation):
                record_drop(resource.name, "stale_fetch")
                logger.info(
                    "snapshot_fetch_failure_ignored",
                    kind=resource.name,
                    generation=generation,
                    error=str(error),
                )
                return False
            logger.warning("snapshot_fetch_failed", kind=resource.name, error=str(error))
            self.notifications.error(
                "Error", str(error) or f"Failed to load {resource.display_name} data."
            )
            await self._emit_change(resource.name, "stale", {"stale": True})
            if error is exc:
                raise
            raise error from exc

        if not self.guard.is_current(resource.name, generation):
            record_drop(resource.name, "stale_fetch")
            logger.info("snapshot_fetch_discarded", kind=resource.name, generation=generation)
            return False
        await self.apply_snapshot(resource.name, entities, generation=generation)
        return True

    async def fetch_entity(self, kind: str | ResourceKind, entity_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch one entity from the backend and merge it into the cache.

        Returns ``None`` when the backend does not know the id.
        """

        resource = self.catalog.get(kind)
        api = self._require_api(resource)
        try:
            entity = await api.fetch_one(resource.name, str(entity_id))
        except EntityNotFoundError:
            logger.info("entity_not_found", kind=resource.name, entity_id=str(entity_id))
            return None
        except FetchError as exc:
            self.notifications.error("Error", str(exc))
            raise
        try:
            result = self.merger.upsert(self.collection(resource), resource, entity)
        except IdentityError as exc:
            self._drop(resource.name, "identity", exc)
            return None
        await self._announce_upsert(resource.name, result)
        return result.entity

    async def _default_fetcher(self, kind: str) -> List[Dict[str, Any]]:
        api = self._require_api(self.catalog.get(kind))
        return await api.fetch_all(kind)

    def _require_api(self, resource: ResourceKind) -> ClinicApiClient:
        if self.api is None:
            raise FetchError(resource.name, "no API client configured")
        return self.api

    def abandon(self, kind: str | ResourceKind, generation: int) -> bool:
        """Give up on an in-flight fetch whose requester went away."""

        name = self.catalog.get(kind).name
        abandoned = self.guard.abandon(name, generation)
        if abandoned:
            logger.info("snapshot_fetch_abandoned", kind=name, generation=generation)
        return abandoned

    # ------------------------------------------------------------------
    # Incoming data
    # ------------------------------------------------------------------
    async def apply_snapshot(
        self,
        kind: str | ResourceKind,
        payload: Any,
        *,
        generation: Optional[int] = None,
    ) -> ReplaceResult:
        """Replace *kind* with a full list, from a fetch or a list push."""

        resource = self.catalog.get(kind)
        entities = self._snapshot_entities(resource, payload)
        if entities is None:
            record_drop(resource.name, "payload")
            logger.warning(
                "snapshot_payload_rejected",
                kind=resource.name,
                payload_type=type(payload).__name__,
            )
            return ReplaceResult()
        result = self.merger.replace_all(self.collection(resource), resource, entities)
        if generation is not None:
            self.guard.release(resource.name, True, generation)
        logger.debug(
            "snapshot_applied",
            kind=resource.name,
            added=len(result.added),
            updated=len(result.updated),
            removed=len(result.removed),
            dropped=result.dropped,
        )
        items = self.get_collection(resource)
        await self._notify(resource.name, "snapshot", items)
        if result.removed:
            await self._notify(resource.name, "remove", list(result.removed))
        await self._emit_change(resource.name, "snapshot", items)
        return result

    async def apply_create(self, kind: str | ResourceKind, payload: Any) -> Optional[UpsertResult]:
        """Insert a pushed entity, merging it if it is already cached."""

        resource = self.catalog.get(kind)
        if not isinstance(payload, Mapping):
            self._drop(resource.name, "payload", None)
            return None
        try:
            result = self.merger.upsert(self.collection(resource), resource, payload)
        except IdentityError as exc:
            self._drop(resource.name, "identity", exc)
            return None
        await self._announce_upsert(resource.name, result)
        return result

    async def apply_update(self, kind: str | ResourceKind, payload: Any) -> Optional[UpsertResult]:
        """Merge a pushed update; updates for uncached entities are dropped."""

        resource = self.catalog.get(kind)
        if not isinstance(payload, Mapping):
            self._drop(resource.name, "payload", None)
            return None
        try:
            result = self.merger.apply_update(self.collection(resource), resource, payload)
        except IdentityError as exc:
            self._drop(resource.name, "identity", exc)
            return None
        except MergeConflict as exc:
            self._drop(resource.name, "merge_conflict", exc)
            return None
        await self._announce_upsert(resource.name, result)
        return result

    def _snapshot_entities(self, resource: ResourceKind, payload: Any) -> Optional[Sequence[Any]]:
        if isinstance(payload, (list, tuple)):
            return list(payload)
        if isinstance(payload, Mapping):
            if resource.singleton:
                return [payload]
            for key in ("items", "results", "data"):
                value = payload.get(key)
                if isinstance(value, list):
                    return value
        return None

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------
    async def apply_optimistic(
        self,
        kind: str | ResourceKind,
        changes: Mapping[str, Any],
        mutate: Optional[Mutator] = None,
    ) -> Dict[str, Any]:
        """Apply *changes* locally, send them, then confirm or roll back.

        Changes without an id create a placeholder entity keyed by a local
        id until the backend returns the real one.  A rejected write is
        rolled back and the :class:`FetchError` re-raised.
        """

        resource = self.catalog.get(kind)
        collection = self.collection(resource)
        staged_changes = dict(changes)
        canonical_id = self.normalizer.try_canonical_id(resource, staged_changes)
        previous = collection.get(canonical_id) if canonical_id is not None else None
        if canonical_id is None:
            canonical_id = new_placeholder_id()
            staged_changes[LOCAL_ID_FIELD] = canonical_id

        staged = self.merger.upsert(
            collection, resource, staged_changes, state=EntityState.OPTIMISTIC
        )
        await self._notify(
            resource.name, "update" if previous is not None else "create", staged.entity
        )
        await self._emit_change(resource.name, "optimistic", staged.entity)

        request = {k: v for k, v in (staged.entity or {}).items() if k != LOCAL_ID_FIELD}
        send = mutate or self._default_mutator
        try:
            authoritative = await send(resource.name, request)
        except Exception as exc:
            error = exc if isinstance(exc, FetchError) else FetchError(resource.name, str(exc))
            await self._rollback(resource, staged.canonical_id, previous, staged_changes)
            logger.warning(
                "optimistic_write_rolled_back",
                kind=resource.name,
                canonical_id=staged.canonical_id,
                error=str(error),
            )
            self.notifications.error(
                "Error", str(error) or f"Failed to save {resource.display_name}."
            )
            if error is exc:
                raise
            raise error from exc

        if not isinstance(authoritative, Mapping) or not authoritative:
            authoritative = request
        try:
            confirmed = self.merger.confirm(
                collection, resource, staged.canonical_id, authoritative
            )
        except IdentityError as exc:
            self._drop(resource.name, "identity", exc)
            await self._rollback(resource, staged.canonical_id, previous, staged_changes)
            return dict(authoritative)

        if confirmed.canonical_id != staged.canonical_id:
            await self._notify(resource.name, "remove", [staged.canonical_id])
            await self._notify(resource.name, "create", confirmed.entity)
            await self._emit_change(resource.name, "remove", [staged.canonical_id])
        else:
            await self._notify(resource.name, "update", confirmed.entity)
        await self._emit_change(resource.name, "confirmed", confirmed.entity)
        verb = "updated" if previous is not None else "created"
        self.notifications.success(
            "Success", f"{resource.display_name.capitalize()} {verb} successfully."
        )
        return confirmed.entity or {}

    async def _default_mutator(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        api = self._require_api(self.catalog.get(kind))
        return await api.mutate(kind, payload)

    async def _rollback(
        self,
        resource: ResourceKind,
        canonical_id: str,
        previous: Optional[Dict[str, Any]],
        changes: Mapping[str, Any],
    ) -> None:
        rolled = self.merger.rollback(
            self.collection(resource), resource, canonical_id, previous, changes
        )
        if rolled.outcome is not MergeOutcome.ROLLED_BACK:
            return
        if rolled.entity is None:
            await self._notify(resource.name, "remove", [canonical_id])
        else:
            await self._notify(resource.name, "update", rolled.entity)
        await self._emit_change(resource.name, "rolled_back", {"id": canonical_id})

    # ------------------------------------------------------------------
    # Push bindings
    # ------------------------------------------------------------------
    def _bind_topics(self, resource: ResourceKind, binding: _KindBinding) -> None:
        self._unbind_topics(binding)
        registry = self.connection.registry
        binding.disposers.append(
            registry.subscribe(resource.list_topic, partial(self.apply_snapshot, resource.name))
        )
        if resource.create_topic:
            binding.disposers.append(
                registry.subscribe(resource.create_topic, partial(self.apply_create, resource.name))
            )
        if resource.update_topic:
            binding.disposers.append(
                registry.subscribe(resource.update_topic, partial(self.apply_update, resource.name))
            )
        logger.debug("push_topics_bound", kind=resource.name, topics=list(resource.topics))

    def _unbind_topics(self, binding: _KindBinding) -> None:
        for disposer in binding.disposers:
            disposer()
        binding.disposers.clear()

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.state is ConnectionState.CONNECTED:
            for name, binding in self._bindings.items():
                if binding.listeners:
                    self._bind_topics(self.catalog.get(name), binding)
        elif event.state is ConnectionState.FAILED:
            self.notifications.warning(
                "Connection lost",
                "Live updates are paused; showing cached data.",
            )
        elif event.state is ConnectionState.DISCONNECTED:
            for binding in self._bindings.values():
                binding.disposers.clear()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    async def _announce_upsert(self, kind: str, result: UpsertResult) -> None:
        if not result.applied:
            return
        change = "create" if result.outcome is MergeOutcome.INSERTED else "update"
        await self._notify(kind, change, result.entity)
        await self._emit_change(kind, change, result.entity)

    async def _notify(self, kind: str, change: str, payload: Any) -> None:
        binding = self._bindings.get(kind)
        if binding is None:
            return
        for listener in list(binding.listeners):
            if not listener.active:
                continue
            try:
                await _call_listener(getattr(listener, f"on_{change}"), payload)
            except Exception:
                logger.exception("resource_listener_failed", kind=kind, change=change)

    async def _emit_change(self, kind: str, change: str, payload: Any) -> None:
        for listener in list(self._change_listeners):
            try:
                await _call_listener(listener, kind, change, payload)
            except Exception:
                logger.exception("change_listener_failed", kind=kind, change=change)

    def _drop(self, kind: str, reason: str, error: Optional[Exception]) -> None:
        record_drop(kind, reason)
        logger.warning("push_event_dropped", kind=kind, reason=reason, error=str(error) if error else None)


__all__ = ["ChangeListener", "Fetcher", "Mutator", "SyncStore"]
