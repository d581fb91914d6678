"""Scoped views over the store with deterministic teardown."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import structlog

from clinic_sync.errors import SyncError
from clinic_sync.resources import ResourceKind
from clinic_sync.subscriptions import Disposer

if TYPE_CHECKING:
    from clinic_sync.store import Fetcher, SyncStore


logger = structlog.get_logger(__name__)


class Surface:
    """A named consumer of cached resources, such as one screen.

    Everything a surface registers is tracked so :meth:`close` can release
    it in one step: listeners are disposed and fetches the surface started
    are abandoned when nobody else is watching that kind.  Used as an async
    context manager the surface also holds the push connection.
    """

    def __init__(self, store: "SyncStore", name: str) -> None:
        self.store = store
        self.name = name
        self._disposers: List[Disposer] = []
        self._pending: Dict[str, int] = {}
        self._holds_connection = False
        self.closed = False

    def watch(
        self,
        kind: str | ResourceKind,
        *,
        on_snapshot: Optional[Callable[..., Any]] = None,
        on_create: Optional[Callable[..., Any]] = None,
        on_update: Optional[Callable[..., Any]] = None,
        on_remove: Optional[Callable[..., Any]] = None,
    ) -> Disposer:
        if self.closed:
            raise SyncError(f"surface '{self.name}' is closed")
        disposer = self.store.subscribe_to_resource(
            kind,
            on_snapshot=on_snapshot,
            on_create=on_create,
            on_update=on_update,
            on_remove=on_remove,
        )
        self._disposers.append(disposer)
        return disposer

    async def load(self, kind: str | ResourceKind, fetcher: Optional["Fetcher"] = None) -> bool:
        """Request the initial fetch of *kind* on behalf of this surface."""

        if self.closed:
            raise SyncError(f"surface '{self.name}' is closed")
        name = self.store.catalog.get(kind).name
        generation = self.store.begin_load(name)
        if generation is None:
            return False
        self._pending[name] = generation
        try:
            return await self.store.run_load(name, generation, fetcher)
        finally:
            if self._pending.get(name) == generation:
                self._pending.pop(name, None)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for disposer in self._disposers:
            disposer()
        self._disposers.clear()
        for kind, generation in list(self._pending.items()):
            if self.store.listener_count(kind):
                continue
            self.store.abandon(kind, generation)
        self._pending.clear()
        logger.debug("surface_closed", surface=self.name)

    async def __aenter__(self) -> "Surface":
        await self.store.connection.acquire(self.store.auth_token)
        self._holds_connection = True
        if self.store.tenant_id:
            try:
                await self.store.connection.join_room(self.store.tenant_id)
            except SyncError:
                self._holds_connection = False
                await self.store.connection.release()
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
        if self._holds_connection:
            self._holds_connection = False
            await self.store.connection.release()


__all__ = ["Surface"]
