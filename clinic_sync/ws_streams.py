"""WebSocket feed of cache changes for local renderers.

Each resource kind has its own ordered feed.  A client first receives the
current collection as a ``snapshot`` message, then one message per cache
change keyed by canonical id:

``upsert``
    an entity was created, merged, staged optimistically, confirmed or
    restored by a rollback; carries the entity and its :class:`EntityState`.
``remove``
    canonical ids that left the collection.
``snapshot``
    the collection was replaced wholesale by a fetch or a list push.
``stale``
    the last fetch failed and the cached items may be out of date.

Every message carries a per-kind ``eventId``.  A client reconnecting with
``since=<eventId>`` is replayed the messages it missed when they are still
in the bounded history, and sent a fresh snapshot otherwise.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Mapping, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

if TYPE_CHECKING:  # pragma: no cover
    from clinic_sync.store import SyncStore


logger = structlog.get_logger(__name__)

UPSERT_CHANGES = frozenset({"create", "update", "optimistic", "confirmed"})


class _KindFeed:
    def __init__(self, history: int) -> None:
        self.clients: Set[WebSocket] = set()
        self.last_event_id = 0
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history)
        self.lock = asyncio.Lock()


class CacheChangeStream:
    """Fan out :class:`SyncStore` changes to WebSocket clients per kind."""

    def __init__(self, store: "SyncStore", channel: str = "cache", *, history: int = 100) -> None:
        self._store = store
        self.channel = channel
        self._history = max(int(history), 0)
        self._feeds: Dict[str, _KindFeed] = {}

    def client_count(self, kind: str) -> int:
        feed = self._feeds.get(kind)
        return len(feed.clients) if feed else 0

    def last_event_id(self, kind: str) -> int:
        feed = self._feeds.get(kind)
        return feed.last_event_id if feed else 0

    async def handle(self, websocket: WebSocket, kind: str, since: Optional[int] = None) -> None:
        """Accept *websocket* and stream changes to *kind* until it closes."""

        await websocket.accept()
        await websocket.send_json({"event": "connected", "channel": self.channel, "kind": kind})

        feed = self._feed(kind)
        async with feed.lock:
            try:
                for message in self._catch_up(kind, feed, since):
                    await websocket.send_json(message)
            except Exception as exc:
                logger.warning("stream_catch_up_failed", channel=self.channel, kind=kind, error=str(exc))
                return
            feed.clients.add(websocket)

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.debug("stream_receive_error", channel=self.channel, kind=kind, error=str(exc))
        finally:
            async with feed.lock:
                feed.clients.discard(websocket)

    async def publish(self, kind: str, change: str, payload: Any) -> None:
        """Translate one store change into feed messages and send them."""

        messages = self._translate(kind, change, payload)
        if not messages:
            return
        feed = self._feed(kind)
        async with feed.lock:
            for message in messages:
                feed.last_event_id += 1
                message["eventId"] = feed.last_event_id
                feed.history.append(message)
                for ws in list(feed.clients):
                    if not await self._send(ws, message):
                        feed.clients.discard(ws)

    async def close(self) -> None:
        for kind, feed in self._feeds.items():
            async with feed.lock:
                for ws in list(feed.clients):
                    try:
                        await ws.close(code=1001)
                    except Exception as exc:
                        logger.debug("stream_close_failed", kind=kind, error=str(exc))
                feed.clients.clear()

    # ------------------------------------------------------------------
    # Message construction
    # ------------------------------------------------------------------
    def _feed(self, kind: str) -> _KindFeed:
        feed = self._feeds.get(kind)
        if feed is None:
            feed = self._feeds[kind] = _KindFeed(self._history)
        return feed

    def _catch_up(self, kind: str, feed: _KindFeed, since: Optional[int]) -> List[Dict[str, Any]]:
        if since is not None and 0 <= since <= feed.last_event_id:
            missed = [message for message in feed.history if message["eventId"] > since]
            oldest = feed.history[0]["eventId"] if feed.history else feed.last_event_id + 1
            if since == feed.last_event_id or oldest <= since + 1:
                return missed
        snapshot = self._snapshot(kind, self._store.get_collection(kind))
        snapshot["eventId"] = feed.last_event_id
        return [snapshot]

    def _translate(self, kind: str, change: str, payload: Any) -> List[Dict[str, Any]]:
        if change == "snapshot":
            items = payload if isinstance(payload, list) else self._store.get_collection(kind)
            return [self._snapshot(kind, items)]
        if change == "stale":
            return [self._message(kind, "stale", stale=True, loadState=self._load_state(kind))]
        if change == "remove":
            ids = [str(entity_id) for entity_id in payload or ()]
            return [self._message(kind, "remove", ids=ids)] if ids else []
        if change in UPSERT_CHANGES and isinstance(payload, Mapping):
            canonical_id = self._store.normalizer.try_canonical_id(kind, payload)
            if canonical_id is None:
                return []
            return [self._upsert(kind, change, canonical_id, dict(payload))]
        if change == "rolled_back" and isinstance(payload, Mapping):
            canonical_id = str(payload.get("id"))
            restored = self._store.collection(kind).get(canonical_id)
            if restored is None:
                return [self._message(kind, "remove", ids=[canonical_id])]
            return [self._upsert(kind, change, canonical_id, restored)]
        logger.debug("stream_change_ignored", kind=kind, change=change)
        return []

    def _snapshot(self, kind: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._message(
            kind,
            "snapshot",
            items=items,
            count=len(items),
            stale=self._store.is_stale(kind),
            loadState=self._load_state(kind),
        )

    def _upsert(
        self, kind: str, change: str, canonical_id: str, entity: Dict[str, Any]
    ) -> Dict[str, Any]:
        state = self._store.entity_state(kind, canonical_id)
        return self._message(
            kind,
            "upsert",
            change=change,
            id=canonical_id,
            state=state.value if state is not None else None,
            entity=entity,
        )

    def _message(self, kind: str, message_type: str, **fields: Any) -> Dict[str, Any]:
        return {"type": message_type, "kind": kind, "channel": self.channel, **fields}

    def _load_state(self, kind: str) -> str:
        return self._store.load_state(kind).value

    async def _send(self, websocket: WebSocket, message: Mapping[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
        except Exception as exc:
            logger.debug("stream_send_failed", channel=self.channel, error=str(exc))
            return False
        return True


__all__ = ["CacheChangeStream", "UPSERT_CHANGES"]
