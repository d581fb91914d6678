"""Ownership of the single shared push connection."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from clinic_sync.errors import TransportError
from clinic_sync.observability import CONNECTION_UP, TRANSPORT_ERRORS
from clinic_sync.subscriptions import Disposer, SubscriptionRegistry
from clinic_sync.transport import PushTransport


logger = structlog.get_logger(__name__)

TransportFactory = Callable[[Optional[str]], PushTransport]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class ConnectionEvent:
    """Delivered to connection listeners on every state change."""

    state: ConnectionState
    error: Optional[TransportError] = None


ConnectionListener = Callable[[ConnectionEvent], Any]


class ConnectionManager:
    """Create, share and tear down the push transport.

    At most one live transport exists per manager.  Users that need the
    channel call :meth:`acquire` and :meth:`release`; the transport closes
    only when the last of them releases it.  Failures are reported to
    listeners and never retried here.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        registry: Optional[SubscriptionRegistry] = None,
        join_event: str = "join",
    ) -> None:
        self._factory = transport_factory
        self.registry = registry or SubscriptionRegistry()
        self.join_event = join_event
        self._transport: Optional[PushTransport] = None
        self._lock = asyncio.Lock()
        self._refcount = 0
        self._rooms: List[str] = []
        self._auth_token: Optional[str] = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: List[ConnectionListener] = []
        self._closing = False
        self.last_error: Optional[TransportError] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    @property
    def stale(self) -> bool:
        return not self.is_connected

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def rooms(self) -> List[str]:
        return list(self._rooms)

    def add_listener(self, listener: ConnectionListener) -> Disposer:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Disposer(_remove)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self, auth_token: Optional[str] = None) -> PushTransport:
        """Return the live transport, creating one if needed."""

        async with self._lock:
            if self.is_connected:
                return self._transport  # type: ignore[return-value]
            if auth_token is not None:
                self._auth_token = auth_token
            if self._transport is not None:
                logger.info("connection_discarding_closed_transport")
                await self._close_transport(self._transport)
                self._transport = None
                self.registry.unbind()

            transport = self._factory(self._auth_token)
            self._install_lifecycle(transport)
            self._set_state(ConnectionState.CONNECTING)
            try:
                await transport.connect()
            except TransportError as exc:
                self._fail(exc, "connect")
                raise
            except Exception as exc:
                error = TransportError(f"push channel connect failed: {exc}")
                self._fail(error, "connect")
                raise error from exc

            self._transport = transport
            self.registry.bind(transport)
            for room in self._rooms:
                await transport.emit(self.join_event, room)
                logger.info("connection_room_rejoined", room=room)
            self._set_state(ConnectionState.CONNECTED)
            return transport

    async def join_room(self, tenant_id: str) -> None:
        """Ask the server to add this connection to *tenant_id*'s room."""

        transport = self._transport
        if transport is None or not transport.connected:
            raise TransportError("cannot join room without a connection", stage="join")
        room = str(tenant_id)
        await transport.emit(self.join_event, room)
        if room not in self._rooms:
            self._rooms.append(room)
        logger.info("connection_room_joined", room=room)

    async def acquire(self, auth_token: Optional[str] = None) -> PushTransport:
        """Register one more user of the connection and ensure it is live."""

        self._refcount += 1
        try:
            return await self.connect(auth_token)
        except TransportError:
            self._refcount -= 1
            raise

    async def release(self) -> None:
        """Drop one user; the last release closes the transport."""

        if self._refcount == 0:
            logger.warning("connection_release_without_acquire")
            return
        self._refcount -= 1
        if self._refcount == 0:
            await self.disconnect()

    async def disconnect(self) -> None:
        """Close the transport unconditionally and forget all bindings."""

        async with self._lock:
            transport = self._transport
            self._transport = None
            self._rooms.clear()
            self._refcount = 0
            self.registry.unbind(clear=True)
            if transport is not None:
                await self._close_transport(transport)
            self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> PushTransport:
        """Replace the transport, rejoining rooms and keeping handlers."""

        async with self._lock:
            transport = self._transport
            self._transport = None
            self.registry.unbind()
            if transport is not None:
                await self._close_transport(transport)
        return await self.connect()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _install_lifecycle(self, transport: PushTransport) -> None:
        async def _on_disconnect(*_args: Any) -> None:
            if self._closing or transport is not self._transport:
                return
            self.registry.unbind()
            self._fail(TransportError("push channel dropped", stage="drop"), "drop")

        async def _on_connect_error(*args: Any) -> None:
            logger.warning("transport_connect_error", detail=str(args[0]) if args else None)

        transport.on("disconnect", _on_disconnect)
        transport.on("connect_error", _on_connect_error)

    async def _close_transport(self, transport: PushTransport) -> None:
        self._closing = True
        try:
            await transport.disconnect()
        except Exception as exc:
            logger.warning("transport_close_failed", error=str(exc))
        finally:
            self._closing = False

    def _fail(self, error: TransportError, stage: str) -> None:
        self.last_error = error
        TRANSPORT_ERRORS.labels(stage=stage).inc()
        logger.warning("transport_error", stage=stage, error=str(error))
        self._set_state(ConnectionState.FAILED, error)

    def _set_state(self, state: ConnectionState, error: Optional[TransportError] = None) -> None:
        self._state = state
        CONNECTION_UP.set(1 if state is ConnectionState.CONNECTED else 0)
        event = ConnectionEvent(state, error)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("connection_listener_failed", state=state.value)


__all__ = [
    "ConnectionEvent",
    "ConnectionListener",
    "ConnectionManager",
    "ConnectionState",
    "TransportFactory",
]
