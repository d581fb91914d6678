"""Push channel transport backed by ``socketio.AsyncClient``."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import socketio
from socketio.exceptions import BadNamespaceError
from socketio.exceptions import ConnectionError as SocketConnectionError
import structlog

from clinic_sync.errors import TransportError


logger = structlog.get_logger(__name__)

EventHandler = Callable[..., Optional[Awaitable[None]]]


class PushTransport(Protocol):
    """Minimal surface the connection manager needs from a push channel."""

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def emit(self, event: str, data: Any = None) -> None: ...

    def on(self, event: str, handler: EventHandler) -> None: ...


class SocketIOTransport:
    """One socket.io connection without built-in reconnection."""

    def __init__(
        self,
        url: str,
        *,
        auth_token: Optional[str] = None,
        socketio_path: str = "socket.io",
        transports: Sequence[str] = ("websocket",),
        wait_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._auth_token = auth_token
        self._socketio_path = socketio_path
        self._transports = list(transports)
        self._wait_timeout = wait_timeout
        self._sio = socketio.AsyncClient(
            reconnection=False,
            logger=False,
            engineio_logger=False,
        )

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    async def connect(self) -> None:
        auth = {"token": self._auth_token} if self._auth_token else None
        headers = (
            {"Authorization": f"Bearer {self._auth_token}"} if self._auth_token else {}
        )
        try:
            await self._sio.connect(
                self.url,
                headers=headers,
                auth=auth,
                transports=self._transports,
                socketio_path=self._socketio_path,
                wait_timeout=self._wait_timeout,
            )
        except SocketConnectionError as exc:
            raise TransportError(f"socket connection to {self.url} failed: {exc}") from exc

    async def disconnect(self) -> None:
        if self._sio.connected:
            await self._sio.disconnect()

    async def emit(self, event: str, data: Any = None) -> None:
        try:
            await self._sio.emit(event, data)
        except BadNamespaceError as exc:
            raise TransportError(f"emit '{event}' failed: {exc}", stage="emit") from exc

    def on(self, event: str, handler: EventHandler) -> None:
        self._sio.on(event, handler=handler)


def socketio_transport_factory(
    url: str,
    *,
    socketio_path: str = "socket.io",
    wait_timeout: float = 10.0,
) -> Callable[[Optional[str]], SocketIOTransport]:
    """Return a factory building a fresh transport per connection attempt."""

    def _factory(auth_token: Optional[str]) -> SocketIOTransport:
        logger.debug("socket_transport_created", url=url, path=socketio_path)
        return SocketIOTransport(
            url,
            auth_token=auth_token,
            socketio_path=socketio_path,
            wait_timeout=wait_timeout,
        )

    return _factory


__all__ = ["EventHandler", "PushTransport", "SocketIOTransport", "socketio_transport_factory"]
