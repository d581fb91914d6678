"""Runtime configuration for the sync layer and its local gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv


DEFAULT_API_BASE_URL = "http://localhost:3000/api"


@dataclass(frozen=True)
class SyncSettings:
    """Resolved settings for the REST adapter, push channel and gateway."""

    api_base_url: str = DEFAULT_API_BASE_URL
    socket_url: Optional[str] = None
    socketio_path: str = "socket.io"
    tenant_id: Optional[str] = None
    auth_token: Optional[str] = None
    http_timeout: float = 10.0
    connect_timeout: float = 10.0
    join_event: str = "join"
    notification_history: int = 20
    stream_history: int = 100
    log_level: str = "INFO"

    @property
    def resolved_socket_url(self) -> str:
        """Socket endpoint; defaults to the API origin without its path."""

        if self.socket_url:
            return self.socket_url
        parts = urlsplit(self.api_base_url)
        return urlunsplit((parts.scheme, parts.netloc, "", "", ""))

    @property
    def push_enabled(self) -> bool:
        return bool(self.socket_url)


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_sync_settings() -> SyncSettings:
    """Return the active settings derived from the environment."""

    load_dotenv()
    return SyncSettings(
        api_base_url=(os.getenv("CLINIC_SYNC_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/"),
        socket_url=os.getenv("CLINIC_SYNC_SOCKET_URL") or None,
        socketio_path=os.getenv("CLINIC_SYNC_SOCKETIO_PATH", "socket.io"),
        tenant_id=os.getenv("CLINIC_SYNC_TENANT_ID") or None,
        auth_token=os.getenv("CLINIC_SYNC_AUTH_TOKEN") or None,
        http_timeout=_get_float_env("CLINIC_SYNC_HTTP_TIMEOUT", 10.0),
        connect_timeout=_get_float_env("CLINIC_SYNC_CONNECT_TIMEOUT", 10.0),
        join_event=os.getenv("CLINIC_SYNC_JOIN_EVENT", "join"),
        notification_history=_get_int_env("CLINIC_SYNC_NOTIFICATION_HISTORY", 20),
        stream_history=_get_int_env("CLINIC_SYNC_STREAM_HISTORY", 100),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["DEFAULT_API_BASE_URL", "SyncSettings", "get_sync_settings"]
