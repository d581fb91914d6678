"""Local FastAPI gateway exposing the synchronized cache.

Renderers on the same machine read collections over HTTP, follow
per-entity cache changes over WebSocket and scrape Prometheus metrics.  The
gateway never talks to the clinic backend itself; all data flows through
the :class:`~clinic_sync.store.SyncStore`.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from structlog.contextvars import bind_contextvars, unbind_contextvars

from clinic_sync.api_client import ClinicApiClient
from clinic_sync.config import SyncSettings, get_sync_settings
from clinic_sync.connection import ConnectionManager
from clinic_sync.errors import (
    EntityNotFoundError,
    FetchError,
    SyncError,
    TransportError,
    UnknownResourceError,
)
from clinic_sync.notifications_service import NotificationCenter
from clinic_sync.observability import configure_logging
from clinic_sync.schemas import (
    CollectionResponse,
    EntityResponse,
    ErrorDetail,
    ErrorResponse,
    LoadResponse,
    MutationResponse,
    NotificationList,
    StatusResponse,
)
from clinic_sync.store import SyncStore
from clinic_sync.transport import socketio_transport_factory
from clinic_sync.ws_streams import CacheChangeStream


configure_logging(get_sync_settings().log_level)
logger = structlog.get_logger(__name__)


def build_store(settings: Optional[SyncSettings] = None) -> SyncStore:
    """Wire the socket.io transport and REST client into a store."""

    settings = settings or get_sync_settings()
    factory = socketio_transport_factory(
        settings.resolved_socket_url,
        socketio_path=settings.socketio_path,
        wait_timeout=settings.connect_timeout,
    )
    connection = ConnectionManager(factory, join_event=settings.join_event)
    api = ClinicApiClient(
        settings.api_base_url,
        token=settings.auth_token,
        timeout=settings.http_timeout,
    )
    return SyncStore(
        connection,
        api,
        notifications=NotificationCenter(history_limit=settings.notification_history),
        tenant_id=settings.tenant_id,
        auth_token=settings.auth_token,
    )


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(code=status_code, message=message, **extra))
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


def _collection_payload(store: SyncStore, kind: str) -> Dict[str, Any]:
    items = store.get_collection(kind)
    return {
        "items": items,
        "count": len(items),
        "stale": store.is_stale(kind),
        "loadState": store.load_state(kind).value,
    }


def create_app(
    store: Optional[SyncStore] = None,
    *,
    settings: Optional[SyncSettings] = None,
    autostart: Optional[bool] = None,
) -> FastAPI:
    """Build the gateway around *store*.

    ``autostart`` controls whether the lifespan acquires the push connection;
    by default it does so only when a socket URL is configured.
    """

    settings = settings or get_sync_settings()
    store = store or build_store(settings)
    if autostart is None:
        autostart = settings.push_enabled
    stream = CacheChangeStream(store, history=settings.stream_history)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("gateway_startup", autostart=autostart, kinds=list(store.catalog.names()))
        disposer = store.add_change_listener(stream.publish)
        if autostart:
            try:
                await store.start()
            except TransportError as exc:
                logger.warning("gateway_push_unavailable", error=str(exc))
        try:
            yield
        finally:
            disposer()
            await stream.close()
            await store.stop()
            store.close()
            if store.api is not None:
                store.api.close()
            logger.info("gateway_shutdown_complete")

    app = FastAPI(title="Clinic Sync Gateway", lifespan=lifespan)
    app.state.store = store
    app.state.stream = stream

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):
        """Attach or propagate a trace identifier for each request."""

        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        finally:
            unbind_contextvars("trace_id", "path", "method")
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(UnknownResourceError)
    async def unknown_resource_handler(request: Request, exc: UnknownResourceError) -> JSONResponse:
        return _error_response(404, str(exc), kind=exc.kind)

    @app.exception_handler(EntityNotFoundError)
    async def not_found_handler(request: Request, exc: EntityNotFoundError) -> JSONResponse:
        return _error_response(404, str(exc), kind=exc.kind)

    @app.exception_handler(FetchError)
    async def fetch_error_handler(request: Request, exc: FetchError) -> JSONResponse:
        return _error_response(502, str(exc), kind=exc.kind, upstreamStatus=exc.status_code)

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
        return _error_response(503, str(exc), stage=exc.stage)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        logger.warning("gateway_sync_error", path=request.url.path, error=str(exc))
        return _error_response(409, str(exc))

    @app.get("/api/cache/{kind}", response_model=CollectionResponse)
    async def get_collection(kind: str) -> CollectionResponse:
        name = store.catalog.get(kind).name
        return CollectionResponse(kind=name, **_collection_payload(store, name))

    @app.post("/api/cache/{kind}", response_model=MutationResponse)
    async def write_entity(kind: str, changes: Dict[str, Any]) -> MutationResponse:
        name = store.catalog.get(kind).name
        entity = await store.apply_optimistic(name, changes)
        return MutationResponse(kind=name, entity=entity)

    @app.post("/api/cache/{kind}/load", response_model=LoadResponse)
    async def load_collection(kind: str) -> LoadResponse:
        name = store.catalog.get(kind).name
        fetched = await store.load_once(name)
        return LoadResponse(
            kind=name,
            fetched=fetched,
            loadState=store.load_state(name).value,
            count=len(store.collection(name)),
        )

    @app.post("/api/cache/{kind}/refresh", response_model=LoadResponse)
    async def refresh_collection(kind: str) -> LoadResponse:
        name = store.catalog.get(kind).name
        fetched = await store.refresh(name)
        return LoadResponse(
            kind=name,
            fetched=fetched,
            loadState=store.load_state(name).value,
            count=len(store.collection(name)),
        )

    @app.get("/api/cache/{kind}/{entity_id}", response_model=EntityResponse)
    async def get_entity(kind: str, entity_id: str, fetch: bool = False) -> EntityResponse:
        name = store.catalog.get(kind).name
        entity = store.get_entity(name, entity_id)
        if entity is None and fetch:
            entity = await store.fetch_entity(name, entity_id)
        if entity is None:
            raise EntityNotFoundError(name, entity_id)
        state = store.entity_state(name, entity_id)
        return EntityResponse(
            kind=name,
            id=entity_id,
            entity=entity,
            state=state.value if state else None,
            stale=store.is_stale(name),
        )

    @app.get("/api/status", response_model=StatusResponse)
    async def get_status() -> StatusResponse:
        return StatusResponse(**store.status())

    @app.get("/api/notifications", response_model=NotificationList)
    async def list_notifications(limit: Optional[int] = None) -> NotificationList:
        return NotificationList(items=store.notifications.recent(limit))

    @app.delete("/api/notifications/{notification_id}", status_code=204)
    async def dismiss_notification(notification_id: str) -> Response:
        if not store.notifications.dismiss(notification_id):
            return _error_response(404, f"notification '{notification_id}' not found")
        return Response(status_code=204)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.websocket("/ws/cache/{kind}")
    async def cache_stream(websocket: WebSocket, kind: str, since: Optional[int] = None) -> None:
        if kind not in store.catalog:
            logger.warning("stream_unknown_kind", kind=kind)
            await websocket.close(code=1008)
            return
        await stream.handle(websocket, kind, since=since)

    return app


app = create_app()


__all__ = ["app", "build_store", "create_app"]
