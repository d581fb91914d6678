"""REST fetch adapter for the clinic backend.

The sync layer only needs three calls from the backend: a full list per
resource kind, a single entity by id, and a mutation that returns the
authoritative entity.  Requests run on a worker thread so the event loop
keeps delivering push events while a fetch is outstanding.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
import structlog

from clinic_sync.errors import EntityNotFoundError, FetchError
from clinic_sync.identity import LOCAL_ID_FIELD, IdentityNormalizer, is_placeholder
from clinic_sync.observability import FETCH_LATENCY, FETCHES
from clinic_sync.resources import ResourceCatalog, ResourceKind


logger = structlog.get_logger(__name__)

HTTP_TIMEOUT_SECONDS = 10.0
LIST_KEYS = ("items", "results")


def _error_detail(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text[:200] or None
    if isinstance(body, Mapping):
        for key in ("details", "error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _unwrap(body: Any) -> Any:
    if isinstance(body, Mapping) and isinstance(body.get("data"), (list, Mapping)):
        return body["data"]
    return body


class ClinicApiClient:
    """Blocking ``requests`` calls exposed as coroutines."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        catalog: Optional[ResourceCatalog] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.catalog = catalog or ResourceCatalog()
        self._normalizer = IdentityNormalizer(self.catalog)
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def fetch_all(self, kind: str | ResourceKind) -> List[Dict[str, Any]]:
        """Return the full ordered list for *kind*."""

        resource = self.catalog.get(kind)
        body = await self._call(resource, "GET", resource.endpoint)
        if resource.singleton:
            if not isinstance(body, Mapping):
                raise FetchError(resource.name, f"unexpected {resource.name} payload")
            return [dict(body)]
        if isinstance(body, Mapping):
            body = next(
                (body[key] for key in LIST_KEYS if isinstance(body.get(key), list)),
                None,
            )
        if not isinstance(body, list):
            raise FetchError(resource.name, f"unexpected {resource.name} payload")
        return [dict(item) for item in body if isinstance(item, Mapping)]

    async def fetch_one(self, kind: str | ResourceKind, entity_id: str) -> Dict[str, Any]:
        """Return a single entity; raise :class:`EntityNotFoundError` on 404."""

        resource = self.catalog.get(kind)
        path = resource.endpoint
        if not resource.singleton:
            path = f"{resource.endpoint}/{quote(str(entity_id), safe='')}"
        body = await self._call(resource, "GET", path, entity_id=str(entity_id))
        if not isinstance(body, Mapping):
            raise FetchError(resource.name, f"unexpected {resource.name} payload")
        return dict(body)

    async def mutate(self, kind: str | ResourceKind, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Create or update an entity and return the server's copy."""

        resource = self.catalog.get(kind)
        body = {k: v for k, v in payload.items() if k != LOCAL_ID_FIELD}
        entity_id = self._normalizer.server_id(resource, body)
        if resource.singleton:
            method, path = "PUT", resource.endpoint
        elif entity_id and not is_placeholder(entity_id):
            method = "PUT"
            path = f"{resource.endpoint}/{quote(entity_id, safe='')}"
        else:
            method, path = "POST", resource.endpoint
        result = await self._call(resource, method, path, json=body)
        if not isinstance(result, Mapping):
            raise FetchError(resource.name, f"unexpected {resource.name} mutation response")
        return dict(result)

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _call(
        self,
        resource: ResourceKind,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> Any:
        started = time.perf_counter()
        try:
            body = await asyncio.to_thread(
                self._request, resource, method, path, json, entity_id
            )
        except FetchError:
            FETCHES.labels(kind=resource.name, status="error").inc()
            raise
        finally:
            FETCH_LATENCY.labels(kind=resource.name).observe(time.perf_counter() - started)
        FETCHES.labels(kind=resource.name, status="ok").inc()
        return body

    def _request(
        self,
        resource: ResourceKind,
        method: str,
        path: str,
        json: Optional[Mapping[str, Any]],
        entity_id: Optional[str],
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=dict(json) if json is not None else None,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("api_request_failed", kind=resource.name, method=method, url=url, error=str(exc))
            raise FetchError(resource.name, f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404 and entity_id is not None:
            raise EntityNotFoundError(resource.name, entity_id)
        if response.status_code >= 400:
            detail = _error_detail(response) or f"HTTP {response.status_code}"
            logger.warning(
                "api_request_rejected",
                kind=resource.name,
                method=method,
                url=url,
                status=response.status_code,
                detail=detail,
            )
            raise FetchError(resource.name, detail, status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise FetchError(resource.name, f"{method} {path} returned invalid JSON") from exc


__all__ = ["ClinicApiClient", "HTTP_TIMEOUT_SECONDS"]
