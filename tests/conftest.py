import asyncio
import copy
import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from prometheus_client import REGISTRY

from clinic_sync.connection import ConnectionManager
from clinic_sync.errors import EntityNotFoundError, TransportError
from clinic_sync.store import SyncStore


class FakeTransport:
    """In-memory stand-in for a socket.io client."""

    def __init__(
        self,
        auth_token: Optional[str] = None,
        *,
        fail: bool = False,
        connect_delay: float = 0.0,
    ) -> None:
        self.auth_token = auth_token
        self.fail = fail
        self.connect_delay = connect_delay
        self.connect_calls = 0
        self.connected = False
        self.handlers: Dict[str, Any] = {}
        self.emitted: List[tuple] = []
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail:
            raise TransportError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise TransportError(f"emit '{event}' failed", stage="emit")
        self.emitted.append((event, data))

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def fire(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            await handler(*args)

    async def drop(self) -> None:
        """Simulate the server closing the channel."""

        self.connected = False
        await self.fire("disconnect")


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: List[FakeTransport] = []
        self.fail_next = False
        self.connect_delay = 0.0

    def __call__(self, auth_token: Optional[str]) -> FakeTransport:
        transport = FakeTransport(
            auth_token, fail=self.fail_next, connect_delay=self.connect_delay
        )
        self.fail_next = False
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class FakeApi:
    """Backend double answering from in-memory collections."""

    def __init__(self) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.mutations: List[tuple] = []
        self.fail: Optional[Exception] = None
        self.mutate_error: Optional[Exception] = None
        self.next_id = 100
        self.closed = False

    async def fetch_all(self, kind: str) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_all", kind))
        if self.fail is not None:
            raise self.fail
        return copy.deepcopy(self.collections.get(kind, []))

    async def fetch_one(self, kind: str, entity_id: str) -> Dict[str, Any]:
        self.calls.append(("fetch_one", kind, entity_id))
        if self.fail is not None:
            raise self.fail
        for entity in self.collections.get(kind, []):
            if str(entity.get("id")) == str(entity_id):
                return copy.deepcopy(entity)
        raise EntityNotFoundError(kind, entity_id)

    async def mutate(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.mutations.append((kind, dict(payload)))
        if self.mutate_error is not None:
            raise self.mutate_error
        result = dict(payload)
        if "id" not in result:
            result["id"] = self.next_id
            self.next_id += 1
        return result

    def close(self) -> None:
        self.closed = True


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: str | None = None) -> None:
        self.status_code = status_code
        self._body = body
        if text is not None:
            self.text = text
        else:
            self.text = json.dumps(body) if body is not None else ""
        self.content = self.text.encode()

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body


class FakeSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append(
            {"method": method, "url": url, "json": json, "headers": headers, "timeout": timeout}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


def metric_value(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def connection(transport_factory: FakeTransportFactory) -> ConnectionManager:
    return ConnectionManager(transport_factory)


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def store(connection: ConnectionManager, fake_api: FakeApi) -> SyncStore:
    return SyncStore(connection, fake_api, tenant_id="clinic-1", auth_token="secret")
