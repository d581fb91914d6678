import asyncio

import pytest

from clinic_sync.connection import ConnectionManager, ConnectionState
from clinic_sync.errors import TransportError

from conftest import metric_value


@pytest.mark.asyncio
async def test_connect_is_idempotent(connection, transport_factory) -> None:
    first = await connection.connect("token-1")
    second = await connection.connect()

    assert first is second
    assert len(transport_factory.created) == 1
    assert transport_factory.latest.auth_token == "token-1"
    assert connection.state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_overlapping_callers_share_one_connection(connection, transport_factory) -> None:
    transport_factory.connect_delay = 0.01

    first, second, third = await asyncio.gather(
        connection.acquire("token-1"), connection.acquire(), connection.connect()
    )

    assert first is second is third
    assert len(transport_factory.created) == 1
    assert transport_factory.latest.connect_calls == 1
    assert connection.refcount == 2
    assert connection.state is ConnectionState.CONNECTED

    await connection.release()
    assert transport_factory.latest.connected
    await connection.release()
    assert not transport_factory.latest.connected


@pytest.mark.asyncio
async def test_last_release_closes_transport(connection, transport_factory) -> None:
    await connection.acquire()
    await connection.acquire()
    transport = transport_factory.latest

    await connection.release()
    assert connection.refcount == 1
    assert transport.connected

    await connection.release()
    assert connection.refcount == 0
    assert not transport.connected
    assert connection.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_failure_is_reported(connection, transport_factory) -> None:
    events = []
    connection.add_listener(events.append)
    transport_factory.fail_next = True
    before = metric_value("clinic_sync_transport_errors_total", stage="connect")

    with pytest.raises(TransportError):
        await connection.acquire()

    assert connection.refcount == 0
    assert connection.state is ConnectionState.FAILED
    assert connection.stale
    assert [event.state for event in events] == [
        ConnectionState.CONNECTING,
        ConnectionState.FAILED,
    ]
    assert isinstance(events[-1].error, TransportError)
    assert metric_value("clinic_sync_transport_errors_total", stage="connect") == before + 1


@pytest.mark.asyncio
async def test_half_closed_transport_is_replaced(connection, transport_factory) -> None:
    await connection.connect()
    stale = transport_factory.latest
    stale.connected = False

    fresh = await connection.connect()

    assert fresh is not stale
    assert len(transport_factory.created) == 2
    assert stale.disconnect_calls == 1


@pytest.mark.asyncio
async def test_drop_marks_stale_and_reconnect_restores_rooms(connection, transport_factory) -> None:
    received = []
    await connection.connect()
    await connection.join_room("clinic-1")
    connection.registry.subscribe("CREATE_PATIENT", received.append)

    await transport_factory.latest.drop()
    assert connection.state is ConnectionState.FAILED
    assert connection.stale
    assert connection.last_error.stage == "drop"

    await connection.reconnect()
    fresh = transport_factory.latest
    assert fresh.emitted == [("join", "clinic-1")]
    await fresh.fire("CREATE_PATIENT", {"id": 1})
    assert received == [{"id": 1}]


@pytest.mark.asyncio
async def test_join_room_requires_connection(connection) -> None:
    with pytest.raises(TransportError) as excinfo:
        await connection.join_room("clinic-1")
    assert excinfo.value.stage == "join"


@pytest.mark.asyncio
async def test_disconnect_forgets_rooms_and_handlers(connection, transport_factory) -> None:
    await connection.connect()
    await connection.join_room("clinic-1")
    connection.registry.subscribe("PATIENT_LIST", lambda payload: None)

    await connection.disconnect()

    assert connection.rooms == []
    assert connection.registry.topics() == []
    await connection.connect()
    assert transport_factory.latest.emitted == []


@pytest.mark.asyncio
async def test_custom_join_event(transport_factory) -> None:
    connection = ConnectionManager(transport_factory, join_event="joinTenant")
    await connection.connect()
    await connection.join_room(7)
    assert transport_factory.latest.emitted == [("joinTenant", "7")]
