import pytest

from clinic_sync.subscriptions import Disposer, SubscriptionRegistry

from conftest import FakeTransport


def test_disposer_runs_once() -> None:
    calls = []
    disposer = Disposer(lambda: calls.append(1))
    disposer()
    disposer()
    assert calls == [1]
    assert disposer.disposed


def test_subscribe_without_transport_is_a_no_op() -> None:
    registry = SubscriptionRegistry()
    disposer = registry.subscribe("PATIENT_LIST", lambda payload: None)
    assert registry.count("PATIENT_LIST") == 0
    disposer()


@pytest.mark.asyncio
async def test_each_disposer_removes_only_its_handler() -> None:
    transport = FakeTransport()
    registry = SubscriptionRegistry()
    registry.bind(transport)
    first, second = [], []
    dispose_first = registry.subscribe("CREATE_PATIENT", first.append)
    registry.subscribe("CREATE_PATIENT", second.append)

    await transport.fire("CREATE_PATIENT", {"id": 1})
    dispose_first()
    await transport.fire("CREATE_PATIENT", {"id": 2})

    assert first == [{"id": 1}]
    assert second == [{"id": 1}, {"id": 2}]
    assert registry.count("CREATE_PATIENT") == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others() -> None:
    transport = FakeTransport()
    registry = SubscriptionRegistry()
    registry.bind(transport)
    received = []

    def _boom(payload):
        raise RuntimeError("handler bug")

    async def _record(payload):
        received.append(payload)

    registry.subscribe("UPDATE_PATIENT", _boom)
    registry.subscribe("UPDATE_PATIENT", _record)
    await transport.fire("UPDATE_PATIENT", {"id": 1})

    assert received == [{"id": 1}]


@pytest.mark.asyncio
async def test_rebind_moves_handlers_to_new_transport() -> None:
    old, new = FakeTransport(), FakeTransport()
    registry = SubscriptionRegistry()
    registry.bind(old)
    received = []
    registry.subscribe("PATIENT_LIST", received.append)

    registry.unbind()
    registry.bind(new)
    await old.fire("PATIENT_LIST", ["stale"])
    await new.fire("PATIENT_LIST", ["fresh"])

    assert received == [["fresh"]]
    assert registry.topics() == ["PATIENT_LIST"]


def test_unbind_with_clear_forgets_handlers() -> None:
    registry = SubscriptionRegistry()
    registry.bind(FakeTransport())
    registry.subscribe("PATIENT_LIST", lambda payload: None)
    registry.unbind(clear=True)
    assert registry.topics() == []
    assert not registry.bound
