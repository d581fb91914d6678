import pytest

from clinic_sync.errors import LoadGuardError
from clinic_sync.load_guard import LoadGuard, LoadState


def test_only_one_acquire_until_release() -> None:
    guard = LoadGuard()
    assert guard.state("patients") is LoadState.NOT_STARTED
    assert guard.try_acquire("patients") is True
    assert guard.try_acquire("patients") is False
    assert guard.state("patients") is LoadState.IN_FLIGHT


def test_successful_release_holds_key_for_session() -> None:
    guard = LoadGuard()
    guard.try_acquire("patients")
    assert guard.release("patients", True) is True
    assert guard.state("patients") is LoadState.LOADED
    assert guard.try_acquire("patients") is False


def test_failed_release_allows_retry() -> None:
    guard = LoadGuard()
    guard.try_acquire("patients")
    guard.release("patients", False)
    assert guard.state("patients") is LoadState.FAILED
    assert guard.try_acquire("patients") is True


def test_keys_are_independent() -> None:
    guard = LoadGuard()
    assert guard.try_acquire("patients")
    assert guard.try_acquire("appointments")
    assert guard.snapshot() == {"patients": "in_flight", "appointments": "in_flight"}


def test_release_without_fetch_is_illegal() -> None:
    guard = LoadGuard()
    with pytest.raises(LoadGuardError):
        guard.release("patients", True)


def test_restart_supersedes_in_flight_generation() -> None:
    guard = LoadGuard()
    guard.try_acquire("patients")
    first = guard.generation("patients")
    second = guard.restart("patients")

    assert second == first + 1
    assert not guard.is_current("patients", first)
    assert guard.release("patients", True, first) is False
    assert guard.state("patients") is LoadState.IN_FLIGHT
    assert guard.release("patients", True, second) is True


def test_abandon_only_touches_current_fetch() -> None:
    guard = LoadGuard()
    guard.try_acquire("patients")
    generation = guard.generation("patients")

    assert guard.abandon("patients", generation - 1) is False
    assert guard.abandon("patients", generation) is True
    assert guard.state("patients") is LoadState.FAILED
    assert not guard.is_current("patients", generation)
    assert guard.abandon("patients", generation) is False


def test_invalidate_resets_loaded_key() -> None:
    guard = LoadGuard()
    guard.try_acquire("patients")
    with pytest.raises(LoadGuardError):
        guard.invalidate("patients")
    guard.release("patients", True)
    guard.invalidate("patients")
    assert guard.try_acquire("patients") is True
