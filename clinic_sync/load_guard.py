"""Per-resource load state machine with fetch generations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Dict, Optional

import structlog

from clinic_sync.errors import LoadGuardError


logger = structlog.get_logger(__name__)


class LoadState(str, Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    LOADED = "loaded"
    FAILED = "failed"


_ACQUIRE_FROM = {LoadState.NOT_STARTED, LoadState.FAILED}
_INVALIDATE_FROM = {LoadState.NOT_STARTED, LoadState.LOADED, LoadState.FAILED}


@dataclass
class _Token:
    state: LoadState = LoadState.NOT_STARTED
    generation: int = 0


class LoadGuard:
    """Admit one initial fetch per resource key.

    ``try_acquire`` succeeds once until ``release``; a successful release
    holds the key for the rest of the session, a failed one allows a retry.
    Every acquire bumps the key's generation so results of superseded
    fetches can be recognised and discarded.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, _Token] = {}
        self._lock = Lock()

    def _token(self, key: str) -> _Token:
        token = self._tokens.get(key)
        if token is None:
            token = self._tokens[key] = _Token()
        return token

    def state(self, key: str) -> LoadState:
        with self._lock:
            return self._token(key).state

    def generation(self, key: str) -> int:
        with self._lock:
            return self._token(key).generation

    def is_current(self, key: str, generation: int) -> bool:
        with self._lock:
            return self._token(key).generation == generation

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            token = self._token(key)
            if token.state not in _ACQUIRE_FROM:
                return False
            token.state = LoadState.IN_FLIGHT
            token.generation += 1
            return True

    def restart(self, key: str) -> int:
        """Force a new fetch generation, superseding any fetch in flight."""

        with self._lock:
            token = self._token(key)
            if token.state is LoadState.IN_FLIGHT:
                logger.debug("load_superseded", key=key, generation=token.generation)
            token.state = LoadState.IN_FLIGHT
            token.generation += 1
            return token.generation

    def release(self, key: str, success: bool, generation: Optional[int] = None) -> bool:
        """Settle the in-flight fetch for *key*.

        Returns ``False`` when *generation* is stale and the release was
        ignored.
        """

        with self._lock:
            token = self._token(key)
            if generation is not None and generation != token.generation:
                return False
            if token.state is not LoadState.IN_FLIGHT:
                raise LoadGuardError(
                    f"cannot release '{key}' from state {token.state.value}"
                )
            token.state = LoadState.LOADED if success else LoadState.FAILED
            return True

    def abandon(self, key: str, generation: int) -> bool:
        """Drop an in-flight fetch whose requester went away."""

        with self._lock:
            token = self._token(key)
            if token.generation != generation or token.state is not LoadState.IN_FLIGHT:
                return False
            token.generation += 1
            token.state = LoadState.FAILED
            return True

    def invalidate(self, key: str) -> None:
        with self._lock:
            token = self._token(key)
            if token.state not in _INVALIDATE_FROM:
                raise LoadGuardError(
                    f"cannot invalidate '{key}' while a fetch is in flight"
                )
            token.state = LoadState.NOT_STARTED

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return {key: token.state.value for key, token in self._tokens.items()}


__all__ = ["LoadGuard", "LoadState"]
