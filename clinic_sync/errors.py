"""Error types raised by the cache synchronization layer."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class SyncError(Exception):
    """Base class for every error raised by :mod:`clinic_sync`."""


class UnknownResourceError(SyncError, KeyError):
    """Raised when a resource kind name is not registered."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"unknown resource kind '{kind}'")

    def __str__(self) -> str:
        return self.args[0]


class TransportError(SyncError):
    """The push channel failed to connect or was dropped."""

    def __init__(self, message: str, *, stage: str = "connect") -> None:
        self.stage = stage
        super().__init__(message)


class FetchError(SyncError):
    """A snapshot, single-entity fetch or mutation call failed."""

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)


class EntityNotFoundError(FetchError):
    """The backend answered 404 for a single-entity fetch."""

    def __init__(self, kind: str, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(kind, f"{kind} '{entity_id}' not found", status_code=404)


class IdentityError(SyncError):
    """An entity carries none of the identifier fields for its kind."""

    def __init__(self, kind: str, candidates: Iterable[str], entity: Any = None) -> None:
        self.kind = kind
        self.candidates = tuple(candidates)
        self.fields = sorted(entity.keys()) if isinstance(entity, dict) else []
        super().__init__(
            f"{kind} entity has no identifier (tried {', '.join(self.candidates)})"
        )


class MergeConflict(SyncError):
    """An update targets an entity the collection has never seen."""

    def __init__(self, kind: str, canonical_id: str) -> None:
        self.kind = kind
        self.canonical_id = canonical_id
        super().__init__(f"update for unknown {kind} '{canonical_id}'")


class LoadGuardError(SyncError):
    """Illegal load-state transition."""


__all__ = [
    "EntityNotFoundError",
    "FetchError",
    "IdentityError",
    "LoadGuardError",
    "MergeConflict",
    "SyncError",
    "TransportError",
    "UnknownResourceError",
]
