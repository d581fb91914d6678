"""Real-time cache synchronization for the clinic client."""

from clinic_sync.connection import ConnectionManager, ConnectionState
from clinic_sync.errors import (
    EntityNotFoundError,
    FetchError,
    IdentityError,
    LoadGuardError,
    MergeConflict,
    SyncError,
    TransportError,
    UnknownResourceError,
)
from clinic_sync.identity import IdentityNormalizer
from clinic_sync.load_guard import LoadGuard, LoadState
from clinic_sync.merger import Collection, EntityState, EntityUpsertMerger, MergeOutcome
from clinic_sync.resources import ResourceCatalog, ResourceKind
from clinic_sync.store import SyncStore
from clinic_sync.subscriptions import Disposer, SubscriptionRegistry
from clinic_sync.surface import Surface

__all__ = [
    "Collection",
    "ConnectionManager",
    "ConnectionState",
    "Disposer",
    "EntityNotFoundError",
    "EntityState",
    "EntityUpsertMerger",
    "FetchError",
    "IdentityError",
    "IdentityNormalizer",
    "LoadGuard",
    "LoadGuardError",
    "LoadState",
    "MergeConflict",
    "MergeOutcome",
    "ResourceCatalog",
    "ResourceKind",
    "SubscriptionRegistry",
    "Surface",
    "SyncError",
    "SyncStore",
    "TransportError",
    "UnknownResourceError",
]
