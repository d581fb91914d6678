"""Canonical identity for cached entities.

Backend payloads do not agree on a single identifier field: a patient may
arrive as ``{"patientId": "P-7"}`` from one endpoint and ``{"id": 7}`` from
another, and the same appointment may be referenced with a numeric or string
id.  Every cache operation keys entities by the string returned from
:meth:`IdentityNormalizer.canonical_id` so these variants land in one slot.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping, Optional

from clinic_sync.errors import IdentityError
from clinic_sync.resources import ResourceCatalog, ResourceKind


LOCAL_ID_FIELD = "_localId"
PLACEHOLDER_PREFIX = "local-"
SINGLETON_ID = "current"


def new_placeholder_id() -> str:
    """Return a locally unique id for an optimistic entity."""

    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"


def is_placeholder(canonical_id: Optional[str]) -> bool:
    return bool(canonical_id) and str(canonical_id).startswith(PLACEHOLDER_PREFIX)


def normalize_id(value: Any) -> Optional[str]:
    """Stringify a raw identifier value; ``None`` when it cannot identify anything."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).strip()
    return text or None


class IdentityNormalizer:
    """Derive the canonical id of an entity from its candidate fields."""

    def __init__(self, catalog: Optional[ResourceCatalog] = None) -> None:
        self._catalog = catalog or ResourceCatalog()

    def canonical_id(self, kind: str | ResourceKind, entity: Mapping[str, Any]) -> str:
        """Return the first present candidate identifier, stringified."""

        resource = self._catalog.get(kind)
        if resource.singleton:
            return SINGLETON_ID
        if isinstance(entity, Mapping):
            for field_name in resource.id_fields + (LOCAL_ID_FIELD,):
                value = normalize_id(entity.get(field_name))
                if value is not None:
                    return value
        raise IdentityError(resource.name, resource.id_fields, entity)

    def try_canonical_id(
        self, kind: str | ResourceKind, entity: Mapping[str, Any]
    ) -> Optional[str]:
        try:
            return self.canonical_id(kind, entity)
        except IdentityError:
            return None

    def server_id(self, kind: str | ResourceKind, entity: Mapping[str, Any]) -> Optional[str]:
        """Return the identifier assigned by the backend, ignoring placeholders."""

        resource = self._catalog.get(kind)
        for field_name in resource.id_fields:
            value = normalize_id(entity.get(field_name))
            if value is not None:
                return value
        return None


__all__ = [
    "IdentityNormalizer",
    "LOCAL_ID_FIELD",
    "PLACEHOLDER_PREFIX",
    "SINGLETON_ID",
    "is_placeholder",
    "normalize_id",
    "new_placeholder_id",
]
