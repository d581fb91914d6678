"""Resource kinds known to the cache and their push topics."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from clinic_sync.errors import UnknownResourceError


@dataclass(frozen=True)
class ResourceKind:
    """Describe how one entity kind is fetched, identified and pushed."""

    name: str
    endpoint: str
    list_topic: str
    id_fields: Tuple[str, ...] = ()
    create_topic: Optional[str] = None
    update_topic: Optional[str] = None
    singleton: bool = False
    label: str = ""

    @property
    def display_name(self) -> str:
        return self.label or self.name.replace("_", " ")

    @property
    def topics(self) -> Tuple[str, ...]:
        return tuple(
            topic
            for topic in (self.list_topic, self.create_topic, self.update_topic)
            if topic
        )


PATIENTS = ResourceKind(
    name="patients",
    label="patient",
    endpoint="/patients",
    list_topic="PATIENT_LIST",
    id_fields=("patientId", "id"),
    create_topic="CREATE_PATIENT",
    update_topic="UPDATE_PATIENT",
)
APPOINTMENTS = ResourceKind(
    name="appointments",
    label="appointment",
    endpoint="/appointments",
    list_topic="APPOINTMENT_LIST",
    id_fields=("appointmentId", "id"),
    create_topic="CREATE_APPOINTMENT",
    update_topic="UPDATE_APPOINTMENT",
)
DASHBOARD = ResourceKind(
    name="dashboard",
    label="dashboard",
    endpoint="/dashboard/stats",
    list_topic="DASHBOARD",
    singleton=True,
)
LOGIN_ACTIVITIES = ResourceKind(
    name="login_activities",
    label="login activity",
    endpoint="/login-activities",
    list_topic="LOGIN_ACTIVITY_LIST",
    id_fields=("activityId", "id"),
    create_topic="CREATE_LOGIN_ACTIVITY",
)
MESSAGES = ResourceKind(
    name="messages",
    label="message",
    endpoint="/messages",
    list_topic="MESSAGE_LIST",
    id_fields=("messageId", "id"),
    create_topic="CREATE_MESSAGE",
)
USER = ResourceKind(
    name="user",
    label="profile",
    endpoint="/user/profile",
    list_topic="USER",
    singleton=True,
)

DEFAULT_KINDS: Tuple[ResourceKind, ...] = (
    PATIENTS,
    APPOINTMENTS,
    DASHBOARD,
    LOGIN_ACTIVITIES,
    MESSAGES,
    USER,
)


class ResourceCatalog:
    """Name lookup over a fixed set of :class:`ResourceKind` entries."""

    def __init__(self, kinds: Iterable[ResourceKind] = DEFAULT_KINDS) -> None:
        self._kinds: Dict[str, ResourceKind] = {kind.name: kind for kind in kinds}

    def get(self, kind: str | ResourceKind) -> ResourceKind:
        if isinstance(kind, ResourceKind):
            return kind
        try:
            return self._kinds[kind]
        except KeyError:
            raise UnknownResourceError(kind) from None

    def names(self) -> Tuple[str, ...]:
        return tuple(self._kinds)

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def __iter__(self):
        return iter(self._kinds.values())


__all__ = [
    "APPOINTMENTS",
    "DASHBOARD",
    "DEFAULT_KINDS",
    "LOGIN_ACTIVITIES",
    "MESSAGES",
    "PATIENTS",
    "ResourceCatalog",
    "ResourceKind",
    "USER",
]
