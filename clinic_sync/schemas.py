"""Response models for the cache gateway."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


class CollectionResponse(BaseModel):
    kind: str
    items: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0
    stale: bool = False
    loadState: str


class EntityResponse(BaseModel):
    kind: str
    id: str
    entity: Dict[str, Any]
    state: Optional[str] = None
    stale: bool = False


class LoadResponse(BaseModel):
    kind: str
    fetched: bool
    loadState: str
    count: int


class MutationResponse(BaseModel):
    kind: str
    entity: Dict[str, Any]


class KindStatus(BaseModel):
    loadState: str
    count: int
    listeners: int
    stale: bool


class StatusResponse(BaseModel):
    connection: str
    stale: bool
    rooms: List[str] = Field(default_factory=list)
    lastError: Optional[str] = None
    kinds: Dict[str, KindStatus] = Field(default_factory=dict)


class NotificationItem(BaseModel):
    id: str
    title: str
    message: str
    type: Literal["info", "success", "warning", "error"] = "info"
    timestamp: str
    context: Optional[Dict[str, Any]] = None


class NotificationList(BaseModel):
    items: List[NotificationItem] = Field(default_factory=list)


__all__ = [
    "CollectionResponse",
    "EntityResponse",
    "ErrorDetail",
    "ErrorResponse",
    "KindStatus",
    "LoadResponse",
    "MutationResponse",
    "NotificationItem",
    "NotificationList",
    "StatusResponse",
]
