"""Logging configuration and Prometheus metrics for the sync layer."""

from __future__ import annotations

import logging

import structlog
from prometheus_client import REGISTRY, Counter, Gauge, Histogram


_CONFIGURED = False


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog JSON output on top of stdlib logging."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=()):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


CACHE_MUTATIONS = _get_or_create_metric(
    Counter,
    "clinic_sync_cache_mutations_total",
    "Entity writes applied to a cached collection",
    ("kind", "outcome"),
)
EVENTS_DROPPED = _get_or_create_metric(
    Counter,
    "clinic_sync_events_dropped_total",
    "Entity writes discarded instead of being applied",
    ("kind", "reason"),
)
FETCHES = _get_or_create_metric(
    Counter,
    "clinic_sync_fetches_total",
    "REST fetches issued by the sync layer",
    ("kind", "status"),
)
FETCH_LATENCY = _get_or_create_metric(
    Histogram,
    "clinic_sync_fetch_seconds",
    "Latency of REST fetches",
    ("kind",),
)
TRANSPORT_ERRORS = _get_or_create_metric(
    Counter,
    "clinic_sync_transport_errors_total",
    "Push channel failures",
    ("stage",),
)
CONNECTION_UP = _get_or_create_metric(
    Gauge,
    "clinic_sync_connection_up",
    "1 while the push channel is connected",
)
COLLECTION_SIZE = _get_or_create_metric(
    Gauge,
    "clinic_sync_collection_size",
    "Entities currently cached per kind",
    ("kind",),
)


def record_drop(kind: str, reason: str) -> None:
    EVENTS_DROPPED.labels(kind=kind, reason=reason).inc()


def record_mutation(kind: str, outcome: str) -> None:
    CACHE_MUTATIONS.labels(kind=kind, outcome=outcome).inc()


__all__ = [
    "CACHE_MUTATIONS",
    "COLLECTION_SIZE",
    "CONNECTION_UP",
    "EVENTS_DROPPED",
    "FETCHES",
    "FETCH_LATENCY",
    "TRANSPORT_ERRORS",
    "configure_logging",
    "record_drop",
    "record_mutation",
]
