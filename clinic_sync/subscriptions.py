"""Per-topic listener registration on top of the shared push transport."""

from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from clinic_sync.transport import PushTransport


logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Any]


class Disposer:
    """Idempotent callable that undoes one registration."""

    def __init__(self, callback: Optional[Callable[[], None]] = None) -> None:
        self._callback = callback
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __call__(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._callback is not None:
            self._callback()
            self._callback = None


@dataclass(eq=False)
class Subscription:
    topic: str
    handler: Handler
    active: bool = True


class SubscriptionRegistry:
    """Fan push events out to the handlers registered for each topic.

    The registry installs one dispatcher per topic on the bound transport.
    Each :meth:`subscribe` call returns a disposer that removes only its own
    handler, so independent subscribers to a topic never interfere.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._transport: Optional[PushTransport] = None
        self._installed: Set[str] = set()

    @property
    def bound(self) -> bool:
        return self._transport is not None

    def subscribe(self, topic: str, handler: Handler) -> Disposer:
        """Register *handler* for *topic* on the current connection.

        Without a connection this is a no-op and the returned disposer does
        nothing.
        """

        if self._transport is None:
            logger.debug("subscribe_without_connection", topic=topic)
            return Disposer()
        subscription = Subscription(topic, handler)
        self._subscriptions[topic].append(subscription)
        self._install(topic)
        return Disposer(lambda: self._remove(subscription))

    def count(self, topic: str) -> int:
        return sum(1 for sub in self._subscriptions.get(topic, ()) if sub.active)

    def topics(self) -> List[str]:
        return [topic for topic, subs in self._subscriptions.items() if subs]

    async def dispatch(self, topic: str, payload: Any) -> int:
        """Deliver *payload* to every active handler of *topic*."""

        delivered = 0
        for subscription in list(self._subscriptions.get(topic, ())):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("subscription_handler_failed", topic=topic)
        return delivered

    def bind(self, transport: PushTransport) -> None:
        """Attach to a fresh transport and reinstall every known topic."""

        self._transport = transport
        self._installed = set()
        for topic in list(self._subscriptions):
            self._install(topic)

    def unbind(self, *, clear: bool = False) -> None:
        """Detach from the transport; ``clear`` also drops every handler."""

        self._transport = None
        self._installed = set()
        if clear:
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    subscription.active = False
            self._subscriptions.clear()

    def _install(self, topic: str) -> None:
        transport = self._transport
        if transport is None or topic in self._installed:
            return

        async def _dispatch(*args: Any) -> None:
            if self._transport is not transport:
                return
            await self.dispatch(topic, args[0] if args else None)

        transport.on(topic, _dispatch)
        self._installed.add(topic)

    def _remove(self, subscription: Subscription) -> None:
        subscription.active = False
        subscriptions = self._subscriptions.get(subscription.topic)
        if not subscriptions:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.topic, None)


__all__ = ["Disposer", "Handler", "Subscription", "SubscriptionRegistry"]
