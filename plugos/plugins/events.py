"""Event hub - publish/subscribe bus shared by the host and plugins."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class SystemEvents:
    """Well-known topics. Any other topic string may be used as well."""

    # User events
    USER_CREATED = "user.created"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"

    # Organization events
    ORG_CREATED = "org.created"
    ORG_UPDATED = "org.updated"
    ORG_DELETED = "org.deleted"

    # Plugin lifecycle events
    PLUGIN_INSTALLED = "plugin.installed"
    PLUGIN_ACTIVATED = "plugin.activated"
    PLUGIN_DEACTIVATED = "plugin.deactivated"
    PLUGIN_UNINSTALLED = "plugin.uninstalled"

    # Built-in plug events
    PLUG_ENABLED = "plug.enabled"
    PLUG_DISABLED = "plug.disabled"


@dataclass(eq=False)
class _Subscription:
    handler: EventHandler
    once: bool = False


class EventHub:
    """Topic-based publish/subscribe.

    Handlers may be plain functions or coroutine functions. A failing handler
    is logged and never prevents delivery to the other handlers.
    """

    def __init__(self):
        self._subscriptions: Dict[str, List[_Subscription]] = {}

    def on(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a topic.

        Returns:
            Callable that removes this subscription
        """
        sub = _Subscription(handler)
        self._subscriptions.setdefault(topic, []).append(sub)
        return lambda: self._remove(topic, sub)

    def once(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to the next delivery on a topic only."""
        sub = _Subscription(handler, once=True)
        self._subscriptions.setdefault(topic, []).append(sub)
        return lambda: self._remove(topic, sub)

    def off(self, topic: str, handler: EventHandler) -> None:
        """Remove every subscription of ``handler`` on ``topic``."""
        subs = self._subscriptions.get(topic)
        if not subs:
            return
        subs[:] = [s for s in subs if s.handler != handler]
        if not subs:
            del self._subscriptions[topic]

    def _remove(self, topic: str, sub: _Subscription) -> None:
        subs = self._subscriptions.get(topic)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscriptions[topic]

    async def emit(self, topic: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every subscriber of ``topic``.

        Subscribers are called in subscription order. Coroutines they return
        are awaited together before this returns.

        Returns:
            Number of handlers invoked
        """
        subs = list(self._subscriptions.get(topic, ()))
        if not subs:
            return 0

        for sub in subs:
            if sub.once:
                self._remove(topic, sub)

        pending: List[Awaitable[Any]] = []
        pending_handlers: List[EventHandler] = []
        for sub in subs:
            try:
                result = sub.handler(payload)
            except Exception as e:
                logger.error(f"Event handler {_handler_name(sub.handler)} failed for '{topic}': {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                pending.append(result)
                pending_handlers.append(sub.handler)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for handler, result in zip(pending_handlers, results):
                if isinstance(result, BaseException):
                    logger.error(
                        f"Event handler {_handler_name(handler)} failed for '{topic}': {result}",
                        exc_info=result,
                    )

        return len(subs)

    def clear(self, topic: Optional[str] = None) -> None:
        """Remove all subscribers of ``topic``, or of every topic."""
        if topic is None:
            self._subscriptions.clear()
        else:
            self._subscriptions.pop(topic, None)

    def listener_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, ()))

    def topics(self) -> List[str]:
        return list(self._subscriptions)


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", repr(handler))
