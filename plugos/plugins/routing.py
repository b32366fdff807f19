"""Plugin route dispatch table and the ASGI middleware that delegates into it.

Each active plugin owns one sub-application mounted under its own prefix
(``/api/plugins/{id}``). Mounting and unmounting are plain dict operations;
the host router is never mutated after startup.
"""

import logging
from typing import Dict, List, Optional

from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

PLUGIN_ROUTE_BASE = "/api/plugins"


def plugin_route_prefix(plugin_id: str) -> str:
    return f"{PLUGIN_ROUTE_BASE}/{plugin_id}"


class PluginRouteTable:
    """Mapping from path prefix to the active plugin sub-application."""

    def __init__(self, base_path: str = PLUGIN_ROUTE_BASE):
        self.base_path = base_path.rstrip("/")
        self._apps: Dict[str, ASGIApp] = {}

    def mount(self, prefix: str, app: ASGIApp) -> None:
        if prefix in self._apps and self._apps[prefix] is not app:
            logger.warning(f"Replacing routes already mounted at {prefix}")
        self._apps[prefix] = app
        logger.info(f"Mounted plugin routes at {prefix}")

    def unmount(self, prefix: str, app: Optional[ASGIApp] = None) -> bool:
        """Remove the sub-application at ``prefix``.

        When ``app`` is given, only that exact application is removed, so a
        stale context cannot unmount routes mounted by a newer one.
        """
        current = self._apps.get(prefix)
        if current is None or (app is not None and current is not app):
            return False
        del self._apps[prefix]
        logger.info(f"Unmounted plugin routes from {prefix}")
        return True

    def is_mounted(self, prefix: str) -> bool:
        return prefix in self._apps

    def prefixes(self) -> List[str]:
        return sorted(self._apps)

    def resolve(self, path: str) -> Optional[ASGIApp]:
        """Find the sub-application responsible for a request path."""
        if not path.startswith(self.base_path + "/"):
            return None
        plugin_id = path[len(self.base_path) + 1:].split("/", 1)[0]
        if not plugin_id:
            return None
        return self._apps.get(f"{self.base_path}/{plugin_id}")


class PluginDispatchMiddleware:
    """Forward requests under the plugin base path to the mounted sub-application.

    Requests for prefixes with nothing mounted fall through to the host app.
    """

    def __init__(self, app: ASGIApp, route_table: PluginRouteTable):
        self.app = app
        self.route_table = route_table

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] in ("http", "websocket"):
            target = self.route_table.resolve(scope["path"])
            if target is not None:
                await target(scope, receive, send)
                return
        await self.app(scope, receive, send)
