"""PluginContext - the scoped facade handed to a plugin for one activation."""

import functools
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from plugos.plugins.base import Plugin
from plugos.plugins.errors import InvalidMethodError, MigrationError
from plugos.plugins.events import EventHandler, EventHub
from plugos.plugins.registry import PluginDescriptor
from plugos.plugins.routing import PluginRouteTable, plugin_route_prefix
from plugos.plugins.store import PluginStore
from plugos.storage.database import Database

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
ORG_HEADER = "x-org-id"


def inject_org_scope(request: Request) -> None:
    """Set ``request.state.org_id`` from the X-Org-Id header unless already set."""
    if getattr(request.state, "org_id", None) is None:
        request.state.org_id = request.headers.get(ORG_HEADER)


class PluginContext:
    """Context object provided to a plugin during install, activation and uninstall.

    Gives the plugin a logger, its configuration, database and migration access,
    the event hub, and a route namespace under ``/api/plugins/{plugin_id}``.
    Routes are collected on a private sub-application and only become
    reachable once ``mount_routes()`` puts it into the route table.
    """

    def __init__(
        self,
        plugin: Plugin,
        descriptor: PluginDescriptor,
        db: Database,
        store: PluginStore,
        event_hub: EventHub,
        route_table: PluginRouteTable,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.plugin = plugin
        self.descriptor = descriptor
        self.plugin_id = descriptor.id
        self.db = db
        self.store = store
        self.event_hub = event_hub
        self.route_table = route_table
        self.config: Dict[str, Any] = {**descriptor.manifest.config_defaults(), **(config or {})}

        self.route_prefix = plugin_route_prefix(self.plugin_id)
        self.routes: List[Tuple[str, str]] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self.app = FastAPI(
            title=descriptor.manifest.name,
            version=descriptor.manifest.version,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        self.logger = logging.getLogger(f"plugin.{self.plugin_id}")

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """Get a logger for this plugin.

        Args:
            name: Optional sub-logger name (appended to plugin.{plugin_id})
        """
        if name:
            return logging.getLogger(f"plugin.{self.plugin_id}.{name}")
        return self.logger

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def register_route(self, method: str, path: str, *handlers: Callable[..., Any]) -> None:
        """Register an API route under this plugin's prefix.

        The last handler is the endpoint; any handlers before it run first as
        FastAPI dependencies (auth guards and similar).

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, PATCH)
            path: Route path relative to the plugin prefix, e.g. "/data"
            handlers: Dependencies followed by the endpoint

        Raises:
            InvalidMethodError: unsupported HTTP method
        """
        normalized = method.upper() if isinstance(method, str) else ""
        if normalized not in HTTP_METHODS:
            raise InvalidMethodError(f"Invalid HTTP method: {method}", self.plugin_id)
        if not handlers:
            raise ValueError(f"No handler given for {normalized} {path}")

        if not path.startswith("/"):
            path = "/" + path
        *guards, endpoint = handlers

        self.app.add_api_route(
            self.route_prefix + path,
            self._wrap_endpoint(normalized, path, endpoint),
            methods=[normalized],
            dependencies=[Depends(inject_org_scope)] + [Depends(guard) for guard in guards],
        )
        self.routes.append((normalized, path))
        self.logger.debug(f"Registered route: {normalized} {self.route_prefix}{path}")

    def _wrap_endpoint(self, method: str, path: str, endpoint: Callable[..., Any]) -> Callable[..., Any]:
        logger = self.logger

        def internal_error(e: Exception) -> JSONResponse:
            logger.error(f"Route error {method} {path}: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

        if inspect.iscoroutinefunction(endpoint):
            @functools.wraps(endpoint)
            async def wrapper(*args, **kwargs):
                try:
                    return await endpoint(*args, **kwargs)
                except HTTPException:
                    raise
                except Exception as e:
                    return internal_error(e)
        else:
            @functools.wraps(endpoint)
            def wrapper(*args, **kwargs):
                try:
                    return endpoint(*args, **kwargs)
                except HTTPException:
                    raise
                except Exception as e:
                    return internal_error(e)

        # Resolve string annotations against the plugin module, not this one
        try:
            wrapper.__signature__ = inspect.signature(endpoint, eval_str=True)
        except (NameError, TypeError) as e:
            logger.debug(f"Keeping unresolved annotations for {method} {path}: {e}")
        return wrapper

    def mount_routes(self) -> None:
        """Make this context's routes reachable as one unit."""
        self.route_table.mount(self.route_prefix, self.app)
        self.logger.info(f"Mounted {len(self.routes)} routes at {self.route_prefix}")

    def unmount_routes(self) -> None:
        """Remove exactly the routes this context mounted."""
        if self.route_table.unmount(self.route_prefix, self.app):
            self.logger.info(f"Unmounted routes from {self.route_prefix}")

    @property
    def is_mounted(self) -> bool:
        return self.route_table.resolve(self.route_prefix + "/") is self.app

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: EventHandler, once: bool = False) -> Callable[[], None]:
        """Subscribe on the shared event hub for the lifetime of this activation.

        Subscriptions made here are dropped by ``release_subscriptions()``
        when the plugin is deactivated or fails to activate.
        """
        if once:
            unsubscribe = self.event_hub.once(topic, handler)
        else:
            unsubscribe = self.event_hub.on(topic, handler)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def release_subscriptions(self) -> int:
        """Remove every subscription made through this context."""
        count = len(self._unsubscribers)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if count:
            self.logger.debug(f"Released {count} event subscriptions")
        return count

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    def _default_migrations_dir(self) -> Optional[Path]:
        for candidate in (
            self.descriptor.path / "migrations",
            self.descriptor.path / "src" / "migrations",
        ):
            if candidate.is_dir():
                return candidate
        return None

    async def run_migrations(self, migrations_path: Optional[Path] = None) -> List[str]:
        """Apply this plugin's unapplied ``*.sql`` migrations in lexical order.

        Returns:
            Names of the migrations applied by this call

        Raises:
            MigrationError: a script failed; later scripts were not run
        """
        directory = Path(migrations_path) if migrations_path else self._default_migrations_dir()
        if directory is None or not directory.is_dir():
            self.logger.debug("No migrations folder found")
            return []

        applied: List[str] = []
        for script in sorted(directory.glob("*.sql"), key=lambda p: p.name):
            name = script.stem
            if await self.store.is_migration_applied(self.plugin_id, name):
                self.logger.debug(f"Migration already applied: {name}")
                continue

            self.logger.info(f"Running migration: {name}")
            try:
                await self.db.execute_script(script.read_text(encoding="utf-8"))
            except Exception as e:
                raise MigrationError(self.plugin_id, name, e) from e

            await self.store.record_migration(self.plugin_id, name)
            applied.append(name)

        return applied

    # ------------------------------------------------------------------
    # Config & database
    # ------------------------------------------------------------------

    def get_config(self, key: str, default: Any = None) -> Any:
        """Get a configuration value, or ``default`` when unset."""
        value = self.config.get(key)
        return default if value is None else value

    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a query on the shared database and return all rows."""
        return await self.db.fetch_all(sql, params)

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        """Run a statement on the shared database."""
        return await self.db.execute(sql, params)
