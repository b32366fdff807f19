"""Plugin manager - top-level orchestrator for the plugin system."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from plugos.plugins.base import Plugin
from plugos.plugins.context import PluginContext
from plugos.plugins.errors import DependencyError, PluginNotFoundError
from plugos.plugins.events import EventHub, SystemEvents
from plugos.plugins.loader import PluginLoader
from plugos.plugins.registry import OperationResult, PluginDescriptor, PluginState, RegistryRecord
from plugos.plugins.routing import PluginRouteTable
from plugos.plugins.store import PluginStore
from plugos.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class ActivePlugin:
    """Entry of the in-memory active table."""

    plugin: Plugin
    context: PluginContext


class PluginManager:
    """Top-level plugin system orchestrator.

    Owns the catalog (through the loader), the in-memory active table, and the
    persisted registry. Drives install -> activate -> deactivate -> uninstall.
    """

    def __init__(
        self,
        db: Database,
        plugins_dir: Path,
        packages_dir: Optional[Path] = None,
        event_hub: Optional[EventHub] = None,
        route_table: Optional[PluginRouteTable] = None,
    ):
        self.db = db
        self.store = PluginStore(db)
        self.loader = PluginLoader(plugins_dir, packages_dir)
        self.event_hub = event_hub or EventHub()
        self.route_table = route_table or PluginRouteTable()
        self._active: Dict[str, ActivePlugin] = {}

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Ensure schema, discover plugins, and reactivate the ones recorded active."""
        logger.info("Initializing plugin system...")

        await self.store.ensure_schema()
        self.loader.discover()

        records = {r.id: r for r in await self.store.list_enabled()}
        for plugin_id in self._dependency_order(list(records)):
            try:
                await self.activate(plugin_id, records[plugin_id].config)
            except Exception as e:
                logger.error(f"Failed to activate plugin {plugin_id}: {e}")

        logger.info(
            f"Plugin system initialized, "
            f"{len(self._active)}/{self.loader.count()} plugins active"
        )

    async def shutdown(self) -> None:
        """Deactivate all running plugins without changing the registry.

        Plugins recorded active are reactivated by the next ``initialize()``.
        """
        for plugin_id in reversed(list(self._active)):
            entry = self._active.pop(plugin_id)
            entry.context.unmount_routes()
            try:
                await entry.plugin.deactivate()
            except Exception as e:
                logger.error(f"Failed to stop plugin {plugin_id}: {e}")
            entry.context.release_subscriptions()
        logger.info("All plugins stopped")

    def _dependency_order(self, plugin_ids: List[str]) -> List[str]:
        """Order ids so that declared dependencies come first."""
        ordered: List[str] = []
        visiting = set()

        def visit(plugin_id: str) -> None:
            if plugin_id in ordered or plugin_id in visiting:
                return
            visiting.add(plugin_id)
            descriptor = self.loader.get(plugin_id)
            if descriptor:
                for dep in descriptor.manifest.dependencies:
                    if dep in plugin_ids:
                        visit(dep)
            visiting.discard(plugin_id)
            ordered.append(plugin_id)

        for plugin_id in plugin_ids:
            visit(plugin_id)
        return ordered

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def _require(self, plugin_id: str) -> PluginDescriptor:
        descriptor = self.loader.get(plugin_id)
        if descriptor is None:
            raise PluginNotFoundError(plugin_id)
        return descriptor

    def _create_context(
        self, plugin: Plugin, descriptor: PluginDescriptor, config: Optional[Dict[str, Any]] = None
    ) -> PluginContext:
        return PluginContext(
            plugin=plugin,
            descriptor=descriptor,
            db=self.db,
            store=self.store,
            event_hub=self.event_hub,
            route_table=self.route_table,
            config=config,
        )

    async def install(self, plugin_id: str) -> OperationResult:
        """Install a plugin: run on_install, sync permissions, record it.

        Raises:
            PluginNotFoundError: plugin not discovered
            DependencyError: a declared dependency is not installed
            MigrationError: a migration failed (install left partially applied)
        """
        descriptor = self._require(plugin_id)
        await self._check_dependencies(descriptor, require_active=False)

        logger.info(f"Installing plugin: {descriptor.manifest.name}")

        plugin = self.loader.load(plugin_id)
        context = self._create_context(plugin, descriptor, config={})
        await plugin.on_install(context)

        await self.store.sync_permissions(plugin_id, descriptor.manifest.permissions)
        await self.store.mark_installed(descriptor)

        await self.event_hub.emit(SystemEvents.PLUGIN_INSTALLED, {"plugin_id": plugin_id})

        logger.info(f"Plugin installed: {descriptor.manifest.name}")
        return OperationResult(success=True, plugin_id=plugin_id, plugin=descriptor.manifest.summary())

    async def activate(self, plugin_id: str, config: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Activate a plugin with the given configuration. Idempotent.

        Without ``config`` the last stored configuration is used.

        Raises:
            PluginNotFoundError: plugin not discovered
            DependencyError: a declared dependency is not active
        """
        entry = self._active.get(plugin_id)
        if entry is not None:
            logger.info(f"Plugin {plugin_id} is already active")
            return OperationResult(
                success=True, plugin_id=plugin_id, already_active=True, plugin=entry.plugin.get_info()
            )

        descriptor = self._require(plugin_id)
        await self._check_dependencies(descriptor, require_active=True)
        if config is None:
            record = await self.store.get_record(plugin_id)
            config = record.config if record else {}
        config = dict(config)

        logger.info(f"Activating plugin: {descriptor.manifest.name}")

        plugin = self.loader.load(plugin_id)
        context = self._create_context(plugin, descriptor, config)
        try:
            await plugin.activate(context)
            context.mount_routes()
        except Exception as e:
            logger.error(f"Failed to activate plugin {plugin_id}: {e}")
            await self._discard(plugin, context)
            raise

        self._active[plugin_id] = ActivePlugin(plugin=plugin, context=context)
        await self.store.mark_active(plugin_id, config)

        await self.event_hub.emit(SystemEvents.PLUGIN_ACTIVATED, {"plugin_id": plugin_id})

        logger.info(f"Plugin activated: {descriptor.manifest.name}")
        return OperationResult(success=True, plugin_id=plugin_id, plugin=plugin.get_info())

    async def _discard(self, plugin: Plugin, context: PluginContext) -> None:
        """Undo a partial activation: routes, hook state and subscriptions."""
        context.unmount_routes()
        try:
            await plugin.deactivate()
        except Exception as e:
            logger.warning(f"Cleanup of plugin {context.plugin_id} failed: {e}")
        context.release_subscriptions()
        plugin.is_active = False

    async def deactivate(self, plugin_id: str) -> OperationResult:
        """Deactivate an active plugin.

        Returns a failed result (not an exception) if the plugin is not active.
        If the plugin's own deactivate hook raises, the plugin is still removed
        from the active table and recorded inactive before the error propagates.
        """
        entry = self._active.get(plugin_id)
        if entry is None:
            return OperationResult(success=False, plugin_id=plugin_id, error="Plugin not active")

        logger.info(f"Deactivating plugin: {entry.plugin.name}")

        entry.context.unmount_routes()
        try:
            await entry.plugin.deactivate()
        except Exception as e:
            logger.error(f"Plugin {plugin_id} failed while deactivating: {e}")
            raise
        finally:
            entry.context.release_subscriptions()
            entry.plugin.is_active = False
            del self._active[plugin_id]
            await self.store.mark_inactive(plugin_id)

        await self.event_hub.emit(SystemEvents.PLUGIN_DEACTIVATED, {"plugin_id": plugin_id})

        logger.info(f"Plugin deactivated: {entry.plugin.name}")
        return OperationResult(success=True, plugin_id=plugin_id)

    async def uninstall(self, plugin_id: str, remove_data: bool = False) -> OperationResult:
        """Uninstall a plugin, deactivating it first if needed.

        Args:
            plugin_id: Plugin ID
            remove_data: Also run on_uninstall and forget applied migrations

        Raises:
            PluginNotFoundError: plugin not discovered
        """
        if plugin_id in self._active:
            await self.deactivate(plugin_id)

        descriptor = self._require(plugin_id)
        logger.info(f"Uninstalling plugin: {descriptor.manifest.name}")

        if remove_data:
            plugin = self.loader.load(plugin_id)
            context = self._create_context(plugin, descriptor)
            await plugin.on_uninstall(context)
            await self.store.delete_migrations(plugin_id)

        await self.store.delete_permissions(plugin_id)
        await self.store.mark_uninstalled(plugin_id)

        await self.event_hub.emit(SystemEvents.PLUGIN_UNINSTALLED, {"plugin_id": plugin_id})

        logger.info(f"Plugin uninstalled: {descriptor.manifest.name}")
        return OperationResult(success=True, plugin_id=plugin_id)

    async def update_config(self, plugin_id: str, config: Dict[str, Any]) -> OperationResult:
        """Apply new configuration, reactivating the plugin if it is active."""
        self._require(plugin_id)
        if plugin_id in self._active:
            await self.deactivate(plugin_id)
            return await self.activate(plugin_id, config)

        await self.store.save_config(plugin_id, config)
        return OperationResult(success=True, plugin_id=plugin_id)

    async def _check_dependencies(self, descriptor: PluginDescriptor, require_active: bool) -> None:
        dependencies = descriptor.manifest.dependencies
        if not dependencies:
            return

        if require_active:
            missing = [dep for dep in dependencies if dep not in self._active]
            requirement = "active"
        else:
            missing = []
            for dep in dependencies:
                record = await self.store.get_record(dep) if self.loader.has(dep) else None
                if record is None or not record.is_installed:
                    missing.append(dep)
            requirement = "installed"

        if missing:
            raise DependencyError(descriptor.id, missing, requirement)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_active(self, plugin_id: str) -> bool:
        return plugin_id in self._active

    def get_active(self, plugin_id: str) -> Optional[Plugin]:
        entry = self._active.get(plugin_id)
        return entry.plugin if entry else None

    def get_context(self, plugin_id: str) -> Optional[PluginContext]:
        entry = self._active.get(plugin_id)
        return entry.context if entry else None

    def active_ids(self) -> List[str]:
        return list(self._active)

    async def list(self) -> List[dict]:
        """All discovered plugins with installed/active status.

        ``is_active`` reflects the in-memory active table, not the registry.
        """
        records: Dict[str, RegistryRecord] = {r.id: r for r in await self.store.list_records()}

        plugins = []
        for descriptor in self.loader.get_all():
            record = records.get(descriptor.id)
            is_installed = bool(record and record.is_installed)
            is_active = descriptor.id in self._active
            if is_active:
                state = PluginState.ACTIVE
            elif is_installed:
                state = PluginState.INSTALLED
            else:
                state = PluginState.DISCOVERED

            info = descriptor.to_dict()
            info.update({
                "is_installed": is_installed,
                "is_active": is_active,
                "state": state.value,
                "config": record.config if record else {},
            })
            plugins.append(info)
        return plugins

    def get_status(self, plugin_id: str) -> Optional[dict]:
        """Manifest details, active flag and registered routes; None if unknown."""
        descriptor = self.loader.get(plugin_id)
        if descriptor is None:
            return None

        context = self.get_context(plugin_id)
        status = descriptor.to_dict()
        status.update({
            "is_active": context is not None,
            "route_prefix": context.route_prefix if context else None,
            "routes": [{"method": m, "path": p} for m, p in context.routes] if context else [],
        })
        return status

    async def refresh(self) -> List[dict]:
        """Re-run discovery and return the updated listing."""
        self.loader.discover()
        return await self.list()
