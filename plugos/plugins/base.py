"""Plugin base class (the capability set every plugin implements) and a fluent builder."""
from __future__ import annotations

from abc import ABC
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from plugos.plugins.manifest import PluginManifest

if TYPE_CHECKING:
    from plugos.plugins.context import PluginContext


class Plugin(ABC):
    """Base class for plugins.

    The loader only accepts objects that are instances of this class. Subclasses
    override the lifecycle hooks they need; the defaults are safe no-ops except
    ``on_install``, which runs the plugin's migrations.
    """

    def __init__(self, manifest: PluginManifest):
        self.manifest = manifest
        self.id = manifest.id
        self.name = manifest.name
        self.version = manifest.version
        self.is_active = False
        self.context: Optional[PluginContext] = None

    async def activate(self, context: PluginContext) -> None:
        """Called when the plugin is activated. Register routes and event handlers here."""
        self.context = context
        self.is_active = True

    async def deactivate(self) -> None:
        """Called when the plugin is deactivated. Release resources here."""
        self.is_active = False
        self.context = None

    async def on_install(self, context: PluginContext) -> None:
        """Called on install. Runs migrations by default."""
        await context.run_migrations()

    async def on_uninstall(self, context: PluginContext) -> None:
        """Called on a data-removing uninstall. Drop plugin tables here."""

    def get_info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.manifest.description,
            "author": self.manifest.author,
            "icon": self.manifest.icon,
            "is_active": self.is_active,
        }


ContextHook = Callable[["PluginContext"], Awaitable[None]]


class PluginBuilder:
    """Fluent API for building a plugin without subclassing.

    Example:
        def create_plugin(manifest):
            return (
                PluginBuilder(manifest)
                .add_route("GET", "/ping", ping)
                .on_event("user.login", on_login)
            )
    """

    def __init__(self, manifest: PluginManifest):
        self.manifest = manifest
        self._activate_handler: Optional[ContextHook] = None
        self._deactivate_handler: Optional[Callable[[], Awaitable[None]]] = None
        self._install_handler: Optional[ContextHook] = None
        self._uninstall_handler: Optional[ContextHook] = None
        self._routes: List[Tuple[str, str, Tuple[Callable[..., Any], ...]]] = []
        self._events: List[Tuple[str, Callable[[Any], Any]]] = []

    def on_activate(self, handler: ContextHook) -> PluginBuilder:
        self._activate_handler = handler
        return self

    def on_deactivate(self, handler: Callable[[], Awaitable[None]]) -> PluginBuilder:
        self._deactivate_handler = handler
        return self

    def on_install(self, handler: ContextHook) -> PluginBuilder:
        self._install_handler = handler
        return self

    def on_uninstall(self, handler: ContextHook) -> PluginBuilder:
        self._uninstall_handler = handler
        return self

    def add_route(self, method: str, path: str, *handlers: Callable[..., Any]) -> PluginBuilder:
        self._routes.append((method, path, handlers))
        return self

    def on_event(self, topic: str, handler: Callable[[Any], Any]) -> PluginBuilder:
        self._events.append((topic, handler))
        return self

    def build(self) -> Plugin:
        return _BuiltPlugin(self)


class _BuiltPlugin(Plugin):
    def __init__(self, builder: PluginBuilder):
        super().__init__(builder.manifest)
        self._builder = builder
        self._unsubscribers: List[Callable[[], None]] = []

    async def activate(self, context: PluginContext) -> None:
        await super().activate(context)
        for method, path, handlers in self._builder._routes:
            context.register_route(method, path, *handlers)
        for topic, handler in self._builder._events:
            self._unsubscribers.append(context.subscribe(topic, handler))
        if self._builder._activate_handler:
            await self._builder._activate_handler(context)

    async def deactivate(self) -> None:
        if self._builder._deactivate_handler:
            await self._builder._deactivate_handler()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await super().deactivate()

    async def on_install(self, context: PluginContext) -> None:
        if self._builder._install_handler:
            await self._builder._install_handler(context)
        else:
            await super().on_install(context)

    async def on_uninstall(self, context: PluginContext) -> None:
        if self._builder._uninstall_handler:
            await self._builder._uninstall_handler(context)
