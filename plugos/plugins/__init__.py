"""Plugin runtime for PlugOS.

Imports are lazy so that lightweight pieces (manifest validation, the event hub)
can be used without pulling in FastAPI or the database layer.
"""

__all__ = [
    "Plugin",
    "PluginBuilder",
    "PluginManifest",
    "validate_manifest",
    "PluginContext",
    "PluginLoader",
    "PluginManager",
    "PluginStore",
    "PluginDescriptor",
    "PluginState",
    "RegistryRecord",
    "OperationResult",
    "EventHub",
    "SystemEvents",
    "PluginRouteTable",
    "PluginDispatchMiddleware",
]


def __getattr__(name):
    if name in ("Plugin", "PluginBuilder"):
        from plugos.plugins import base
        return getattr(base, name)
    if name in ("PluginManifest", "validate_manifest"):
        from plugos.plugins import manifest
        return getattr(manifest, name)
    if name == "PluginContext":
        from plugos.plugins.context import PluginContext
        return PluginContext
    if name == "PluginLoader":
        from plugos.plugins.loader import PluginLoader
        return PluginLoader
    if name == "PluginManager":
        from plugos.plugins.manager import PluginManager
        return PluginManager
    if name == "PluginStore":
        from plugos.plugins.store import PluginStore
        return PluginStore
    if name in ("PluginDescriptor", "PluginState", "RegistryRecord", "OperationResult"):
        from plugos.plugins import registry
        return getattr(registry, name)
    if name in ("EventHub", "SystemEvents"):
        from plugos.plugins import events
        return getattr(events, name)
    if name in ("PluginRouteTable", "PluginDispatchMiddleware"):
        from plugos.plugins import routing
        return getattr(routing, name)
    raise AttributeError(f"module 'plugos.plugins' has no attribute {name!r}")
