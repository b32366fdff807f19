"""Plugin runtime error kinds."""

from typing import List, Optional


class PluginError(Exception):
    """Base class for all plugin runtime errors."""

    def __init__(self, message: str, plugin_id: Optional[str] = None):
        super().__init__(message)
        self.plugin_id = plugin_id


class ManifestInvalidError(PluginError):
    """A plugin.json failed schema validation (absorbed during discovery)."""

    def __init__(self, message: str, plugin_id: Optional[str] = None, errors: Optional[List[str]] = None):
        super().__init__(message, plugin_id)
        self.errors = errors or []


class DuplicatePluginError(PluginError):
    """A second plugin with an already-cataloged id was found (absorbed)."""


class PluginNotFoundError(PluginError):
    """Operation on a plugin id that is not in the catalog."""

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin not found: {plugin_id}", plugin_id)


class InvalidMethodError(PluginError):
    """Route registration with an unsupported HTTP verb."""


class PluginLoadError(PluginError):
    """The plugin's entry module could not be imported."""


class PluginContractError(PluginLoadError):
    """The entry point does not produce a Plugin instance."""


class MigrationError(PluginError):
    """A migration script failed; remaining migrations in the batch were not run."""

    def __init__(self, plugin_id: str, migration_name: str, cause: Exception):
        super().__init__(f"Migration '{migration_name}' failed for plugin '{plugin_id}': {cause}", plugin_id)
        self.migration_name = migration_name
        self.cause = cause


class DependencyError(PluginError):
    """A declared plugin dependency is missing, not installed, or not active."""

    def __init__(self, plugin_id: str, missing: List[str], requirement: str):
        super().__init__(
            f"Plugin '{plugin_id}' requires {requirement} dependencies: {', '.join(missing)}",
            plugin_id,
        )
        self.missing = missing
        self.requirement = requirement
