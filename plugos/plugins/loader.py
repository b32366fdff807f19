"""Plugin loader - discovers plugin packages and instantiates their code."""

import importlib
import importlib.machinery
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from plugos.plugins.base import Plugin, PluginBuilder
from plugos.plugins.errors import (
    DuplicatePluginError,
    ManifestInvalidError,
    PluginContractError,
    PluginLoadError,
    PluginNotFoundError,
)
from plugos.plugins.manifest import validate_manifest
from plugos.plugins.registry import PluginDescriptor, PluginSource

logger = logging.getLogger(__name__)

MODULE_NAMESPACE = "plugos_ext"


def _module_namespace(plugin_id: str) -> str:
    return f"{MODULE_NAMESPACE}_{plugin_id.replace('-', '_')}"


class PluginLoader:
    """Builds the plugin catalog and loads plugin entry points.

    Two sources are scanned, in order:
      1. the local plugins directory (every subdirectory with a plugin.json)
      2. the packages directory (only entries named ``plugos-*`` / ``plugos_*``)
    """

    MANIFEST_FILE = "plugin.json"
    PACKAGE_PREFIXES = ("plugos-", "plugos_")

    def __init__(self, plugins_dir: Path, packages_dir: Optional[Path] = None):
        self.plugins_dir = Path(plugins_dir)
        self.packages_dir = Path(packages_dir) if packages_dir else None
        self._catalog: Dict[str, PluginDescriptor] = {}

    def discover(self) -> Dict[str, PluginDescriptor]:
        """Rebuild the catalog from the filesystem.

        Invalid or duplicate plugins are logged and skipped; a missing
        directory contributes nothing.

        Returns:
            Mapping of plugin id to descriptor
        """
        self._catalog = {}

        for plugin_dir, source in self._candidate_dirs():
            manifest_file = plugin_dir / self.MANIFEST_FILE
            if not manifest_file.exists():
                if source == PluginSource.LOCAL:
                    logger.warning(f"No {self.MANIFEST_FILE} found in {plugin_dir.name}, skipping")
                continue

            try:
                descriptor = self._load_descriptor(manifest_file, source)
                self._register(descriptor)
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON in {manifest_file}: {e}")
            except ManifestInvalidError as e:
                logger.error(f"{e} ({manifest_file})")
            except DuplicatePluginError as e:
                logger.warning(str(e))
            except OSError as e:
                logger.error(f"Error reading {manifest_file}: {e}")
            else:
                logger.debug(
                    f"Discovered plugin: {descriptor.id} v{descriptor.manifest.version} "
                    f"({source.value}) at {plugin_dir}"
                )

        logger.info(f"Discovered {len(self._catalog)} plugin(s)")
        return dict(self._catalog)

    def _candidate_dirs(self) -> List[Tuple[Path, PluginSource]]:
        candidates: List[Tuple[Path, PluginSource]] = []

        if self.plugins_dir.is_dir():
            for item in sorted(self.plugins_dir.iterdir()):
                if item.is_dir() and not item.name.startswith((".", "__")):
                    candidates.append((item, PluginSource.LOCAL))
        else:
            logger.debug(f"No local plugins directory at {self.plugins_dir}")

        if self.packages_dir and self.packages_dir.is_dir():
            for item in sorted(self.packages_dir.iterdir()):
                if item.is_dir() and item.name.startswith(self.PACKAGE_PREFIXES):
                    candidates.append((item, PluginSource.PACKAGE))

        return candidates

    def _load_descriptor(self, manifest_file: Path, source: PluginSource) -> PluginDescriptor:
        with open(manifest_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        manifest = validate_manifest(data)
        plugin_dir = manifest_file.parent
        client = manifest.client_entry_point

        return PluginDescriptor(
            manifest=manifest,
            path=plugin_dir,
            source=source,
            entry_path=self._resolve_entry_path(plugin_dir, manifest.entry_module),
            client_path=plugin_dir / client if client else None,
        )

    @staticmethod
    def _resolve_entry_path(plugin_dir: Path, module_name: str) -> Path:
        relative = Path(*module_name.split("."))
        package_init = plugin_dir / relative / "__init__.py"
        if package_init.exists():
            return package_init
        return plugin_dir / relative.with_suffix(".py")

    def _register(self, descriptor: PluginDescriptor) -> None:
        existing = self._catalog.get(descriptor.id)
        if existing is not None:
            raise DuplicatePluginError(
                f"Duplicate plugin ID '{descriptor.id}' at {descriptor.path}, "
                f"keeping {existing.source.value} version at {existing.path}",
                descriptor.id,
            )
        self._catalog[descriptor.id] = descriptor

    def load(self, plugin_id: str) -> Plugin:
        """Import the plugin's entry module and build a fresh instance.

        The module is re-executed on every call; instances are never cached here.

        Raises:
            PluginNotFoundError: unknown plugin id
            PluginLoadError: the entry module failed to import
            PluginContractError: the entry point does not produce a Plugin
        """
        descriptor = self._catalog.get(plugin_id)
        if descriptor is None:
            raise PluginNotFoundError(plugin_id)

        manifest = descriptor.manifest
        module = self._import_entry_module(descriptor)

        target = getattr(module, manifest.entry_attribute, None)
        if target is None:
            raise PluginContractError(
                f"Entry module '{manifest.entry_module}' of plugin '{plugin_id}' "
                f"has no attribute '{manifest.entry_attribute}'",
                plugin_id,
            )

        try:
            plugin = self._instantiate(target, descriptor)
        except PluginContractError:
            raise
        except Exception as e:
            raise PluginLoadError(f"Failed to construct plugin '{plugin_id}': {e}", plugin_id) from e

        logger.info(f"Loaded plugin: {plugin_id}")
        return plugin

    def _import_entry_module(self, descriptor: PluginDescriptor):
        plugin_id = descriptor.id
        if not descriptor.entry_path.exists():
            raise PluginLoadError(f"Entry point not found for plugin '{plugin_id}': {descriptor.entry_path}", plugin_id)

        namespace = _module_namespace(plugin_id)
        # Drop modules from a previous load so plugin code is re-executed
        for name in [n for n in sys.modules if n == namespace or n.startswith(namespace + ".")]:
            del sys.modules[name]

        # Synthetic package rooted at the plugin directory: plugin modules live
        # under their own namespace and may use relative imports.
        package_spec = importlib.machinery.ModuleSpec(namespace, None, is_package=True)
        package_spec.submodule_search_locations = [str(descriptor.path)]
        package = importlib.util.module_from_spec(package_spec)
        sys.modules[namespace] = package
        importlib.invalidate_caches()

        try:
            return importlib.import_module(f"{namespace}.{descriptor.manifest.entry_module}")
        except Exception as e:
            for name in [n for n in sys.modules if n == namespace or n.startswith(namespace + ".")]:
                del sys.modules[name]
            logger.error(f"Failed to load plugin {plugin_id}: {e}")
            raise PluginLoadError(f"Failed to import plugin '{plugin_id}': {e}", plugin_id) from e

    @staticmethod
    def _instantiate(target, descriptor: PluginDescriptor) -> Plugin:
        manifest = descriptor.manifest
        if isinstance(target, Plugin):
            plugin = target
        elif isinstance(target, type):
            if not issubclass(target, Plugin):
                raise PluginContractError(
                    f"{target.__name__} in plugin '{manifest.id}' does not subclass Plugin", manifest.id
                )
            plugin = target(manifest)
        elif callable(target):
            plugin = target(manifest)
            if isinstance(plugin, PluginBuilder):
                plugin = plugin.build()
        else:
            plugin = target

        if not isinstance(plugin, Plugin):
            raise PluginContractError(
                f"Entry point '{manifest.entry_point}' of plugin '{manifest.id}' "
                f"produced {type(plugin).__name__}, expected a Plugin",
                manifest.id,
            )
        return plugin

    def get_all(self) -> List[PluginDescriptor]:
        """Get all cataloged plugins."""
        return list(self._catalog.values())

    def get(self, plugin_id: str) -> Optional[PluginDescriptor]:
        """Get a plugin descriptor by ID."""
        return self._catalog.get(plugin_id)

    def has(self, plugin_id: str) -> bool:
        return plugin_id in self._catalog

    def count(self) -> int:
        return len(self._catalog)
