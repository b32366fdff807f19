"""Dependency injection container for services."""

import logging
from typing import Optional

from fastapi import Request

from plugos.constants import DB_PATH, PACKAGES_DIR, PLUGINS_DIR
from plugos.plugins.manager import PluginManager
from plugos.storage.database import Database

logger = logging.getLogger(__name__)

# ============================================================================
# Global service instances (Singleton pattern, but exposed via functions for easier testing/mocking)
# ============================================================================

_database_instance: Optional[Database] = None
_plugin_manager_instance: Optional[PluginManager] = None


def get_database() -> Database:
    """Get the shared database handle (singleton, not yet connected)."""
    global _database_instance
    if _database_instance is None:
        _database_instance = Database(DB_PATH)
        logger.info(f"Created Database instance for {DB_PATH}")
    return _database_instance


def get_plugin_manager() -> PluginManager:
    """Get plugin manager (singleton)."""
    global _plugin_manager_instance
    if _plugin_manager_instance is None:
        _plugin_manager_instance = PluginManager(
            db=get_database(),
            plugins_dir=PLUGINS_DIR,
            packages_dir=PACKAGES_DIR,
        )
        logger.info("Created PluginManager instance")
    return _plugin_manager_instance


def set_plugin_manager(manager: PluginManager) -> None:
    """Install a pre-built manager (used by tests and embedding hosts)."""
    global _plugin_manager_instance, _database_instance
    _plugin_manager_instance = manager
    _database_instance = manager.db


def get_app_plugin_manager(request: Request) -> PluginManager:
    """FastAPI dependency: the manager bound to the serving app by create_app().

    Falls back to the process singleton for apps built without one.
    """
    manager = getattr(request.app.state, "plugin_manager", None)
    return manager if manager is not None else get_plugin_manager()


# Test utility function (for unit testing - resets all singletons)
def reset_services():
    """Reset all service instances (only for testing)."""
    global _database_instance, _plugin_manager_instance

    _database_instance = None
    _plugin_manager_instance = None
    logger.info("Reset all service instances")
