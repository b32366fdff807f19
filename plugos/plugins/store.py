"""Persisted plugin registry: sdk_plugins, plugin_migrations, plugin_permissions."""

import json
import logging
from typing import Any, Dict, List, Optional

import aiosqlite

from plugos.plugins.registry import PluginDescriptor, RegistryRecord
from plugos.storage.database import Database

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sdk_plugins (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    description TEXT,
    author TEXT,
    icon TEXT,
    source TEXT DEFAULT 'local',
    is_installed INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 0,
    config TEXT NOT NULL DEFAULT '{}',
    installed_at TIMESTAMP,
    activated_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS plugin_migrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plugin_id TEXT NOT NULL,
    migration_name TEXT NOT NULL,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (plugin_id, migration_name)
);

CREATE TABLE IF NOT EXISTS plugin_permissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plugin_id TEXT NOT NULL,
    permission_key TEXT NOT NULL,
    description TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (plugin_id, permission_key)
);
"""


def _is_missing_table(error: Exception) -> bool:
    return "no such table" in str(error).lower()


class PluginStore:
    """Durable source of truth for plugin install/active state.

    Row upserts are last-writer-wins; there is no optimistic locking.
    """

    def __init__(self, db: Database):
        self.db = db

    async def ensure_schema(self) -> None:
        """Create the registry tables if they do not exist."""
        await self.db.execute_script(SCHEMA)
        logger.debug("Plugin registry schema ensured")

    # ------------------------------------------------------------------
    # Registry records
    # ------------------------------------------------------------------

    async def get_record(self, plugin_id: str) -> Optional[RegistryRecord]:
        row = await self.db.fetch_one("SELECT * FROM sdk_plugins WHERE id = ?", [plugin_id])
        return RegistryRecord.from_row(row) if row else None

    async def list_records(self) -> List[RegistryRecord]:
        rows = await self.db.fetch_all("SELECT * FROM sdk_plugins ORDER BY id")
        return [RegistryRecord.from_row(row) for row in rows]

    async def list_enabled(self) -> List[RegistryRecord]:
        """Records that should be active after a restart."""
        rows = await self.db.fetch_all(
            "SELECT * FROM sdk_plugins WHERE is_installed = 1 AND is_active = 1 ORDER BY id"
        )
        return [RegistryRecord.from_row(row) for row in rows]

    async def mark_installed(self, descriptor: PluginDescriptor) -> None:
        manifest = descriptor.manifest
        await self.db.execute(
            """
            INSERT INTO sdk_plugins
                (id, name, version, description, author, icon, source, is_installed, installed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, CURRENT_TIMESTAMP)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                version = excluded.version,
                description = excluded.description,
                author = excluded.author,
                icon = excluded.icon,
                source = excluded.source,
                is_installed = 1,
                installed_at = CURRENT_TIMESTAMP,
                updated_at = CURRENT_TIMESTAMP
            """,
            [
                manifest.id,
                manifest.name,
                manifest.version,
                manifest.description,
                manifest.author,
                manifest.icon,
                descriptor.source.value,
            ],
        )

    async def mark_active(self, plugin_id: str, config: Dict[str, Any]) -> None:
        await self.db.execute(
            """
            UPDATE sdk_plugins
            SET is_active = 1, activated_at = CURRENT_TIMESTAMP, config = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            [json.dumps(config, ensure_ascii=False), plugin_id],
        )

    async def mark_inactive(self, plugin_id: str) -> None:
        await self.db.execute(
            "UPDATE sdk_plugins SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [plugin_id],
        )

    async def mark_uninstalled(self, plugin_id: str) -> None:
        await self.db.execute(
            """
            UPDATE sdk_plugins
            SET is_installed = 0, is_active = 0, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            [plugin_id],
        )

    async def save_config(self, plugin_id: str, config: Dict[str, Any]) -> None:
        await self.db.execute(
            "UPDATE sdk_plugins SET config = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [json.dumps(config, ensure_ascii=False), plugin_id],
        )

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def sync_permissions(self, plugin_id: str, permissions: Dict[str, str]) -> None:
        for key, description in permissions.items():
            await self.db.execute(
                """
                INSERT INTO plugin_permissions (plugin_id, permission_key, description)
                VALUES (?, ?, ?)
                ON CONFLICT (plugin_id, permission_key) DO UPDATE SET description = excluded.description
                """,
                [plugin_id, key, description],
            )

    async def list_permissions(self, plugin_id: str) -> List[Dict[str, Any]]:
        return await self.db.fetch_all(
            "SELECT plugin_id, permission_key, description FROM plugin_permissions "
            "WHERE plugin_id = ? ORDER BY permission_key",
            [plugin_id],
        )

    async def delete_permissions(self, plugin_id: str) -> int:
        return await self.db.execute("DELETE FROM plugin_permissions WHERE plugin_id = ?", [plugin_id])

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def is_migration_applied(self, plugin_id: str, migration_name: str) -> bool:
        """Check the migration table; a missing table means nothing was applied."""
        try:
            row = await self.db.fetch_one(
                "SELECT id FROM plugin_migrations WHERE plugin_id = ? AND migration_name = ?",
                [plugin_id, migration_name],
            )
        except aiosqlite.OperationalError as e:
            if not _is_missing_table(e):
                raise
            return False
        return row is not None

    async def record_migration(self, plugin_id: str, migration_name: str) -> None:
        try:
            await self.db.execute(
                "INSERT OR IGNORE INTO plugin_migrations (plugin_id, migration_name) VALUES (?, ?)",
                [plugin_id, migration_name],
            )
        except aiosqlite.OperationalError as e:
            if not _is_missing_table(e):
                raise
            logger.warning(f"Could not record migration {plugin_id}/{migration_name}: table missing")

    async def list_migrations(self, plugin_id: str) -> List[str]:
        rows = await self.db.fetch_all(
            "SELECT migration_name FROM plugin_migrations WHERE plugin_id = ? ORDER BY migration_name",
            [plugin_id],
        )
        return [row["migration_name"] for row in rows]

    async def delete_migrations(self, plugin_id: str) -> int:
        return await self.db.execute("DELETE FROM plugin_migrations WHERE plugin_id = ?", [plugin_id])
