"""Plugin registry types - catalog descriptors, persisted records and results."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from plugos.plugins.manifest import PluginManifest


class PluginState(str, Enum):
    """Plugin lifecycle states."""

    DISCOVERED = "discovered"
    INSTALLED = "installed"
    ACTIVE = "active"


class PluginSource(str, Enum):
    """Where a plugin was discovered."""

    LOCAL = "local"
    PACKAGE = "package"


@dataclass(frozen=True)
class PluginDescriptor:
    """Discovery-time record: a validated manifest plus where it lives."""

    manifest: PluginManifest
    path: Path
    source: PluginSource
    entry_path: Path
    client_path: Optional[Path] = None

    @property
    def id(self) -> str:
        return self.manifest.id

    def to_dict(self) -> dict:
        """Serialize descriptor to dict for API responses."""
        info = self.manifest.summary()
        info.update({
            "source": self.source.value,
            "path": str(self.path),
            "entry_point": self.manifest.entry_point,
            "client_entry_point": self.manifest.client_entry_point,
        })
        return info


@dataclass
class RegistryRecord:
    """Row of the sdk_plugins table."""

    id: str
    name: str = ""
    version: str = ""
    source: str = PluginSource.LOCAL.value
    is_installed: bool = False
    is_active: bool = False
    config: Dict[str, Any] = field(default_factory=dict)
    installed_at: Optional[str] = None
    activated_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> RegistryRecord:
        raw_config = row.get("config") or "{}"
        config = json.loads(raw_config) if isinstance(raw_config, str) else dict(raw_config)
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            version=row.get("version") or "",
            source=row.get("source") or PluginSource.LOCAL.value,
            is_installed=bool(row.get("is_installed")),
            is_active=bool(row.get("is_active")),
            config=config,
            installed_at=row.get("installed_at"),
            activated_at=row.get("activated_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def state(self) -> PluginState:
        if self.is_installed and self.is_active:
            return PluginState.ACTIVE
        if self.is_installed:
            return PluginState.INSTALLED
        return PluginState.DISCOVERED


@dataclass
class OperationResult:
    """Outcome of a lifecycle transition."""

    success: bool
    plugin_id: str
    already_active: bool = False
    error: Optional[str] = None
    plugin: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"success": self.success, "plugin_id": self.plugin_id}
        if self.already_active:
            data["already_active"] = True
        if self.error:
            data["error"] = self.error
        if self.plugin is not None:
            data["plugin"] = self.plugin
        return data
