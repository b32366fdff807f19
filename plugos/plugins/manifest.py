"""Plugin manifest model - describes a plugin's metadata and configuration."""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from plugos.plugins.errors import ManifestInvalidError

PLUGIN_ID_PATTERN = r"^[a-z][a-z0-9-]*$"
SEMVER_PATTERN = (
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
DEFAULT_ENTRY_ATTRIBUTE = "create_plugin"


class MenuEntry(BaseModel):
    """UI navigation entry contributed by a plugin."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    label: Optional[str] = None
    icon: Optional[str] = None
    path: Optional[str] = None
    order: Optional[float] = None
    required_permission: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("requiredPermission", "required_permission"),
        serialization_alias="requiredPermission",
    )


class ConfigOption(BaseModel):
    """A recognized configuration option."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Optional[str] = None
    label: Optional[str] = None
    default: Any = None


class PluginManifest(BaseModel):
    """Plugin manifest loaded from plugin.json."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., pattern=PLUGIN_ID_PATTERN, description="Unique plugin identifier (kebab-case)")
    name: str = Field(..., min_length=1, description="Human-readable plugin name")
    version: str = Field(..., pattern=SEMVER_PATTERN, description="Semantic version")
    description: str = Field(default="", description="Plugin description")
    author: str = Field(default="", description="Plugin author")
    license: Optional[str] = Field(default=None, description="License identifier")
    entry_point: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("entryPoint", "entry_point", "main"),
        serialization_alias="entryPoint",
        description="Python 'module[:attribute]' relative to the plugin directory, e.g. 'plugin:create_plugin'",
    )
    client_entry_point: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("clientEntryPoint", "client_entry_point", "client"),
        serialization_alias="clientEntryPoint",
        description="Front-end bundle path relative to the plugin directory",
    )
    icon: Optional[str] = None
    permissions: Dict[str, str] = Field(default_factory=dict, description="Permission key -> description")
    menu: Optional[MenuEntry] = None
    config: Dict[str, ConfigOption] = Field(default_factory=dict, description="Recognized config options")
    dependencies: List[str] = Field(default_factory=list, description="Plugin ids required first")

    @property
    def entry_module(self) -> str:
        """Module part of the entry point (e.g. 'plugin' or 'src.index')."""
        module = self.entry_point.split(":", 1)[0]
        return module[:-3] if module.endswith(".py") else module

    @property
    def entry_attribute(self) -> str:
        """Attribute part of the entry point, defaulting to 'create_plugin'."""
        if ":" in self.entry_point:
            return self.entry_point.split(":", 1)[1] or DEFAULT_ENTRY_ATTRIBUTE
        return DEFAULT_ENTRY_ATTRIBUTE

    def config_defaults(self) -> Dict[str, Any]:
        """Declared default value of every config option that has one."""
        return {key: option.default for key, option in self.config.items() if option.default is not None}

    def summary(self) -> Dict[str, Any]:
        """Public metadata for listings."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "icon": self.icon,
            "menu": self.menu.model_dump(by_alias=True) if self.menu else None,
            "permissions": dict(self.permissions),
            "dependencies": list(self.dependencies),
        }


def validate_manifest(data: Any) -> PluginManifest:
    """Validate raw manifest data.

    Raises:
        ManifestInvalidError: if the data violates the manifest schema
    """
    plugin_id = data.get("id") if isinstance(data, dict) else None
    if not isinstance(data, dict):
        raise ManifestInvalidError("Manifest must be a JSON object", plugin_id)
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]
        raise ManifestInvalidError(
            f"Invalid manifest for {plugin_id or 'unknown'}: {'; '.join(errors)}",
            plugin_id if isinstance(plugin_id, str) else None,
            errors,
        ) from e
