"""Plugin administration REST API endpoints."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from plugos.constants import ADMIN_API_PREFIX
from plugos.dependencies import get_app_plugin_manager
from plugos.plugins.errors import (
    DependencyError,
    PluginContractError,
    PluginError,
    PluginNotFoundError,
)
from plugos.plugins.manager import PluginManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix=ADMIN_API_PREFIX, tags=["plugin-admin"])


class PluginActivateRequest(BaseModel):
    """Request body for activating a plugin."""

    config: Dict[str, Any] = Field(default_factory=dict)


def _to_http_error(action: str, plugin_id: str, error: Exception) -> HTTPException:
    if isinstance(error, PluginNotFoundError):
        return HTTPException(status_code=404, detail=f"Plugin '{plugin_id}' not found")
    if isinstance(error, (DependencyError, PluginContractError)):
        return HTTPException(status_code=409, detail=str(error))
    logger.error(f"{action} plugin '{plugin_id}' failed: {error}", exc_info=True)
    if isinstance(error, PluginError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=500, detail=f"Failed to {action.lower()} plugin")


@router.get("/")
async def list_plugins(manager: PluginManager = Depends(get_app_plugin_manager)):
    """List all discovered plugins and their status."""
    return {"plugins": await manager.list()}


@router.post("/refresh")
async def refresh_plugins(manager: PluginManager = Depends(get_app_plugin_manager)):
    """Re-discover plugins from the filesystem."""
    return {"success": True, "plugins": await manager.refresh()}


@router.get("/{plugin_id}")
async def get_plugin(plugin_id: str, manager: PluginManager = Depends(get_app_plugin_manager)):
    """Get detailed information about a specific plugin."""
    status = manager.get_status(plugin_id)
    if not status:
        raise HTTPException(status_code=404, detail=f"Plugin '{plugin_id}' not found")
    return status


@router.post("/{plugin_id}/install", status_code=201)
async def install_plugin(plugin_id: str, manager: PluginManager = Depends(get_app_plugin_manager)):
    """Install a plugin (runs its migrations and registers permissions)."""
    try:
        result = await manager.install(plugin_id)
    except Exception as e:
        raise _to_http_error("Install", plugin_id, e) from e
    return result.to_dict()


@router.post("/{plugin_id}/activate")
async def activate_plugin(
    plugin_id: str,
    body: Optional[PluginActivateRequest] = None,
    manager: PluginManager = Depends(get_app_plugin_manager),
):
    """Activate a plugin; its routes become reachable immediately."""
    config = body.config if body else None
    try:
        result = await manager.activate(plugin_id, config)
    except Exception as e:
        raise _to_http_error("Activate", plugin_id, e) from e
    return result.to_dict()


@router.post("/{plugin_id}/deactivate")
async def deactivate_plugin(plugin_id: str, manager: PluginManager = Depends(get_app_plugin_manager)):
    """Deactivate a plugin; its routes are removed immediately."""
    try:
        result = await manager.deactivate(plugin_id)
    except Exception as e:
        raise _to_http_error("Deactivate", plugin_id, e) from e
    return result.to_dict()


@router.delete("/{plugin_id}")
async def uninstall_plugin(
    plugin_id: str,
    remove_data: bool = Query(False, description="Also run on_uninstall and drop migration records"),
    manager: PluginManager = Depends(get_app_plugin_manager),
):
    """Uninstall a plugin, optionally removing its data."""
    try:
        result = await manager.uninstall(plugin_id, remove_data)
    except Exception as e:
        raise _to_http_error("Uninstall", plugin_id, e) from e
    return result.to_dict()


@router.put("/{plugin_id}/config")
async def update_plugin_config(
    plugin_id: str,
    config: Dict[str, Any],
    manager: PluginManager = Depends(get_app_plugin_manager),
):
    """Update plugin configuration; an active plugin is reactivated with it."""
    try:
        result = await manager.update_config(plugin_id, config)
    except Exception as e:
        raise _to_http_error("Configure", plugin_id, e) from e
    return {**result.to_dict(), "config": config}
