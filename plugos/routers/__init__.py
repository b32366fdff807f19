"""API routers."""

from plugos.routers.plugins import router as plugins_router

__all__ = ["plugins_router"]
