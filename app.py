"""Main FastAPI application for the PlugOS host."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env.prod
load_dotenv('.env.prod')

# Configure logging BEFORE importing any modules that use logger
log_level = os.getenv('LOG_LEVEL', 'INFO')
logging.basicConfig(
    level=getattr(logging, log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import after logging is configured
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plugos import __version__
from plugos.dependencies import get_plugin_manager
from plugos.plugins.manager import PluginManager
from plugos.plugins.routing import PluginDispatchMiddleware
from plugos.routers import plugins_router


def create_app(manager: Optional[PluginManager] = None) -> FastAPI:
    """Build the host application around a plugin manager.

    Plugin routes are served by ``PluginDispatchMiddleware`` out of the
    manager's route table, so activation and deactivation take effect without
    touching this app's router.
    """
    manager = manager or get_plugin_manager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting PlugOS")
        await manager.db.connect()
        await manager.initialize()
        yield
        logger.info("Shutting down PlugOS")
        await manager.shutdown()
        await manager.db.close()

    app = FastAPI(
        title="PlugOS",
        description="Multi-tenant business host with installable plugins",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.plugin_manager = manager

    app.add_middleware(PluginDispatchMiddleware, route_table=manager.route_table)
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(plugins_router)  # /api/admin/plugins endpoints

    @app.get("/")
    async def root():
        return {"message": "PlugOS API", "docs": "/docs"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "active_plugins": manager.active_ids()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9090"))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=True)
