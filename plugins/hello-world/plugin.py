"""Hello World plugin entry point."""

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import Request

from plugos.plugins import Plugin, SystemEvents


class HelloWorldPlugin(Plugin):
    """Greets, echoes, and stores greetings per organization."""

    async def activate(self, context) -> None:
        await super().activate(context)
        self.logger = context.logger
        self.greeting = context.get_config("greeting", "Hello from PlugOS!")
        self.started_at = time.monotonic()

        context.register_route("GET", "/", self.get_greeting)
        context.register_route("GET", "/status", self.get_status)
        context.register_route("POST", "/echo", self.echo)
        context.register_route("GET", "/greetings", self.list_greetings)
        context.register_route("POST", "/greetings", self.add_greeting)

        self._unsubscribe = context.subscribe(SystemEvents.USER_LOGIN, self.on_user_login)
        self.logger.info("Hello World plugin activated!")

    async def deactivate(self) -> None:
        self._unsubscribe()
        self.logger.info("Hello World plugin deactivated")
        await super().deactivate()

    async def on_uninstall(self, context) -> None:
        await context.execute("DROP TABLE IF EXISTS hello_world_greetings")

    def on_user_login(self, user: Dict[str, Any]) -> None:
        self.logger.info(f"User logged in: {user.get('email')}")

    async def get_greeting(self):
        """GET /api/plugins/hello-world/"""
        return {"message": self.greeting, "plugin": self.name, "version": self.version}

    async def get_status(self):
        """GET /api/plugins/hello-world/status"""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "is_active": self.is_active,
            "uptime": round(time.monotonic() - self.started_at, 3),
        }

    async def echo(self, request: Request):
        """POST /api/plugins/hello-world/echo"""
        return {
            "echo": await request.json(),
            "org_id": request.state.org_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def list_greetings(self, request: Request):
        rows = await self.context.query(
            "SELECT id, message, created_at FROM hello_world_greetings WHERE org_id IS ? ORDER BY id",
            [request.state.org_id],
        )
        return {"greetings": rows}

    async def add_greeting(self, request: Request):
        body = await request.json()
        await self.context.execute(
            "INSERT INTO hello_world_greetings (org_id, message) VALUES (?, ?)",
            [request.state.org_id, body.get("message") or self.greeting],
        )
        return {"success": True}
