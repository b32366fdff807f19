"""Shared fixtures: throwaway plugin directories and a temporary registry database."""

import json
import textwrap
from pathlib import Path

import pytest

from plugos import dependencies
from plugos.plugins.manager import PluginManager
from plugos.storage.database import Database

HELLO_SOURCE = '''
from fastapi import Request

from plugos.plugins import Plugin


class HelloPlugin(Plugin):
    async def activate(self, context):
        await super().activate(context)
        self.greeting = context.get_config("greeting", "hello")
        context.register_route("GET", "/", self.greet)
        context.register_route("GET", "/org", self.org)
        context.register_route("GET", "/boom", self.boom)

    async def greet(self):
        return {"message": self.greeting, "plugin": self.id}

    async def org(self, request: Request):
        return {"org_id": request.state.org_id}

    async def boom(self):
        raise RuntimeError("kaboom")
'''


@pytest.fixture
def plugins_dir(tmp_path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def packages_dir(tmp_path) -> Path:
    path = tmp_path / "site-packages"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugins_dir):
    """Factory writing a plugin directory with plugin.json, plugin.py and migrations.

    Keyword arguments not listed below are merged into the manifest.
    """

    def _make(
        plugin_id: str,
        source: str = HELLO_SOURCE,
        root: Path = None,
        dirname: str = None,
        migrations: dict = None,
        files: dict = None,
        **manifest,
    ) -> Path:
        plugin_dir = (root or plugins_dir) / (dirname or plugin_id)
        plugin_dir.mkdir(parents=True)

        data = {
            "id": plugin_id,
            "name": plugin_id.replace("-", " ").title(),
            "version": "1.0.0",
            "entryPoint": "plugin:HelloPlugin",
            "permissions": {"read": "read access"},
        }
        data.update(manifest)
        (plugin_dir / "plugin.json").write_text(json.dumps(data), encoding="utf-8")
        (plugin_dir / "plugin.py").write_text(textwrap.dedent(source), encoding="utf-8")

        for name, content in (files or {}).items():
            target = plugin_dir / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(textwrap.dedent(content), encoding="utf-8")

        if migrations:
            migrations_dir = plugin_dir / "migrations"
            migrations_dir.mkdir()
            for name, sql in migrations.items():
                (migrations_dir / name).write_text(sql, encoding="utf-8")
        return plugin_dir

    return _make


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "plugos.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
async def manager(db, plugins_dir, packages_dir):
    """Manager over a connected database; call ``initialize()`` after creating plugins."""
    mgr = PluginManager(db=db, plugins_dir=plugins_dir, packages_dir=packages_dir)
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def http_manager(tmp_path, plugins_dir, packages_dir):
    """Manager over an unconnected database; the app lifespan connects and initializes it."""
    mgr = PluginManager(
        db=Database(tmp_path / "http.db"),
        plugins_dir=plugins_dir,
        packages_dir=packages_dir,
    )
    dependencies.set_plugin_manager(mgr)
    yield mgr
    dependencies.reset_services()
