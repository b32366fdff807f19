"""Tests for the PluginManager lifecycle: install, activate, deactivate, uninstall."""

import httpx
import pytest

from app import create_app
from plugos.plugins.errors import DependencyError, MigrationError, PluginNotFoundError
from plugos.plugins.events import SystemEvents
from plugos.plugins.manager import PluginManager
from plugos.plugins.registry import PluginState

STORAGE_SOURCE = '''
from fastapi import Request

from plugos.plugins import Plugin


class NotesPlugin(Plugin):
    async def activate(self, context):
        await super().activate(context)
        context.register_route("GET", "/notes", self.list_notes)
        context.register_route("POST", "/notes", self.add_note)

    async def on_uninstall(self, context):
        await context.execute("DROP TABLE IF EXISTS notes_items")

    async def list_notes(self, request: Request):
        rows = await self.context.query(
            "SELECT body FROM notes_items WHERE org_id IS ? ORDER BY id", [request.state.org_id]
        )
        return {"notes": [r["body"] for r in rows]}

    async def add_note(self, request: Request):
        body = await request.json()
        await self.context.execute(
            "INSERT INTO notes_items (org_id, body) VALUES (?, ?)", [request.state.org_id, body["body"]]
        )
        return {"success": True}
'''

NOTES_MIGRATIONS = {
    "001_create_notes.sql": "CREATE TABLE IF NOT EXISTS notes_items (id INTEGER PRIMARY KEY, org_id TEXT, body TEXT);",
}

EXPLODING_SOURCE = '''
from plugos.plugins import Plugin


class ExplodingPlugin(Plugin):
    async def activate(self, context):
        raise RuntimeError("cannot start")
'''

HALF_STARTED_SOURCE = '''
from plugos.plugins import Plugin


class HalfStartedPlugin(Plugin):
    async def activate(self, context):
        await super().activate(context)
        context.register_route("GET", "/", self.index)
        context.subscribe("user.login", self.on_event)
        self._unsubscribe = context.event_hub.on("user.logout", self.on_event)
        raise RuntimeError("half started")

    async def deactivate(self):
        self._unsubscribe()
        await super().deactivate()

    async def index(self):
        return {"ok": True}

    def on_event(self, payload):
        pass
'''

STUBBORN_SOURCE = '''
from plugos.plugins import Plugin


class StubbornPlugin(Plugin):
    async def activate(self, context):
        await super().activate(context)
        context.register_route("GET", "/", self.index)
        context.subscribe("user.login", self.on_event)

    async def deactivate(self):
        raise RuntimeError("cannot stop")

    async def index(self):
        return {"ok": True}

    def on_event(self, payload):
        pass
'''


def _client(manager):
    app = create_app(manager)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def _record_events(manager):
    seen = []
    for topic in (
        SystemEvents.PLUGIN_INSTALLED,
        SystemEvents.PLUGIN_ACTIVATED,
        SystemEvents.PLUGIN_DEACTIVATED,
        SystemEvents.PLUGIN_UNINSTALLED,
    ):
        manager.event_hub.on(topic, lambda payload, topic=topic: seen.append((topic, payload["plugin_id"])))
    return seen


class TestInstall:
    """Tests for PluginManager.install()."""

    async def test_install_records_registry_permissions_and_migrations(self, manager, make_plugin):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin",
                    migrations=NOTES_MIGRATIONS, permissions={"notes.read": "Read notes"})
        await manager.initialize()

        result = await manager.install("notes")

        assert result.success
        assert result.plugin["id"] == "notes"
        record = await manager.store.get_record("notes")
        assert record.is_installed and not record.is_active
        assert await manager.store.list_migrations("notes") == ["001_create_notes"]
        assert await manager.store.list_permissions("notes") == [
            {"plugin_id": "notes", "permission_key": "notes.read", "description": "Read notes"}
        ]
        assert not manager.is_active("notes")

    async def test_install_twice_is_harmless(self, manager, make_plugin):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin", migrations=NOTES_MIGRATIONS)
        await manager.initialize()

        await manager.install("notes")
        await manager.install("notes")

        assert await manager.store.list_migrations("notes") == ["001_create_notes"]

    async def test_install_unknown(self, manager):
        await manager.initialize()
        with pytest.raises(PluginNotFoundError):
            await manager.install("ghost")

    async def test_failed_migration_leaves_plugin_uninstalled(self, manager, make_plugin):
        make_plugin("broken", migrations={
            "001_ok.sql": "CREATE TABLE broken_ok (id INTEGER);",
            "002_bad.sql": "THIS IS NOT SQL;",
        })
        await manager.initialize()

        with pytest.raises(MigrationError):
            await manager.install("broken")

        assert await manager.store.get_record("broken") is None
        assert await manager.store.list_migrations("broken") == ["001_ok"]


class TestActivate:
    """Tests for PluginManager.activate()."""

    async def test_activate_mounts_routes(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")

        result = await manager.activate("hello", {"greeting": "hey"})

        assert result.success and not result.already_active
        assert manager.is_active("hello")
        assert manager.get_active("hello").is_active
        async with _client(manager) as client:
            response = await client.get("/api/plugins/hello/")
        assert response.json() == {"message": "hey", "plugin": "hello"}

        record = await manager.store.get_record("hello")
        assert record.is_active
        assert record.config == {"greeting": "hey"}

    async def test_activate_is_idempotent(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        seen = _record_events(manager)

        first = await manager.activate("hello")
        context = manager.get_context("hello")
        second = await manager.activate("hello", {"greeting": "ignored"})

        assert not first.already_active
        assert second.success and second.already_active
        assert manager.active_ids() == ["hello"]
        assert manager.get_context("hello") is context
        assert seen == [(SystemEvents.PLUGIN_ACTIVATED, "hello")]

    async def test_activate_unknown(self, manager):
        await manager.initialize()
        with pytest.raises(PluginNotFoundError):
            await manager.activate("ghost")

    async def test_activate_failure_leaves_nothing_behind(self, manager, make_plugin):
        make_plugin("boom", source=EXPLODING_SOURCE, entryPoint="plugin:ExplodingPlugin")
        await manager.initialize()
        await manager.install("boom")

        with pytest.raises(RuntimeError):
            await manager.activate("boom")

        assert not manager.is_active("boom")
        assert manager.route_table.prefixes() == []
        assert not (await manager.store.get_record("boom")).is_active

    async def test_repeated_failed_activation_releases_subscriptions(self, manager, make_plugin):
        make_plugin("half", source=HALF_STARTED_SOURCE, entryPoint="plugin:HalfStartedPlugin")
        await manager.initialize()
        await manager.install("half")

        for _ in range(3):
            with pytest.raises(RuntimeError, match="half started"):
                await manager.activate("half")

        assert manager.event_hub.listener_count(SystemEvents.USER_LOGIN) == 0
        assert manager.event_hub.listener_count(SystemEvents.USER_LOGOUT) == 0
        assert manager.route_table.prefixes() == []
        assert not manager.is_active("half")
        async with _client(manager) as client:
            assert (await client.get("/api/plugins/half/")).status_code == 404

    async def test_activate_uninstalled_plugin_is_not_persisted(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()

        await manager.activate("hello")

        assert manager.is_active("hello")
        assert await manager.store.get_record("hello") is None


class TestDeactivate:
    """Tests for PluginManager.deactivate()."""

    async def test_deactivate_unmounts_routes(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        await manager.activate("hello")
        plugin = manager.get_active("hello")

        result = await manager.deactivate("hello")

        assert result.success
        assert not plugin.is_active
        assert not manager.is_active("hello")
        async with _client(manager) as client:
            assert (await client.get("/api/plugins/hello/")).status_code == 404
        record = await manager.store.get_record("hello")
        assert record.is_installed and not record.is_active

    async def test_failing_deactivate_hook_still_deactivates(self, manager, make_plugin):
        make_plugin("stubborn", source=STUBBORN_SOURCE, entryPoint="plugin:StubbornPlugin")
        await manager.initialize()
        await manager.install("stubborn")
        await manager.activate("stubborn")
        plugin = manager.get_active("stubborn")

        with pytest.raises(RuntimeError, match="cannot stop"):
            await manager.deactivate("stubborn")

        assert not plugin.is_active
        assert not manager.is_active("stubborn")
        assert manager.route_table.prefixes() == []
        assert manager.event_hub.listener_count(SystemEvents.USER_LOGIN) == 0
        assert not (await manager.store.get_record("stubborn")).is_active

        result = await manager.activate("stubborn")

        assert result.success and not result.already_active
        assert manager.route_table.prefixes() == ["/api/plugins/stubborn"]
        async with _client(manager) as client:
            assert (await client.get("/api/plugins/stubborn/")).json() == {"ok": True}

    async def test_deactivate_not_active_is_a_failed_result(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        before = await manager.store.get_record("hello")
        seen = _record_events(manager)

        result = await manager.deactivate("hello")

        assert not result.success
        assert result.error == "Plugin not active"
        assert seen == []
        after = await manager.store.get_record("hello")
        assert (after.is_installed, after.is_active, after.updated_at) == (
            before.is_installed, before.is_active, before.updated_at
        )

    async def test_deactivate_unknown_plugin(self, manager):
        await manager.initialize()
        result = await manager.deactivate("ghost")
        assert not result.success


class TestUninstall:
    """Tests for PluginManager.uninstall()."""

    async def test_uninstall_keeps_data_by_default(self, manager, make_plugin, db):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin",
                    migrations=NOTES_MIGRATIONS, permissions={"notes.read": "Read notes"})
        await manager.initialize()
        await manager.install("notes")
        await manager.activate("notes")

        await manager.uninstall("notes")

        record = await manager.store.get_record("notes")
        assert not record.is_installed and not record.is_active
        assert not manager.is_active("notes")
        assert await manager.store.list_permissions("notes") == []
        assert await manager.store.list_migrations("notes") == ["001_create_notes"]
        assert await db.fetch_one("SELECT name FROM sqlite_master WHERE name = 'notes_items'") is not None

    async def test_uninstall_remove_data(self, manager, make_plugin, db):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin", migrations=NOTES_MIGRATIONS)
        await manager.initialize()
        await manager.install("notes")

        await manager.uninstall("notes", remove_data=True)

        assert await manager.store.list_migrations("notes") == []
        assert await db.fetch_one("SELECT name FROM sqlite_master WHERE name = 'notes_items'") is None

    async def test_reinstall_after_remove_data_reruns_migrations(self, manager, make_plugin):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin", migrations=NOTES_MIGRATIONS)
        await manager.initialize()
        await manager.install("notes")
        await manager.uninstall("notes", remove_data=True)

        await manager.install("notes")

        assert await manager.store.list_migrations("notes") == ["001_create_notes"]
        assert (await manager.store.get_record("notes")).is_installed

    async def test_uninstall_unknown(self, manager):
        await manager.initialize()
        with pytest.raises(PluginNotFoundError):
            await manager.uninstall("ghost")


class TestFullLifecycle:
    async def test_install_activate_use_deactivate_uninstall(self, manager, make_plugin, db):
        make_plugin("notes", source=STORAGE_SOURCE, entryPoint="plugin:NotesPlugin",
                    migrations=NOTES_MIGRATIONS, permissions={"notes.read": "Read", "notes.write": "Write"})
        await manager.initialize()
        seen = _record_events(manager)

        await manager.install("notes")
        await manager.activate("notes")
        async with _client(manager) as client:
            await client.post("/api/plugins/notes/notes", json={"body": "a"}, headers={"X-Org-Id": "org-1"})
            await client.post("/api/plugins/notes/notes", json={"body": "b"}, headers={"X-Org-Id": "org-2"})
            response = await client.get("/api/plugins/notes/notes", headers={"X-Org-Id": "org-1"})
            assert response.json() == {"notes": ["a"]}

            await manager.deactivate("notes")
            assert (await client.get("/api/plugins/notes/notes")).status_code == 404

        await manager.uninstall("notes", remove_data=True)

        assert seen == [
            (SystemEvents.PLUGIN_INSTALLED, "notes"),
            (SystemEvents.PLUGIN_ACTIVATED, "notes"),
            (SystemEvents.PLUGIN_DEACTIVATED, "notes"),
            (SystemEvents.PLUGIN_UNINSTALLED, "notes"),
        ]
        record = await manager.store.get_record("notes")
        assert not record.is_installed
        assert await manager.store.list_permissions("notes") == []
        assert await db.fetch_one("SELECT name FROM sqlite_master WHERE name = 'notes_items'") is None


class TestInitialize:
    """Tests for startup reactivation."""

    async def test_reactivates_plugins_recorded_active(self, manager, make_plugin, db, plugins_dir, packages_dir):
        make_plugin("hello")
        make_plugin("idle")
        await manager.initialize()
        for plugin_id in ("hello", "idle"):
            await manager.install(plugin_id)
        await manager.activate("hello", {"greeting": "persisted"})
        await manager.shutdown()

        restarted = PluginManager(db=db, plugins_dir=plugins_dir, packages_dir=packages_dir)
        await restarted.initialize()
        try:
            assert restarted.active_ids() == ["hello"]
            assert restarted.get_context("hello").get_config("greeting") == "persisted"
        finally:
            await restarted.shutdown()

    async def test_one_failing_plugin_does_not_block_others(self, manager, make_plugin, db, plugins_dir, packages_dir):
        make_plugin("boom", source=EXPLODING_SOURCE, entryPoint="plugin:ExplodingPlugin")
        make_plugin("hello")
        await manager.initialize()
        for plugin_id in ("boom", "hello"):
            await manager.install(plugin_id)
            await manager.store.mark_active(plugin_id, {})

        restarted = PluginManager(db=db, plugins_dir=plugins_dir, packages_dir=packages_dir)
        await restarted.initialize()
        try:
            assert restarted.active_ids() == ["hello"]
        finally:
            await restarted.shutdown()

    async def test_missing_plugin_directory_is_skipped(self, manager, make_plugin, db, plugins_dir, packages_dir):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        await manager.activate("hello")
        await manager.shutdown()

        restarted = PluginManager(db=db, plugins_dir=plugins_dir / "elsewhere", packages_dir=packages_dir)
        await restarted.initialize()

        assert restarted.active_ids() == []

    async def test_shutdown_keeps_registry_state(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        await manager.activate("hello")

        await manager.shutdown()

        assert manager.active_ids() == []
        assert manager.route_table.prefixes() == []
        assert (await manager.store.get_record("hello")).is_active


class TestDependencies:
    """Tests for declared plugin dependencies."""

    async def test_install_requires_installed_dependencies(self, manager, make_plugin):
        make_plugin("parent")
        make_plugin("child", dependencies=["parent"])
        await manager.initialize()

        with pytest.raises(DependencyError) as exc_info:
            await manager.install("child")
        assert exc_info.value.missing == ["parent"]

        await manager.install("parent")
        assert (await manager.install("child")).success

    async def test_activate_requires_active_dependencies(self, manager, make_plugin):
        make_plugin("parent")
        make_plugin("child", dependencies=["parent"])
        await manager.initialize()
        await manager.install("parent")
        await manager.install("child")

        with pytest.raises(DependencyError):
            await manager.activate("child")

        await manager.activate("parent")
        assert (await manager.activate("child")).success

    async def test_initialize_activates_dependencies_first(self, manager, make_plugin, db, plugins_dir, packages_dir):
        # "a-child" sorts before "z-parent" in the registry
        make_plugin("z-parent")
        make_plugin("a-child", dependencies=["z-parent"])
        await manager.initialize()
        await manager.install("z-parent")
        await manager.install("a-child")
        await manager.activate("z-parent")
        await manager.activate("a-child")
        await manager.shutdown()

        restarted = PluginManager(db=db, plugins_dir=plugins_dir, packages_dir=packages_dir)
        await restarted.initialize()
        try:
            assert restarted.active_ids() == ["z-parent", "a-child"]
        finally:
            await restarted.shutdown()

    async def test_missing_dependency(self, manager, make_plugin):
        make_plugin("orphan", dependencies=["nowhere"])
        await manager.initialize()

        with pytest.raises(DependencyError) as exc_info:
            await manager.install("orphan")
        assert exc_info.value.requirement == "installed"


class TestQueries:
    """Tests for list(), get_status(), refresh() and update_config()."""

    async def test_list_merges_catalog_and_registry(self, manager, make_plugin):
        make_plugin("active-one")
        make_plugin("installed-one")
        make_plugin("discovered-one")
        await manager.initialize()
        await manager.install("active-one")
        await manager.install("installed-one")
        await manager.activate("active-one", {"greeting": "x"})

        plugins = {p["id"]: p for p in await manager.list()}

        assert plugins["active-one"]["state"] == PluginState.ACTIVE.value
        assert plugins["active-one"]["config"] == {"greeting": "x"}
        assert plugins["installed-one"]["state"] == PluginState.INSTALLED.value
        assert plugins["installed-one"]["is_installed"] and not plugins["installed-one"]["is_active"]
        assert plugins["discovered-one"]["state"] == PluginState.DISCOVERED.value
        assert plugins["discovered-one"]["config"] == {}

    async def test_get_status(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()

        assert manager.get_status("ghost") is None
        idle = manager.get_status("hello")
        assert idle["is_active"] is False
        assert idle["routes"] == []

        await manager.install("hello")
        await manager.activate("hello")
        status = manager.get_status("hello")

        assert status["is_active"] is True
        assert status["route_prefix"] == "/api/plugins/hello"
        assert {"method": "GET", "path": "/org"} in status["routes"]

    async def test_refresh_discovers_new_plugins(self, manager, make_plugin):
        await manager.initialize()
        assert await manager.list() == []

        make_plugin("late")
        plugins = await manager.refresh()

        assert [p["id"] for p in plugins] == ["late"]

    async def test_update_config_reactivates_active_plugin(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        await manager.activate("hello", {"greeting": "old"})

        await manager.update_config("hello", {"greeting": "new"})

        assert manager.get_context("hello").get_config("greeting") == "new"
        async with _client(manager) as client:
            assert (await client.get("/api/plugins/hello/")).json()["message"] == "new"
        assert (await manager.store.get_record("hello")).config == {"greeting": "new"}

    async def test_update_config_inactive_plugin_is_stored(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")

        result = await manager.update_config("hello", {"greeting": "later"})

        assert result.success
        assert not manager.is_active("hello")
        assert (await manager.store.get_record("hello")).config == {"greeting": "later"}

        await manager.activate("hello")
        assert manager.get_context("hello").get_config("greeting") == "later"

    async def test_explicit_config_replaces_stored_config(self, manager, make_plugin):
        make_plugin("hello")
        await manager.initialize()
        await manager.install("hello")
        await manager.update_config("hello", {"greeting": "stored"})

        await manager.activate("hello", {})

        assert manager.get_context("hello").get_config("greeting", "none") == "none"
        assert (await manager.store.get_record("hello")).config == {}
