#!/usr/bin/env python3
"""Plugin management CLI tool."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Ensure project root is in path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from plugos.constants import DB_PATH, PACKAGES_DIR, PLUGINS_DIR
from plugos.plugins.errors import PluginError
from plugos.plugins.loader import PluginLoader
from plugos.plugins.manager import PluginManager
from plugos.storage.database import Database

console = Console()


async def _run(operation, args):
    """Open the registry, bring the manager up, run ``operation``, tear down.

    Plugins recorded active are reactivated first so deactivate/uninstall see
    the same state the server would.
    """
    db = Database(DB_PATH)
    await db.connect()
    manager = PluginManager(db=db, plugins_dir=PLUGINS_DIR, packages_dir=PACKAGES_DIR)
    try:
        await manager.initialize()
        return await operation(manager, args)
    finally:
        await manager.shutdown()
        await db.close()


def _execute(operation, args) -> None:
    try:
        asyncio.run(_run(operation, args))
    except PluginError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)


async def cmd_list(manager: PluginManager, args):
    """List all discovered plugins."""
    plugins = await manager.list()
    if not plugins:
        console.print("No plugins found.")
        return

    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Source")
    table.add_column("State")
    for p in plugins:
        table.add_row(p["id"], p["name"], p["version"], p["source"], p["state"])
    console.print(table)


async def cmd_info(manager: PluginManager, args):
    """Show detailed plugin information."""
    status = manager.get_status(args.plugin_id)
    if not status:
        console.print(f"[red]Plugin '{args.plugin_id}' not found.[/red]")
        sys.exit(1)

    record = await manager.store.get_record(args.plugin_id)
    permissions = await manager.store.list_permissions(args.plugin_id)
    migrations = await manager.store.list_migrations(args.plugin_id)

    lines = [
        f"[cyan]Name:[/cyan]        {status['name']}",
        f"[cyan]Version:[/cyan]     {status['version']}",
        f"[cyan]Description:[/cyan] {status['description']}",
        f"[cyan]Author:[/cyan]      {status['author']}",
        f"[cyan]Source:[/cyan]      {status['source']}",
        f"[cyan]Path:[/cyan]        {status['path']}",
        f"[cyan]Entry Point:[/cyan] {status['entry_point']}",
        f"[cyan]Installed:[/cyan]   {bool(record and record.is_installed)}",
        f"[cyan]Active:[/cyan]      {status['is_active']}",
    ]
    if status["dependencies"]:
        lines.append(f"[cyan]Depends on:[/cyan]  {', '.join(status['dependencies'])}")
    if permissions:
        lines.append("[cyan]Permissions:[/cyan]")
        lines.extend(f"  {p['permission_key']}: {p['description']}" for p in permissions)
    if migrations:
        lines.append(f"[cyan]Migrations:[/cyan]  {', '.join(migrations)}")
    if record and record.config:
        lines.append(f"[cyan]Config:[/cyan]      {json.dumps(record.config, ensure_ascii=False)}")
    for method, path in [(r["method"], r["path"]) for r in status["routes"]]:
        lines.append(f"  [dim]{method} {status['route_prefix']}{path}[/dim]")

    console.print(Panel("\n".join(lines), title=f"Plugin: {args.plugin_id}", border_style="blue"))


async def cmd_install(manager: PluginManager, args):
    """Install a discovered plugin."""
    await manager.install(args.plugin_id)
    console.print(f"[green]✓ Plugin '{args.plugin_id}' installed.[/green]")
    console.print(f"Run 'python manage_plugins.py activate {args.plugin_id}' to activate it.")


async def cmd_activate(manager: PluginManager, args):
    """Mark a plugin active (the server activates it on next start)."""
    config = json.loads(args.config) if args.config else None
    result = await manager.activate(args.plugin_id, config)
    if result.already_active and args.config:
        result = await manager.update_config(args.plugin_id, config)
    console.print(f"[green]✓ Plugin '{args.plugin_id}' activated. Restart the service to take effect.[/green]")


async def cmd_deactivate(manager: PluginManager, args):
    """Mark a plugin inactive."""
    result = await manager.deactivate(args.plugin_id)
    if not result.success:
        console.print(f"[yellow]Plugin '{args.plugin_id}': {result.error}[/yellow]")
        sys.exit(1)
    console.print(f"[green]✓ Plugin '{args.plugin_id}' deactivated. Restart the service to take effect.[/green]")


async def cmd_uninstall(manager: PluginManager, args):
    """Uninstall a plugin."""
    await manager.uninstall(args.plugin_id, remove_data=args.remove_data)
    suffix = " (data removed)" if args.remove_data else ""
    console.print(f"[green]✓ Plugin '{args.plugin_id}' uninstalled{suffix}.[/green]")


def cmd_doctor(args):
    """Run health checks on the plugin system (read-only, no database access)."""
    issues = []

    if not PLUGINS_DIR.exists():
        issues.append(f"Plugins directory missing: {PLUGINS_DIR}")
    if not DB_PATH.exists():
        issues.append(f"Registry database not created yet: {DB_PATH}")

    # Validate every plugin.json directly so rejected manifests are reported too
    if PLUGINS_DIR.exists():
        for item in sorted(PLUGINS_DIR.iterdir()):
            if not item.is_dir() or item.name.startswith((".", "__")):
                continue
            manifest_file = item / PluginLoader.MANIFEST_FILE
            if not manifest_file.exists():
                issues.append(f"{item.name}: no {PluginLoader.MANIFEST_FILE}")

    loader = PluginLoader(PLUGINS_DIR, PACKAGES_DIR)
    catalog = loader.discover()
    for descriptor in catalog.values():
        if not descriptor.entry_path.exists():
            issues.append(f"Plugin '{descriptor.id}': entry point file missing: {descriptor.entry_path}")
        for dep in descriptor.manifest.dependencies:
            if dep not in catalog:
                issues.append(f"Plugin '{descriptor.id}': dependency '{dep}' not found")

    if issues:
        console.print(f"[red]Found {len(issues)} issue(s):[/red]")
        for i, issue in enumerate(issues, 1):
            console.print(f"  {i}. {issue}")
        sys.exit(1)
    console.print(f"[green]All checks passed. {len(catalog)} plugin(s) found.[/green]")


def main():
    parser = argparse.ArgumentParser(description="PlugOS Plugin Manager")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # list
    subparsers.add_parser("list", help="List all plugins")

    # info
    info_parser = subparsers.add_parser("info", help="Show plugin details")
    info_parser.add_argument("plugin_id", help="Plugin ID")

    # install
    install_parser = subparsers.add_parser("install", help="Install a discovered plugin")
    install_parser.add_argument("plugin_id", help="Plugin ID")

    # activate
    activate_parser = subparsers.add_parser("activate", help="Activate a plugin")
    activate_parser.add_argument("plugin_id", help="Plugin ID")
    activate_parser.add_argument("--config", help="Plugin configuration as a JSON object")

    # deactivate
    deactivate_parser = subparsers.add_parser("deactivate", help="Deactivate a plugin")
    deactivate_parser.add_argument("plugin_id", help="Plugin ID")

    # uninstall
    uninstall_parser = subparsers.add_parser("uninstall", help="Uninstall a plugin")
    uninstall_parser.add_argument("plugin_id", help="Plugin ID")
    uninstall_parser.add_argument("--remove-data", action="store_true", help="Drop plugin data and migrations")

    # doctor
    subparsers.add_parser("doctor", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "doctor":
        cmd_doctor(args)
        return

    commands = {
        "list": cmd_list,
        "info": cmd_info,
        "install": cmd_install,
        "activate": cmd_activate,
        "deactivate": cmd_deactivate,
        "uninstall": cmd_uninstall,
    }

    _execute(commands[args.command], args)


if __name__ == "__main__":
    main()
