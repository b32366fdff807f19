"""Global constants for the PlugOS host."""

import os
import sysconfig
from pathlib import Path

# Project root (directory containing app.py)
PLUGOS_ROOT = Path(__file__).resolve().parent.parent

_root_env = os.getenv("PLUGOS_ROOT", "")
if _root_env:
    _root_path = Path(_root_env)
    PROJECT_ROOT = _root_path if _root_path.is_absolute() else (PLUGOS_ROOT / _root_path).resolve()
else:
    PROJECT_ROOT = PLUGOS_ROOT


def _resolve(env_name: str, default: Path) -> Path:
    """Read a path from the environment; relative paths resolve against PROJECT_ROOT."""
    value = os.getenv(env_name, "")
    if not value:
        return default
    path = Path(value)
    return path if path.is_absolute() else (PROJECT_ROOT / path).resolve()


DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = _resolve("PLUGOS_DB_PATH", DATA_DIR / "plugos.db")

# Local plugin directories (each with a plugin.json)
PLUGINS_DIR = _resolve("PLUGOS_PLUGINS_DIR", PROJECT_ROOT / "plugins")

# Installed Python distributions; only plugos-* / plugos_* entries are scanned
PACKAGES_DIR = _resolve("PLUGOS_PACKAGES_DIR", Path(sysconfig.get_paths()["purelib"]))

# Admin API prefix (plugin routes live under plugos.plugins.routing.PLUGIN_ROUTE_BASE)
ADMIN_API_PREFIX = "/api/admin/plugins"
