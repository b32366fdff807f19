"""Durable storage for the plugin runtime."""

from plugos.storage.database import Database

__all__ = ["Database"]
