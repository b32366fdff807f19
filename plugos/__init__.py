"""PlugOS host application and plugin runtime."""

__version__ = "1.0.0"
