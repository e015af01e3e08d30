"""Run source and destination connectors locally in Docker."""

__version__ = "0.1.0"
