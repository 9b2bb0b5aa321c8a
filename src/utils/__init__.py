"""Configuration, persistence and logging helpers."""

__all__ = [
    "log",
    "settings",
    "storage",
]
