"""Data records shared across the package.

Kept as a package so `from models.types import ...` resolves both in
development and when installed.
"""

__all__ = [
    "pending_changes",
    "types",
]
