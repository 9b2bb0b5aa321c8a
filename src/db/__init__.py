"""Connection management, execution and result editing.

Kept as a package so imports such as `from db.executor import ...` resolve
both in development (with `src` on sys.path) and when installed.
"""

__all__ = [
    "connection",
    "editor",
    "errors",
    "executor",
    "metadata",
    "providers",
    "schema_cache",
    "splitter",
]
