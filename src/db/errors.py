"""Exceptions raised by the connection and execution layers.

Only configuration and connection problems are raised. Statement failures are
reported as data through ``QueryResult.error`` so batches can keep going.
"""


class DatabaseError(RuntimeError):
    """Base class for errors raised by this package."""


class ConfigurationError(DatabaseError, ValueError):
    """Invalid or missing connection settings, unknown connection id, unsupported dialect."""


class NotConnectedError(DatabaseError):
    """An operation needed a live connection and there was none."""

    def __init__(self, target: str = "database"):
        super().__init__(f"Not connected to {target}")
        self.target = target
