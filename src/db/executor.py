import asyncio
import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from db.connection import ConnectionManager
from db.errors import ConfigurationError
from db.splitter import split_statements
from models.types import ConnectionConfig, QueryHistoryEntry, QueryResult
from utils.storage import StateStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "queryHistory"
DEFAULT_HISTORY_SIZE = 100

_CONNECTION_DIRECTIVE = re.compile(r"^--\s*Connection:\s*(.+?)\s*$", re.IGNORECASE)
_DATABASE_DIRECTIVE = re.compile(r"^--\s*Database:\s*(.+?)\s*$", re.IGNORECASE)


def detect_directives(script: str) -> Tuple[Optional[str], Optional[str]]:
    """Read `-- Connection: name` and `-- Database: name` from the script header.

    Only the leading run of blank and `--` comment lines is examined; the first
    line of actual SQL ends the header.
    """
    connection = None
    database = None
    for line in (script or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--"):
            break
        m = _CONNECTION_DIRECTIVE.match(stripped)
        if m and connection is None:
            connection = m.group(1)
            continue
        m = _DATABASE_DIRECTIVE.match(stripped)
        if m and database is None:
            database = m.group(1)
    return connection, database


@dataclass
class StatementResult:
    query: str
    result: QueryResult


@dataclass
class BatchResult:
    """Per statement outcomes of one execute_query call, in source order."""

    results: List[StatementResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def result(self) -> Optional[QueryResult]:
        """The only result when a single statement ran."""
        return self.results[0].result if len(self.results) == 1 else None

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.result.success)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if not r.result.success)

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    @property
    def total_time(self) -> float:
        return sum(r.result.execution_time for r in self.results)

    def summary(self) -> str:
        if self.has_errors:
            return (
                f"Executed {len(self.results)} queries: {self.success_count} successful, "
                f"{self.error_count} failed. Total time: {self.total_time:g}ms"
            )
        return f"All {len(self.results)} queries executed successfully in {self.total_time:g}ms"


def _history_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"hist_{int(time.time() * 1000)}_{suffix}"


class QueryHistory:
    """Insertion ordered log of executed statements, oldest evicted first."""

    def __init__(self, state_store: Optional[StateStore] = None, max_size: int = DEFAULT_HISTORY_SIZE):
        self._store = state_store
        self.max_size = max(1, int(max_size))
        self._entries: List[QueryHistoryEntry] = []
        self._load()

    def _load(self) -> None:
        if self._store is None:
            return
        for raw in self._store.get(HISTORY_KEY, []) or []:
            try:
                self._entries.append(QueryHistoryEntry.from_dict(raw))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed history entry: %s", e)
        self._entries = self._entries[-self.max_size:]
        logger.debug("Loaded %d query history entries", len(self._entries))

    def _save(self) -> None:
        if self._store is None:
            return
        try:
            self._store.update(HISTORY_KEY, [e.to_dict() for e in self._entries])
        except Exception as e:
            # history is not worth failing a query over
            logger.error("Failed to save query history: %s", e)

    def add(self, connection_id: str, query: str, result: QueryResult) -> QueryHistoryEntry:
        entry = QueryHistoryEntry(
            id=_history_id(),
            connection_id=connection_id,
            query=query,
            timestamp=datetime.now(),
            execution_time=result.execution_time,
            success=result.success,
            error=result.error,
        )
        self._entries.append(entry)
        if len(self._entries) > self.max_size:
            self._entries = self._entries[-self.max_size:]
        self._save()
        return entry

    def entries(self, connection_id: Optional[str] = None) -> List[QueryHistoryEntry]:
        if connection_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.connection_id == connection_id]

    def clear(self) -> None:
        self._entries = []
        self._save()

    def __len__(self) -> int:
        return len(self._entries)


class QueryExecutor:
    """Run scripts against connected providers and record what ran."""

    def __init__(
        self,
        manager: ConnectionManager,
        state_store: Optional[StateStore] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.manager = manager
        size = (settings or {}).get("max_query_history_size", DEFAULT_HISTORY_SIZE)
        self.history = QueryHistory(state_store, size)

    def resolve_target(
        self,
        script: str,
        connection_id: Optional[str] = None,
        database: Optional[str] = None,
    ) -> Tuple[ConnectionConfig, Optional[str]]:
        """Pick the connection and database a script should run against.

        Header directives win when they name a connected connection. Otherwise
        the explicit connection_id is used, then the only connected
        connection. Raises ConfigurationError when nothing can be chosen.
        """
        directive_conn, directive_db = detect_directives(script)
        database = directive_db or database
        connected = self.manager.get_connected_connections()

        if directive_conn:
            wanted = directive_conn.lower()
            for config in connected:
                if config.name.lower() == wanted:
                    logger.info("Auto-detected connection: %s", config.name)
                    return config, database
            logger.warning('Connection "%s" not found or not connected', directive_conn)

        if connection_id:
            config = self.manager.get_connection(connection_id)
            if config is None:
                raise ConfigurationError(f"Connection not found: {connection_id}")
            return config, database

        if not connected:
            raise ConfigurationError("No active connections. Please connect to a database first.")
        if len(connected) > 1:
            raise ConfigurationError("Multiple active connections; choose one to execute the query")
        logger.info("Using only available connection: %s", connected[0].name)
        return connected[0], database

    async def execute_query(
        self,
        connection_id: str,
        script: str,
        database: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """Split script and run its statements one after another.

        A failing statement does not stop the batch. When several statements
        are present, cancel_event is checked before each one; statements
        already sent are not rolled back.
        """
        config = self.manager.get_connection(connection_id)
        if config is None:
            raise ConfigurationError(f"Connection not found: {connection_id}")
        provider = self.manager.require_provider(connection_id)

        statements = split_statements(script, config.type)
        batch = BatchResult()
        if not statements:
            logger.warning("No valid queries to execute")
            return batch

        if len(statements) == 1:
            result = await provider.execute_query(statements[0], database)
            self.history.add(connection_id, statements[0], result)
            batch.results.append(StatementResult(statements[0], result))
            return batch

        for i, statement in enumerate(statements):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Execution cancelled after %d queries", i)
                batch.cancelled = True
                break
            try:
                result = await provider.execute_query(statement, database)
            except Exception as e:
                # e.g. the connection dropped between statements
                logger.error("Statement %d failed: %s", i + 1, e)
                result = QueryResult.failure(str(e))
            self.history.add(connection_id, statement, result)
            batch.results.append(StatementResult(statement, result))

        logger.info(batch.summary())
        return batch

    async def execute_script(
        self,
        script: str,
        connection_id: Optional[str] = None,
        database: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """Resolve the target from directives, then execute."""
        config, database = self.resolve_target(script, connection_id, database)
        return await self.execute_query(config.id, script, database, cancel_event)

    def get_history(self, connection_id: Optional[str] = None) -> List[QueryHistoryEntry]:
        return self.history.entries(connection_id)

    def clear_history(self) -> None:
        self.history.clear()
