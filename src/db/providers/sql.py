"""SQLAlchemy asyncio implementation shared by the relational dialects.

Each provider owns one dedicated connection in AUTOCOMMIT mode, so a
statement's side effects are visible to the next one, and an asyncio.Lock so
that overlapping callers on the same connection (an interactive query and a
background schema refresh, say) take turns instead of interleaving on the wire.
"""
import asyncio
import logging
import time
from abc import abstractmethod
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import sqlparse
from sqlalchemy import inspect, text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from db.errors import NotConnectedError
from db.providers.base import DatabaseProvider
from models.types import ColumnInfo, ConnectionConfig, ConnectionState, QueryField, QueryResult, TableInfo

logger = logging.getLogger(__name__)

PROBE_QUERY = "SELECT 1"


def prepare_statement(query: str) -> str:
    """Strip comments, surrounding whitespace and one trailing semicolon."""
    cleaned = sqlparse.format(query or "", strip_comments=True).strip()
    if cleaned.endswith(";"):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, dt_time):
        return "time"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "binary"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def infer_fields(keys: List[str], rows: List[Dict[str, Any]]) -> List[QueryField]:
    """Describe result columns from the first non-null value seen in each."""
    fields = []
    for key in keys:
        typ = "unknown"
        for row in rows:
            value = row.get(key)
            if value is not None:
                typ = _type_name(value)
                break
        fields.append(QueryField(name=key, type=typ))
    return fields


class SqlAlchemyProvider(DatabaseProvider):
    """Relational provider on top of an async SQLAlchemy engine."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._engine: Optional[AsyncEngine] = None
        self._conn: Optional[AsyncConnection] = None
        self._lock = asyncio.Lock()
        self._config: Optional[ConnectionConfig] = None

    # --- engine construction ---

    @abstractmethod
    def _build_url(self, config: ConnectionConfig, password: str) -> URL:
        """Return the SQLAlchemy URL for config."""

    def _connect_args(self, config: ConnectionConfig) -> Dict[str, Any]:
        return {}

    def _create_engine(self, config: ConnectionConfig, password: str) -> AsyncEngine:
        url = self._build_url(config, password)
        engine = create_async_engine(
            url,
            isolation_level="AUTOCOMMIT",
            connect_args=self._connect_args(config),
        )
        logger.debug("Engine for %s created: %s", config.name, url.render_as_string(hide_password=True))
        return engine

    async def _on_connected(self, conn: AsyncConnection, config: ConnectionConfig) -> None:
        """Hook for session setup right after connecting."""

    async def _use_database(self, conn: AsyncConnection, database: str) -> None:
        """Hook for switching the session's database before a statement. Default: ignore."""

    # --- lifecycle ---

    async def _close_handles(self) -> None:
        conn, engine = self._conn, self._engine
        self._conn = None
        self._engine = None
        try:
            if conn is not None:
                await conn.close()
        finally:
            if engine is not None:
                await engine.dispose()

    async def connect(self, config: ConnectionConfig, password: str) -> None:
        async with self._lock:
            self._set_state(ConnectionState.CONNECTING)
            engine = None
            conn = None
            try:
                # reconnecting after an error reuses this instance
                await self._close_handles()
                engine = self._create_engine(config, password)
                conn = await asyncio.wait_for(engine.connect(), timeout=self.connect_timeout)
                await self._on_connected(conn, config)
            except Exception as e:
                self._set_state(ConnectionState.ERROR)
                logger.error("%s connection to %s:%s failed: %s", self.display_name, config.host, config.port, e)
                try:
                    if conn is not None:
                        await conn.close()
                finally:
                    if engine is not None:
                        await engine.dispose()
                raise
            self._engine = engine
            self._conn = conn
            self._config = config
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected to %s: %s:%s", self.display_name, config.host, config.port)

    async def disconnect(self) -> None:
        # waits for a running statement instead of closing the connection under it
        async with self._lock:
            try:
                await self._close_handles()
            finally:
                self._config = None
                self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.display_name)

    async def test_connection(self, config: ConnectionConfig, password: str) -> bool:
        engine = None
        try:
            engine = self._create_engine(config, password)

            async def _probe():
                async with engine.connect() as conn:
                    await conn.exec_driver_sql(PROBE_QUERY)

            await asyncio.wait_for(_probe(), timeout=self.test_timeout)
            return True
        except Exception as e:
            logger.error("%s connection test failed: %s", self.display_name, e)
            return False
        finally:
            if engine is not None:
                await engine.dispose()

    # --- helpers running on the dedicated connection ---

    async def _run(self, fn: Callable[[AsyncConnection], Any]) -> Any:
        """Run an awaitable factory against the connection while holding the lock."""
        self.ensure_connected()
        async with self._lock:
            # a disconnect may have run while this call waited for the lock
            self.ensure_connected()
            conn = self._conn
            if conn is None:
                raise NotConnectedError(f"{self.display_name} database")
            try:
                value = await fn(conn)
            except Exception:
                if conn.in_transaction():
                    await conn.rollback()
                raise
            if conn.in_transaction():
                await conn.commit()
            return value

    async def _fetch_all(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        async def _go(conn: AsyncConnection):
            result = await conn.execute(text(sql), params or {})
            return [dict(r._mapping) for r in result.fetchall()]

        return await self._run(_go)

    async def _inspect(self, fn: Callable[[Any], Any]) -> Any:
        async def _go(conn: AsyncConnection):
            return await conn.run_sync(lambda sync_conn: fn(inspect(sync_conn)))

        return await self._run(_go)

    # --- metadata ---

    async def get_tables(self, database: Optional[str] = None) -> List[TableInfo]:
        names = await self._inspect(lambda insp: insp.get_table_names(schema=database))
        return [TableInfo(name=n, schema=database) for n in names]

    def _column_schema(self, database: Optional[str], schema: Optional[str]) -> Optional[str]:
        return schema

    async def get_columns(self, database: Optional[str], table: str, schema: Optional[str] = None) -> List[ColumnInfo]:
        target_schema = self._column_schema(database, schema)

        def _read(insp):
            cols = insp.get_columns(table, schema=target_schema)
            pk = insp.get_pk_constraint(table, schema=target_schema) or {}
            fks = insp.get_foreign_keys(table, schema=target_schema) or []
            return cols, pk, fks

        cols, pk, fks = await self._inspect(_read)
        pk_cols = set(pk.get("constrained_columns") or [])
        fk_cols = set()
        for fk in fks:
            fk_cols.update(fk.get("constrained_columns") or [])

        out = []
        for col in cols:
            name = col.get("name")
            default = col.get("default")
            out.append(ColumnInfo(
                name=name,
                type=str(col.get("type")),
                nullable=bool(col.get("nullable", True)),
                is_primary_key=name in pk_cols,
                is_foreign_key=name in fk_cols,
                default_value=str(default) if default is not None else None,
            ))
        return out

    # --- execution ---

    async def execute_query(self, query: str, database: Optional[str] = None) -> QueryResult:
        self.ensure_connected()
        start = time.perf_counter()
        statement = prepare_statement(query)
        if not statement:
            return QueryResult.failure("No valid SQL query found", self._elapsed_ms(start))

        async def _go(conn: AsyncConnection):
            if database:
                await self._use_database(conn, database)
            # no_parameters: literal % signs must reach the server untouched
            result = await conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
            if result.returns_rows:
                keys = list(result.keys())
                rows = [dict(r._mapping) for r in result.fetchall()]
                return QueryResult(
                    rows=rows,
                    row_count=len(rows),
                    fields=infer_fields(keys, rows),
                    execution_time=self._elapsed_ms(start),
                )
            affected = result.rowcount if result.rowcount and result.rowcount > 0 else 0
            return QueryResult(rows=None, row_count=affected, execution_time=self._elapsed_ms(start))

        try:
            return await self._run(_go)
        except NotConnectedError:
            raise
        except Exception as e:
            logger.error("Query execution failed: %s", e)
            return QueryResult.failure(str(e), self._elapsed_ms(start))
