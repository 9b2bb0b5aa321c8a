"""Per-connection snapshot of databases, tables and columns for completion."""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from db.connection import ConnectionManager
from models.types import ColumnInfo, ConnectionState, DatabaseType

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_TABLES = 50
SYSTEM_DATABASES = frozenset({
    "information_schema",
    "mysql",
    "performance_schema",
    "sys",
    "master",
    "tempdb",
    "model",
    "msdb",
})


@dataclass
class TableSchema:
    name: str
    schema: Optional[str] = None
    columns: List[ColumnInfo] = field(default_factory=list)


@dataclass
class DatabaseSchema:
    name: str
    tables: List[TableSchema] = field(default_factory=list)


@dataclass
class SchemaSnapshot:
    connection_id: str
    connection_name: str
    databases: List[DatabaseSchema]
    last_updated: float


class SchemaCache:
    """Lazily refreshed schema snapshots, one per connected SQL connection.

    Snapshots younger than the TTL are reused. Any connection change
    reported by the manager drops every snapshot.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_tables: int = DEFAULT_MAX_TABLES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.manager = manager
        self.ttl_seconds = ttl_seconds
        self.max_tables = max_tables
        self._clock = clock
        self._snapshots: Dict[str, SchemaSnapshot] = {}
        self._unsubscribe = manager.subscribe(self.invalidate_cache)

    def close(self) -> None:
        self._unsubscribe()

    def _is_fresh(self, connection_id: str) -> bool:
        snapshot = self._snapshots.get(connection_id)
        return snapshot is not None and self._clock() - snapshot.last_updated < self.ttl_seconds

    async def update_schema_cache(self) -> None:
        for config in self.manager.get_all_connections():
            if config.type == DatabaseType.MONGODB:
                continue
            provider = self.manager.get_provider(config.id)
            if provider is None or provider.get_state() != ConnectionState.CONNECTED:
                continue
            if self._is_fresh(config.id):
                continue

            schema_data = []
            try:
                if provider.requires_database:
                    for db in await provider.get_databases():
                        if db.name.lower() in SYSTEM_DATABASES:
                            continue
                        schema_data.append(await self._database_schema(provider, db.name, db.name))
                else:
                    # table listing follows the database chosen at connect time
                    name = config.database or provider.default_database or config.name
                    schema_data.append(await self._database_schema(provider, name, None))
            except Exception as e:
                logger.error("Failed to update schema cache for %s: %s", config.name, e)
                continue

            self._snapshots[config.id] = SchemaSnapshot(
                connection_id=config.id,
                connection_name=config.name,
                databases=schema_data,
                last_updated=self._clock(),
            )
            logger.debug("Schema cache updated for %s", config.name)

    async def _database_schema(self, provider, name: str, database: Optional[str]) -> DatabaseSchema:
        tables = await provider.get_tables(database)
        table_schemas = []
        for table in tables[:self.max_tables]:
            try:
                columns = await provider.get_columns(name, table.name, table.schema)
            except Exception as e:
                logger.debug("Columns for %s.%s unavailable: %s", name, table.name, e)
                columns = []
            table_schemas.append(TableSchema(name=table.name, schema=table.schema, columns=columns))
        return DatabaseSchema(name=name, tables=table_schemas)

    def invalidate_cache(self) -> None:
        self._snapshots.clear()
        logger.debug("Schema cache invalidated")

    async def refresh_cache(self, connection_id: str) -> None:
        self._snapshots.pop(connection_id, None)
        await self.update_schema_cache()

    # --- lookups ---

    def get_snapshot(self, connection_id: str) -> Optional[SchemaSnapshot]:
        return self._snapshots.get(connection_id)

    def _iter_tables(self) -> Iterator[Tuple[SchemaSnapshot, DatabaseSchema, TableSchema]]:
        for snapshot in self._snapshots.values():
            for db in snapshot.databases:
                for table in db.tables:
                    yield snapshot, db, table

    def get_tables(self) -> List[Tuple[str, str, TableSchema]]:
        """All cached tables as (connection name, database name, table)."""
        return [(s.connection_name, d.name, t) for s, d, t in self._iter_tables()]

    def find_table(self, name: str) -> Optional[TableSchema]:
        wanted = name.lower()
        for _, _, table in self._iter_tables():
            if table.name.lower() == wanted:
                return table
        return None

    def get_columns(self, table_name: str) -> List[ColumnInfo]:
        table = self.find_table(table_name)
        return list(table.columns) if table else []
