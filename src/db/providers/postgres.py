"""PostgreSQL provider (asyncpg driver)."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection

from db.providers.sql import SqlAlchemyProvider
from models.types import ConnectionConfig, DatabaseInfo, DatabaseType, TableInfo

logger = logging.getLogger(__name__)

DRIVER_NAME = "postgresql+asyncpg"
DEFAULT_DATABASE = "postgres"
# keys consumed here rather than passed to the driver
_SCHEMA_KEYS = ("schema", "search_path", "currentSchema")


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PostgreSQLProvider(SqlAlchemyProvider):
    db_type = DatabaseType.POSTGRESQL
    display_name = "PostgreSQL"
    # a session sees only the database it connected to
    requires_database = False
    default_database = DEFAULT_DATABASE

    @staticmethod
    def _schema_option(config: ConnectionConfig) -> Optional[str]:
        for key in _SCHEMA_KEYS:
            value = (config.options or {}).get(key)
            if value:
                return str(value)
        return None

    def _build_url(self, config: ConnectionConfig, password: str) -> URL:
        query = {
            k: str(v) for k, v in (config.options or {}).items()
            if v is not None and k not in _SCHEMA_KEYS
        }
        if config.ssl:
            query.setdefault("ssl", "require")
        return URL.create(
            drivername=DRIVER_NAME,
            username=config.username or None,
            password=password or None,
            host=config.host or None,
            port=int(config.port) if config.port else None,
            database=config.database or DEFAULT_DATABASE,
            query=query,
        )

    async def _on_connected(self, conn: AsyncConnection, config: ConnectionConfig) -> None:
        schema = self._schema_option(config)
        if not schema:
            return
        # search_path takes a comma separated list of schema names
        path = ", ".join(_quote_ident(part.strip().strip('"')) for part in schema.split(",") if part.strip())
        await conn.exec_driver_sql(f"SET search_path TO {path}")
        logger.debug("search_path set to %s", path)

    async def get_databases(self) -> List[DatabaseInfo]:
        rows = await self._fetch_all(
            "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
        )
        return [DatabaseInfo(name=row["datname"]) for row in rows]

    async def get_tables(self, database: Optional[str] = None) -> List[TableInfo]:
        # the database is fixed by the connection; list every user schema
        rows = await self._fetch_all(
            "SELECT schemaname AS schema, tablename AS name FROM pg_tables"
            " WHERE schemaname NOT IN ('pg_catalog', 'information_schema')"
            " ORDER BY tablename"
        )
        return [TableInfo(name=row["name"], schema=row["schema"]) for row in rows]
