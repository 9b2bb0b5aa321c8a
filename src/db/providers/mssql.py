"""SQL Server provider (aioodbc driver)."""
import logging
from typing import List, Optional

from sqlalchemy.engine import URL

from db.providers.sql import SqlAlchemyProvider
from models.types import ConnectionConfig, DatabaseInfo, DatabaseType, TableInfo

logger = logging.getLogger(__name__)

DRIVER_NAME = "mssql+aioodbc"
DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"
SYSTEM_DATABASES = ("master", "tempdb", "model", "msdb")


class MSSQLProvider(SqlAlchemyProvider):
    db_type = DatabaseType.MSSQL
    display_name = "MSSQL"
    # tables are listed for the database chosen at connect time
    requires_database = False
    default_database = "master"

    def _build_url(self, config: ConnectionConfig, password: str) -> URL:
        query = {k: str(v) for k, v in (config.options or {}).items() if v is not None}
        query.setdefault("driver", DEFAULT_ODBC_DRIVER)
        query.setdefault("Encrypt", "yes" if config.ssl else "no")
        query.setdefault("TrustServerCertificate", "yes")
        return URL.create(
            drivername=DRIVER_NAME,
            username=config.username or None,
            password=password or None,
            host=config.host or None,
            port=int(config.port) if config.port else None,
            database=config.database or None,
            query=query,
        )

    async def get_databases(self) -> List[DatabaseInfo]:
        placeholders = ", ".join(f"'{name}'" for name in SYSTEM_DATABASES)
        rows = await self._fetch_all(
            f"SELECT name FROM sys.databases WHERE name NOT IN ({placeholders}) ORDER BY name"
        )
        return [DatabaseInfo(name=row["name"]) for row in rows]

    async def get_tables(self, database: Optional[str] = None) -> List[TableInfo]:
        rows = await self._fetch_all(
            """
            SELECT s.name AS schema_name, t.name AS table_name, SUM(p.rows) AS row_count
            FROM sys.tables t
            INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
            LEFT JOIN sys.partitions p ON t.object_id = p.object_id AND p.index_id IN (0, 1)
            GROUP BY s.name, t.name
            ORDER BY s.name, t.name
            """
        )
        return [
            TableInfo(
                name=row["table_name"],
                schema=row["schema_name"],
                row_count=int(row["row_count"]) if row["row_count"] is not None else None,
            )
            for row in rows
        ]
