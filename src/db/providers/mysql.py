"""MySQL provider. MariaDB uses the same class tagged with DatabaseType.MARIADB."""
import logging
import ssl
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection

from db.providers.sql import SqlAlchemyProvider
from models.types import ConnectionConfig, DatabaseInfo, DatabaseType

logger = logging.getLogger(__name__)

DRIVER_NAME = "mysql+aiomysql"


def quote_mysql_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySQLProvider(SqlAlchemyProvider):
    db_type = DatabaseType.MYSQL
    display_name = "MySQL"

    def __init__(self, dialect: Optional[DatabaseType] = None, **kwargs):
        super().__init__(dialect, **kwargs)
        if self.get_type() == DatabaseType.MARIADB:
            self.display_name = "MariaDB"

    def _build_url(self, config: ConnectionConfig, password: str) -> URL:
        query = {k: str(v) for k, v in (config.options or {}).items() if v is not None}
        return URL.create(
            drivername=DRIVER_NAME,
            username=config.username or None,
            password=password or None,
            host=config.host or None,
            port=int(config.port) if config.port else None,
            database=config.database or None,
            query=query,
        )

    def _connect_args(self, config: ConnectionConfig) -> Dict[str, Any]:
        if config.ssl:
            return {"ssl": ssl.create_default_context()}
        return {}

    async def _use_database(self, conn: AsyncConnection, database: str) -> None:
        await conn.exec_driver_sql(f"USE {quote_mysql_identifier(database)}")

    def _column_schema(self, database: Optional[str], schema: Optional[str]) -> Optional[str]:
        # a MySQL schema is a database
        return schema or database or None

    async def get_databases(self) -> List[DatabaseInfo]:
        rows = await self._fetch_all("SHOW DATABASES")
        return [DatabaseInfo(name=str(next(iter(row.values())))) for row in rows]
