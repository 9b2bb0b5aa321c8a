"""Per-dialect database providers.

`create_provider` maps a dialect tag to its implementation. MariaDB shares the
MySQL implementation and is only distinguished by its tag.
"""
from typing import Any, Dict, Type

from db.providers.base import DatabaseProvider
from db.providers.mongo import MongoDBProvider
from db.providers.mssql import MSSQLProvider
from db.providers.mysql import MySQLProvider
from db.providers.postgres import PostgreSQLProvider
from models.types import DatabaseType

PROVIDERS: Dict[DatabaseType, Type[DatabaseProvider]] = {
    DatabaseType.MYSQL: MySQLProvider,
    DatabaseType.MARIADB: MySQLProvider,
    DatabaseType.POSTGRESQL: PostgreSQLProvider,
    DatabaseType.MSSQL: MSSQLProvider,
    DatabaseType.MONGODB: MongoDBProvider,
}


def create_provider(dialect: Any, **kwargs) -> DatabaseProvider:
    """Return a new, disconnected provider for dialect.

    Raises ConfigurationError for an unknown dialect tag.
    """
    db_type = DatabaseType.parse(dialect)
    return PROVIDERS[db_type](dialect=db_type, **kwargs)


__all__ = [
    "DatabaseProvider",
    "MongoDBProvider",
    "MSSQLProvider",
    "MySQLProvider",
    "PostgreSQLProvider",
    "PROVIDERS",
    "create_provider",
]
