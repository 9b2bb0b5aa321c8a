import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.engine import URL

from db.providers.base import DatabaseProvider
from db.providers.sql import SqlAlchemyProvider
from models.types import (
    ColumnInfo,
    ConnectionConfig,
    ConnectionState,
    DatabaseInfo,
    DatabaseType,
    QueryResult,
    TableInfo,
)
from utils.storage import MemorySecretStore, MemoryStateStore


class SqliteProvider(SqlAlchemyProvider):
    """File backed SQLite through aiosqlite; config.database is the file path.

    Tagged as PostgreSQL by default so generated SQL uses double quoted
    identifiers and TRUE/FALSE, both of which SQLite accepts.
    """

    db_type = DatabaseType.POSTGRESQL
    display_name = "SQLite"

    def _build_url(self, config, password):
        return URL.create("sqlite+aiosqlite", database=config.database)

    async def get_databases(self):
        return [DatabaseInfo(name="main")]


class FakeProvider(DatabaseProvider):
    """In-process provider recording calls; behaviour is set through attributes."""

    display_name = "Fake"

    def __init__(self, dialect=None, **kwargs):
        super().__init__(dialect, **kwargs)
        self.states: List[ConnectionState] = [self.get_state()]
        self.fail_connect: Optional[Exception] = None
        self.test_result = True
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.executed: List[str] = []
        self.results: Dict[str, QueryResult] = {}
        self.databases: List[str] = []
        self.tables: Dict[str, List[TableInfo]] = {}
        self.columns: Dict[str, List[ColumnInfo]] = {}
        self.failing_columns = set()

    def _set_state(self, state):
        super()._set_state(state)
        self.states.append(state)

    async def connect(self, config, password):
        self.connect_calls += 1
        self._set_state(ConnectionState.CONNECTING)
        if self.fail_connect is not None:
            self._set_state(ConnectionState.ERROR)
            raise self.fail_connect
        self.password = password
        self._set_state(ConnectionState.CONNECTED)

    async def disconnect(self):
        self.disconnect_calls += 1
        self._set_state(ConnectionState.DISCONNECTED)

    async def test_connection(self, config, password):
        if isinstance(self.test_result, Exception):
            raise self.test_result
        return self.test_result

    async def get_databases(self):
        self.ensure_connected()
        return [DatabaseInfo(name=n) for n in self.databases]

    async def get_tables(self, database=None):
        self.ensure_connected()
        return list(self.tables.get(database, []))

    async def get_columns(self, database, table, schema=None):
        self.ensure_connected()
        if table in self.failing_columns:
            raise RuntimeError(f"cannot describe {table}")
        return list(self.columns.get(table, []))

    async def execute_query(self, query, database=None):
        self.ensure_connected()
        self.executed.append(query)
        return self.results.get(query, QueryResult(rows=None, row_count=1, execution_time=1.0))


class ProviderFactory:
    """Callable handed to ConnectionManager; remembers every provider it built."""

    def __init__(self, cls=FakeProvider):
        self.cls = cls
        self.created: List[DatabaseProvider] = []

    def __call__(self, dialect, **kwargs):
        provider = self.cls(dialect=dialect, **kwargs)
        self.created.append(provider)
        return provider


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def secret_store():
    return MemorySecretStore()


@pytest.fixture
def provider_factory():
    return ProviderFactory()


@pytest.fixture
def make_config():
    def _make(name="local", db_type=DatabaseType.MYSQL, **kwargs):
        return ConnectionConfig(id=kwargs.pop("id", ""), name=name, type=db_type, **kwargs)

    return _make


@pytest.fixture
def sqlite_config(tmp_path):
    return ConnectionConfig(id="sqlite1", name="scratch", type=DatabaseType.POSTGRESQL, database=str(tmp_path / "test.db"))


@pytest_asyncio.fixture
async def sqlite_provider(sqlite_config):
    provider = SqliteProvider()
    await provider.connect(sqlite_config, "")
    yield provider
    await provider.disconnect()
