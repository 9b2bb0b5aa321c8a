"""Abstract provider: one live connection to one backend."""
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from db.errors import NotConnectedError
from models.types import (
    ColumnInfo,
    ConnectionConfig,
    ConnectionState,
    DatabaseInfo,
    DatabaseType,
    QueryResult,
    TableInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_TEST_TIMEOUT = 10


class DatabaseProvider(ABC):
    """Base class for database providers.

    Subclasses own the network handle. Every operation other than connect,
    disconnect and test_connection refuses to run unless the state is
    CONNECTED. execute_query reports statement failures through
    QueryResult.error instead of raising.
    """

    db_type = DatabaseType.MYSQL
    display_name = "Base"
    # False when table listing is scoped by the database chosen at connect time
    requires_database = True
    # database a connection lands in when its config names none
    default_database: Optional[str] = None

    def __init__(
        self,
        dialect: Optional[DatabaseType] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        test_timeout: float = DEFAULT_TEST_TIMEOUT,
    ):
        self._dialect = DatabaseType.parse(dialect) if dialect else self.db_type
        self._state = ConnectionState.DISCONNECTED
        self.connect_timeout = connect_timeout
        self.test_timeout = test_timeout

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("%s provider state %s -> %s", self.display_name, self._state.value, state.value)
        self._state = state

    def get_state(self) -> ConnectionState:
        return self._state

    def get_type(self) -> DatabaseType:
        return self._dialect

    def ensure_connected(self) -> None:
        if self._state != ConnectionState.CONNECTED:
            raise NotConnectedError(f"{self.display_name} database")

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)

    @abstractmethod
    async def connect(self, config: ConnectionConfig, password: str) -> None:
        """Open the connection, moving CONNECTING -> CONNECTED or ERROR. Errors propagate."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Safe to call repeatedly."""

    @abstractmethod
    async def test_connection(self, config: ConnectionConfig, password: str) -> bool:
        """Connect with a throwaway handle and probe it. Leaves this instance untouched."""

    @abstractmethod
    async def get_databases(self) -> List[DatabaseInfo]:
        pass

    @abstractmethod
    async def get_tables(self, database: Optional[str] = None) -> List[TableInfo]:
        pass

    @abstractmethod
    async def get_columns(self, database: Optional[str], table: str, schema: Optional[str] = None) -> List[ColumnInfo]:
        pass

    @abstractmethod
    async def execute_query(self, query: str, database: Optional[str] = None) -> QueryResult:
        pass
