"""Plain records shared by the connection, execution and editing layers.

Nothing in here talks to a database. Configs round-trip through plain dicts
so they can be persisted by the state store as JSON.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from db.errors import ConfigurationError


class DatabaseType(str, Enum):
    """Closed set of supported dialect tags."""

    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    MSSQL = "mssql"
    MONGODB = "mongodb"
    MARIADB = "mariadb"

    @classmethod
    def parse(cls, value: Any) -> "DatabaseType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported database type: {value}") from None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


DEFAULT_PORTS = {
    DatabaseType.MYSQL: 3306,
    DatabaseType.MARIADB: 3306,
    DatabaseType.POSTGRESQL: 5432,
    DatabaseType.MSSQL: 1433,
    DatabaseType.MONGODB: 27017,
}


@dataclass
class ConnectionConfig:
    """User supplied connection settings. The password lives in the secret store."""

    id: str
    name: str
    type: DatabaseType
    host: str = "localhost"
    port: Optional[int] = None
    username: str = ""
    database: Optional[str] = None
    ssl: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = DatabaseType.parse(self.type)
        if self.port is None:
            self.port = DEFAULT_PORTS.get(self.type)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        port = data.get("port")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            type=DatabaseType.parse(data.get("type")),
            host=data.get("host") or "localhost",
            port=int(port) if port not in (None, "") else None,
            username=data.get("username") or data.get("user") or "",
            database=data.get("database") or None,
            ssl=bool(data.get("ssl", False)),
            options=dict(data.get("options") or {}),
        )

    @classmethod
    def from_jdbc_url(cls, connection_id: str, name: str, jdbc_url: str) -> "ConnectionConfig":
        """Build a config from a JDBC style URL. The password, if any, is ignored here."""
        from db.connection import parse_jdbc_url

        parsed = parse_jdbc_url(jdbc_url)
        params = dict(parsed.get("params") or {})
        ssl = str(params.pop("ssl", "")).lower() == "true" or params.get("sslmode") == "require"
        if parsed.get("schema"):
            params.setdefault("schema", parsed["schema"])
        return cls(
            id=connection_id,
            name=name,
            type=parsed["dialect"],
            host=parsed.get("host") or "localhost",
            port=parsed.get("port"),
            username=parsed.get("username") or "",
            database=parsed.get("database") or None,
            ssl=ssl,
            options=params,
        )


@dataclass
class ColumnInfo:
    name: str
    type: str
    nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False
    default_value: Optional[str] = None


@dataclass
class TableInfo:
    name: str
    schema: Optional[str] = None
    row_count: Optional[int] = None
    columns: Optional[List[ColumnInfo]] = None


@dataclass
class FieldInfo:
    """A field discovered by sampling documents."""

    name: str
    type: str
    is_required: bool = False


@dataclass
class CollectionInfo:
    name: str
    document_count: Optional[int] = None
    fields: Optional[List[FieldInfo]] = None


@dataclass
class DatabaseInfo:
    name: str
    tables: Optional[List[TableInfo]] = None
    collections: Optional[List[CollectionInfo]] = None


@dataclass(frozen=True)
class QueryField:
    name: str
    type: str = "unknown"


@dataclass(frozen=True)
class QueryResult:
    """Outcome of one statement. An error result never carries rows."""

    rows: Optional[List[Dict[str, Any]]] = None
    row_count: int = 0
    fields: Optional[List[QueryField]] = None
    execution_time: float = 0.0  # milliseconds
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str, execution_time: float = 0.0) -> "QueryResult":
        return cls(rows=None, row_count=0, fields=None, execution_time=execution_time, error=message)

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class QueryHistoryEntry:
    id: str
    connection_id: str
    query: str
    timestamp: datetime
    execution_time: float
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryHistoryEntry":
        ts = data.get("timestamp")
        return cls(
            id=str(data.get("id") or ""),
            connection_id=str(data.get("connection_id") or ""),
            query=str(data.get("query") or ""),
            timestamp=datetime.fromisoformat(ts) if isinstance(ts, str) else datetime.now(),
            execution_time=float(data.get("execution_time") or 0),
            success=bool(data.get("success")),
            error=data.get("error"),
        )


@dataclass
class EditableTableInfo:
    """Identity of the single table behind a result set, plus editability verdict."""

    table_name: str = ""
    schema: Optional[str] = None
    database: Optional[str] = None
    primary_keys: List[str] = field(default_factory=list)
    columns: List[ColumnInfo] = field(default_factory=list)
    is_editable: bool = False
    edit_error: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str) -> "EditableTableInfo":
        return cls(is_editable=False, edit_error=reason)
