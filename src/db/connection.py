import logging
import random
import string
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from db.errors import ConfigurationError, NotConnectedError
from db.providers import DatabaseProvider, create_provider
from db.providers.base import DEFAULT_CONNECT_TIMEOUT, DEFAULT_TEST_TIMEOUT
from models.types import ConnectionConfig, ConnectionState, DatabaseType
from utils.storage import SecretStore, StateStore

logger = logging.getLogger(__name__)

CONNECTIONS_KEY = "connections"
PASSWORD_KEY_PREFIX = "password."

_JDBC_DIALECTS = {
    "mysql": DatabaseType.MYSQL,
    "mariadb": DatabaseType.MARIADB,
    "postgresql": DatabaseType.POSTGRESQL,
    "postgres": DatabaseType.POSTGRESQL,
    "sqlserver": DatabaseType.MSSQL,
    "mssql": DatabaseType.MSSQL,
    "mongodb": DatabaseType.MONGODB,
    "mongodb+srv": DatabaseType.MONGODB,
}
# JDBC driver switches with no meaning for the async drivers
_JDBC_ONLY_PARAMS = ("characterEncoding", "serverTimezone", "TimeZone", "useUnicode", "useSSL", "currentSchema")


def _parse_sqlserver(raw: str) -> Dict[str, Any]:
    """sqlserver://host[:port][;key=value]... (properties instead of a path)."""
    body = raw[len("sqlserver://"):]
    hostpart, _, props = body.partition(";")
    params: Dict[str, str] = {}
    for item in props.split(";"):
        if "=" in item:
            k, v = item.split("=", 1)
            params[k.strip()] = v.strip()
    host, _, port = hostpart.partition(":")
    host = host.split("\\", 1)[0]
    lowered = {k.lower(): k for k in params}

    def _take(*names):
        for name in names:
            if name.lower() in lowered:
                return params.pop(lowered[name.lower()])
        return None

    database = _take("databaseName", "database")
    username = _take("user", "userName")
    password = _take("password")
    encrypt = _take("encrypt")
    if encrypt is not None:
        params["ssl"] = "true" if encrypt.lower() == "true" else "false"
    return {
        "dialect": DatabaseType.MSSQL,
        "host": host or None,
        "port": int(port) if port.isdigit() else None,
        "database": database,
        "username": username,
        "password": password,
        "params": params,
        "schema": None,
    }


def parse_jdbc_url(jdbc_url: str) -> dict:
    """Parse a JDBC URL into a dict of connection parameters.

    Supports jdbc:mysql, jdbc:mariadb, jdbc:postgresql, jdbc:sqlserver and
    jdbc:mongodb (the jdbc: prefix is optional for mongodb). Returns a dict
    with keys: dialect (DatabaseType), host, port, database, username,
    password, params (dict) and schema. A boolean TLS switch in the URL is
    normalized into params['ssl'] = 'true' | 'false'.
    """
    url = (jdbc_url or "").strip()
    if url.startswith("jdbc:"):
        raw = url[len("jdbc:"):]
    elif url.startswith("mongodb"):
        raw = url
    else:
        raise ConfigurationError("Not a JDBC URL")

    if raw.lower().startswith("sqlserver://"):
        return _parse_sqlserver(raw)

    parsed = urlparse(raw)
    scheme = parsed.scheme.lower()
    dialect = _JDBC_DIALECTS.get(scheme) or _JDBC_DIALECTS.get(scheme.split("+")[0])
    if dialect is None:
        raise ConfigurationError(f"Unsupported database type: {scheme or raw}")

    try:
        port = parsed.port
    except ValueError:
        port = None

    database = unquote(parsed.path[1:]) if parsed.path.startswith("/") else parsed.path
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    schema = params.get("currentSchema") or params.get("search_path") or params.get("schema")

    for ssl_key in ("ssl", "useSSL"):
        if ssl_key in params:
            params["ssl"] = "true" if params[ssl_key].lower() == "true" else "false"
            break
    if params.get("sslmode") in ("require", "verify-ca", "verify-full"):
        params["ssl"] = "true"

    for key in _JDBC_ONLY_PARAMS:
        params.pop(key, None)
    params.pop("search_path", None)
    params.pop("schema", None)

    return {
        "dialect": dialect,
        "host": parsed.hostname,
        "port": port,
        "database": database or None,
        "username": unquote(parsed.username) if parsed.username else None,
        "password": unquote(parsed.password) if parsed.password else None,
        "params": params,
        "schema": schema,
    }


def generate_connection_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"conn_{int(time.time() * 1000)}_{suffix}"


def password_key(connection_id: str) -> str:
    return f"{PASSWORD_KEY_PREFIX}{connection_id}"


ProviderFactory = Callable[..., DatabaseProvider]
Listener = Callable[[], None]


class ConnectionManager:
    """Owns configured connections and their live providers.

    Configs persist through a StateStore and passwords through a
    SecretStore. Providers are created lazily on connect and discarded on
    disconnect; a provider whose connect failed stays around in ERROR state
    so the next connect reuses it. Every mutating call notifies subscribers
    once it has finished.
    """

    def __init__(
        self,
        state_store: StateStore,
        secret_store: SecretStore,
        provider_factory: Optional[ProviderFactory] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self._state_store = state_store
        self._secret_store = secret_store
        self._provider_factory = provider_factory or create_provider
        settings = settings or {}
        self._connect_timeout = settings.get("connect_timeout_seconds", DEFAULT_CONNECT_TIMEOUT)
        self._test_timeout = settings.get("test_connect_timeout_seconds", DEFAULT_TEST_TIMEOUT)
        self._configs: Dict[str, ConnectionConfig] = {}
        self._providers: Dict[str, DatabaseProvider] = {}
        self._listeners: List[Listener] = []
        self._load_configs()

    def _load_configs(self) -> None:
        for raw in self._state_store.get(CONNECTIONS_KEY, []) or []:
            try:
                config = ConnectionConfig.from_dict(raw)
            except ConfigurationError as e:
                logger.warning("Skipping stored connection %r: %s", raw.get("name") if isinstance(raw, dict) else raw, e)
                continue
            self._configs[config.id] = config
        logger.debug("Loaded connection configs: %r", [c.name for c in self._configs.values()])

    def _save_configs(self, configs: Dict[str, ConnectionConfig]) -> None:
        self._state_store.update(CONNECTIONS_KEY, [c.to_dict() for c in configs.values()])

    def _new_provider(self, db_type: DatabaseType) -> DatabaseProvider:
        return self._provider_factory(
            db_type,
            connect_timeout=self._connect_timeout,
            test_timeout=self._test_timeout,
        )

    def _require(self, connection_id: str) -> ConnectionConfig:
        config = self._configs.get(connection_id)
        if config is None:
            raise ConfigurationError(f"Connection not found: {connection_id}")
        return config

    # --- observers ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a no-argument callback for connection changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Connection change listener failed")

    # --- configuration ---

    def add(self, config: ConnectionConfig, password: str = "") -> ConnectionConfig:
        if not config.id:
            config.id = generate_connection_id()
        if config.id in self._configs:
            raise ConfigurationError(f"Connection already exists: {config.id}")
        staged = dict(self._configs)
        staged[config.id] = config
        self._save_configs(staged)
        if password:
            self._secret_store.store(password_key(config.id), password)
        self._configs = staged
        logger.info("Added connection %s (%s)", config.name, config.type.value)
        self._notify()
        return config

    def update(self, config: ConnectionConfig, password: Optional[str] = None) -> None:
        """Replace a stored config. A live provider keeps its session until reconnected."""
        self._require(config.id)
        staged = dict(self._configs)
        staged[config.id] = config
        self._save_configs(staged)
        if password is not None:
            self._secret_store.store(password_key(config.id), password)
        self._configs = staged
        logger.info("Updated connection %s", config.name)
        self._notify()

    async def remove(self, connection_id: str) -> None:
        config = self._require(connection_id)
        await self.disconnect(connection_id)
        self._secret_store.delete(password_key(connection_id))
        staged = dict(self._configs)
        del staged[connection_id]
        self._save_configs(staged)
        self._configs = staged
        logger.info("Removed connection %s", config.name)
        self._notify()

    # --- lifecycle ---

    async def connect(self, connection_id: str) -> None:
        config = self._require(connection_id)
        password = self._secret_store.get(password_key(connection_id)) or ""
        provider = self._providers.get(connection_id)
        if provider is not None and provider.get_type() != config.type:
            # the config was edited to another dialect since this provider was built
            logger.info("Replacing %s provider of %s with %s", provider.get_type().value, config.name, config.type.value)
            del self._providers[connection_id]
            if provider.get_state() != ConnectionState.DISCONNECTED:
                await provider.disconnect()
            provider = None
        if provider is None:
            provider = self._new_provider(config.type)
            self._providers[connection_id] = provider
        try:
            await provider.connect(config, password)
        finally:
            self._notify()

    async def disconnect(self, connection_id: str) -> None:
        provider = self._providers.pop(connection_id, None)
        if provider is None:
            return
        try:
            await provider.disconnect()
        finally:
            self._notify()

    async def disconnect_all(self) -> None:
        """Disconnect every live provider; the first failure is re-raised after all were tried."""
        first_error = None
        for connection_id in list(self._providers):
            try:
                await self.disconnect(connection_id)
            except Exception as e:
                logger.error("Failed to disconnect %s: %s", connection_id, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def test_connection(self, config: ConnectionConfig, password: str) -> bool:
        try:
            provider = self._new_provider(config.type)
            return await provider.test_connection(config, password)
        except Exception as e:
            logger.error("Connection test for %s failed: %s", config.name, e)
            return False

    # --- lookups ---

    def get_connection(self, connection_id: str) -> Optional[ConnectionConfig]:
        return self._configs.get(connection_id)

    def get_all_connections(self) -> List[ConnectionConfig]:
        return list(self._configs.values())

    def get_password(self, connection_id: str) -> str:
        return self._secret_store.get(password_key(connection_id)) or ""

    def get_provider(self, connection_id: str) -> Optional[DatabaseProvider]:
        return self._providers.get(connection_id)

    def require_provider(self, connection_id: str) -> DatabaseProvider:
        """Return the connected provider for connection_id or raise NotConnectedError."""
        provider = self._providers.get(connection_id)
        if provider is None or provider.get_state() != ConnectionState.CONNECTED:
            config = self._configs.get(connection_id)
            raise NotConnectedError(config.name if config else connection_id)
        return provider

    def get_connection_state(self, connection_id: str) -> ConnectionState:
        provider = self._providers.get(connection_id)
        if provider is None:
            return ConnectionState.DISCONNECTED
        return provider.get_state()

    def get_connected_connections(self) -> List[ConnectionConfig]:
        return [
            c for c in self._configs.values()
            if self.get_connection_state(c.id) == ConnectionState.CONNECTED
        ]
