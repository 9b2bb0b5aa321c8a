import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from conftest import FakeProvider, ProviderFactory
from db.connection import ConnectionManager
from db.schema_cache import SchemaCache
from models.types import ColumnInfo, DatabaseType, TableInfo


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def manager(state_store, secret_store, provider_factory):
    return ConnectionManager(state_store, secret_store, provider_factory=provider_factory)


async def connect_with_schema(manager, make_config, name='app', db_type=DatabaseType.MYSQL):
    config = manager.add(make_config(name, db_type))
    await manager.connect(config.id)
    provider = manager.get_provider(config.id)
    provider.databases = ['mysql', 'shop', 'INFORMATION_SCHEMA']
    provider.tables = {'shop': [TableInfo(name=f't{i}') for i in range(60)]}
    provider.columns = {'t0': [ColumnInfo(name='id', type='INT', is_primary_key=True)]}
    return config, provider


@pytest.mark.asyncio
async def test_update_builds_snapshot(manager, make_config):
    config, provider = await connect_with_schema(manager, make_config)
    provider.failing_columns.add('t1')
    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()

    snapshot = cache.get_snapshot(config.id)
    assert snapshot.connection_name == 'app'
    assert [d.name for d in snapshot.databases] == ['shop']
    tables = snapshot.databases[0].tables
    assert len(tables) == 50
    assert [c.name for c in tables[0].columns] == ['id']
    # a failed column lookup only empties that table
    assert tables[1].columns == []
    assert cache.get_columns('T0')[0].name == 'id'
    assert cache.find_table('missing') is None
    assert len(cache.get_tables()) == 50


@pytest.mark.asyncio
async def test_snapshot_reused_until_ttl_expires(manager, make_config):
    config, provider = await connect_with_schema(manager, make_config)
    clock = Clock()
    cache = SchemaCache(manager, ttl_seconds=300, clock=clock)
    await cache.update_schema_cache()
    first = cache.get_snapshot(config.id)

    provider.databases = ['other']
    clock.now += 299
    await cache.update_schema_cache()
    assert cache.get_snapshot(config.id) is first

    clock.now += 2
    await cache.update_schema_cache()
    assert [d.name for d in cache.get_snapshot(config.id).databases] == ['other']


@pytest.mark.asyncio
async def test_refresh_cache_forces_one_connection(manager, make_config):
    config, provider = await connect_with_schema(manager, make_config)
    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()
    provider.databases = ['fresh']
    await cache.refresh_cache(config.id)
    assert [d.name for d in cache.get_snapshot(config.id).databases] == ['fresh']


@pytest.mark.asyncio
async def test_connection_changes_invalidate_everything(manager, make_config):
    config, _ = await connect_with_schema(manager, make_config)
    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()
    assert cache.get_snapshot(config.id) is not None

    manager.add(make_config('another'))
    assert cache.get_snapshot(config.id) is None

    cache.close()
    await cache.update_schema_cache()
    manager.add(make_config('third'))
    assert cache.get_snapshot(config.id) is not None


@pytest.mark.asyncio
async def test_skips_document_store_and_disconnected(manager, make_config):
    mongo, _ = await connect_with_schema(manager, make_config, 'docs', DatabaseType.MONGODB)
    idle = manager.add(make_config('idle'))
    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()
    assert cache.get_snapshot(mongo.id) is None
    assert cache.get_snapshot(idle.id) is None


@pytest.mark.asyncio
async def test_database_listing_failure_leaves_no_snapshot(manager, make_config):
    config, provider = await connect_with_schema(manager, make_config)

    async def broken():
        raise RuntimeError('permission denied')

    provider.get_databases = broken
    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()
    assert cache.get_snapshot(config.id) is None


class ScopedProvider(FakeProvider):
    requires_database = False
    default_database = 'master'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.table_calls = []

    async def get_tables(self, database=None):
        self.ensure_connected()
        self.table_calls.append(database)
        return [TableInfo(name='orders', schema='dbo')]


@pytest.mark.asyncio
async def test_connect_scoped_provider_lists_tables_once(state_store, secret_store, make_config):
    factory = ProviderFactory(ScopedProvider)
    manager = ConnectionManager(state_store, secret_store, provider_factory=factory)
    config = manager.add(make_config('ms', DatabaseType.MSSQL, database='sales'))
    await manager.connect(config.id)
    provider = manager.get_provider(config.id)
    provider.databases = ['sales', 'hr', 'archive']

    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()

    assert [(c, d, t.name) for c, d, t in cache.get_tables()] == [('ms', 'sales', 'orders')]
    assert provider.table_calls == [None]


@pytest.mark.asyncio
async def test_connect_scoped_provider_without_database_uses_default(state_store, secret_store, make_config):
    factory = ProviderFactory(ScopedProvider)
    manager = ConnectionManager(state_store, secret_store, provider_factory=factory)
    config = manager.add(make_config('ms', DatabaseType.MSSQL))
    await manager.connect(config.id)

    cache = SchemaCache(manager, clock=Clock())
    await cache.update_schema_cache()
    assert [d.name for d in cache.get_snapshot(config.id).databases] == ['master']
