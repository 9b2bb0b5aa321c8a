import asyncio
import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from conftest import ProviderFactory, SqliteProvider
from db.connection import ConnectionManager
from db.errors import ConfigurationError, NotConnectedError
from db.executor import QueryExecutor, QueryHistory, detect_directives
from models.types import ConnectionConfig, DatabaseType, QueryResult
from utils.storage import MemoryStateStore


@pytest.fixture
def sqlite_manager(tmp_path, state_store, secret_store):
    factory = ProviderFactory(cls=SqliteProvider)
    mgr = ConnectionManager(state_store, secret_store, provider_factory=factory)
    mgr.add(ConnectionConfig(id='lite', name='Scratch', type=DatabaseType.POSTGRESQL, database=str(tmp_path / 'x.db')))
    return mgr


@pytest.mark.asyncio
async def test_execute_create_insert_select(sqlite_manager, state_store):
    await sqlite_manager.connect('lite')
    executor = QueryExecutor(sqlite_manager, state_store)
    sql = """
    CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT);
    INSERT INTO t (name) VALUES ('alice'), ('bob');
    SELECT id, name FROM t ORDER BY id;
    """
    batch = await executor.execute_query('lite', sql)
    assert [r.result.success for r in batch.results] == [True, True, True]
    assert batch.results[1].result.row_count == 2
    select = batch.results[2].result
    assert select.rows == [{'id': 1, 'name': 'alice'}, {'id': 2, 'name': 'bob'}]
    assert [f.name for f in select.fields] == ['id', 'name']
    assert [f.type for f in select.fields] == ['number', 'string']
    await sqlite_manager.disconnect_all()


@pytest.mark.asyncio
async def test_batch_continues_past_failing_statement(sqlite_manager, state_store):
    await sqlite_manager.connect('lite')
    executor = QueryExecutor(sqlite_manager, state_store)
    batch = await executor.execute_query(
        'lite',
        "CREATE TABLE a (id INTEGER PRIMARY KEY); INSERT INTO missing_table VALUES (1); INSERT INTO a VALUES (1)",
    )
    assert len(batch.results) == 3
    failed = batch.results[1].result
    assert failed.error
    assert failed.row_count == 0
    assert failed.rows is None
    assert batch.results[2].result.success
    assert batch.results[2].result.row_count == 1
    assert batch.success_count == 2
    assert batch.error_count == 1
    assert 'failed' in batch.summary()

    history = executor.get_history('lite')
    assert [e.success for e in history] == [True, False, True]
    assert history[1].query == 'INSERT INTO missing_table VALUES (1)'
    await sqlite_manager.disconnect_all()


@pytest.mark.asyncio
async def test_single_statement_result_and_literal_percent(sqlite_manager):
    await sqlite_manager.connect('lite')
    executor = QueryExecutor(sqlite_manager)
    batch = await executor.execute_query('lite', "SELECT '100%' AS pct, ';' AS semi;")
    assert batch.result.rows == [{'pct': '100%', 'semi': ';'}]
    await sqlite_manager.disconnect_all()


@pytest.mark.asyncio
async def test_execute_requires_live_connection(sqlite_manager):
    executor = QueryExecutor(sqlite_manager)
    with pytest.raises(NotConnectedError):
        await executor.execute_query('lite', 'SELECT 1')
    with pytest.raises(ConfigurationError):
        await executor.execute_query('other', 'SELECT 1')


@pytest.fixture
def fake_manager(state_store, secret_store, provider_factory):
    return ConnectionManager(state_store, secret_store, provider_factory=provider_factory)


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_statements(fake_manager, make_config):
    config = fake_manager.add(make_config('fake'))
    await fake_manager.connect(config.id)
    provider = fake_manager.get_provider(config.id)
    cancel = asyncio.Event()

    original = provider.execute_query

    async def execute_and_cancel(query, database=None):
        result = await original(query, database)
        cancel.set()
        return result

    provider.execute_query = execute_and_cancel
    executor = QueryExecutor(fake_manager)
    batch = await executor.execute_query(config.id, 'SELECT 1; SELECT 2; SELECT 3', cancel_event=cancel)
    assert batch.cancelled
    assert provider.executed == ['SELECT 1']
    assert len(batch.results) == 1


@pytest.mark.asyncio
async def test_provider_exception_mid_batch_becomes_error_result(fake_manager, make_config):
    config = fake_manager.add(make_config('fake'))
    await fake_manager.connect(config.id)
    provider = fake_manager.get_provider(config.id)
    calls = []

    async def flaky(query, database=None):
        calls.append(query)
        if len(calls) == 2:
            raise ConnectionResetError('gone')
        return QueryResult(rows=None, row_count=0)

    provider.execute_query = flaky
    batch = await QueryExecutor(fake_manager).execute_query(config.id, 'SELECT 1; SELECT 2; SELECT 3')
    assert [r.result.error for r in batch.results] == [None, 'gone', None]


@pytest.mark.asyncio
async def test_mongo_scripts_are_not_split(fake_manager, make_config):
    config = fake_manager.add(make_config('docs', DatabaseType.MONGODB))
    await fake_manager.connect(config.id)
    script = '  db.users.find({name: "a;b"});\n'
    batch = await QueryExecutor(fake_manager).execute_query(config.id, script, 'app')
    assert fake_manager.get_provider(config.id).executed == ['db.users.find({name: "a;b"});']
    assert len(batch.results) == 1


def test_detect_directives():
    script = "-- Connection: Prod DB  \n--Database: sales\nSELECT 1;\n-- Connection: ignored"
    assert detect_directives(script) == ('Prod DB', 'sales')
    assert detect_directives("SELECT 1;\n-- Connection: late") == (None, None)
    assert detect_directives("\n-- just a note\n-- database: hr\nSELECT 1") == (None, 'hr')


@pytest.mark.asyncio
async def test_resolve_target(fake_manager, make_config):
    prod = fake_manager.add(make_config('Prod'))
    dev = fake_manager.add(make_config('Dev'))
    executor = QueryExecutor(fake_manager)

    with pytest.raises(ConfigurationError):
        executor.resolve_target('SELECT 1')

    await fake_manager.connect(prod.id)
    config, database = executor.resolve_target('-- Database: hr\nSELECT 1', database='ambient')
    assert config is prod
    assert database == 'hr'

    await fake_manager.connect(dev.id)
    with pytest.raises(ConfigurationError):
        executor.resolve_target('SELECT 1')

    config, _ = executor.resolve_target('-- connection: dev\nSELECT 1', connection_id=prod.id)
    assert config is dev
    # unmatched directive falls back to the explicit choice
    config, database = executor.resolve_target('-- Connection: staging\nSELECT 1', connection_id=prod.id, database='x')
    assert config is prod
    assert database == 'x'


@pytest.mark.asyncio
async def test_execute_script_uses_directive(fake_manager, make_config):
    fake_manager.add(make_config('Prod'))
    dev = fake_manager.add(make_config('Dev'))
    for config in fake_manager.get_all_connections():
        await fake_manager.connect(config.id)
    batch = await QueryExecutor(fake_manager).execute_script('-- Connection: Dev\nSELECT 1')
    assert batch.results[0].query == '-- Connection: Dev\nSELECT 1'
    assert fake_manager.get_provider(dev.id).executed == ['-- Connection: Dev\nSELECT 1']


def test_history_is_capped_and_persisted():
    store = MemoryStateStore()
    history = QueryHistory(store, max_size=3)
    for i in range(5):
        history.add('c1', f'SELECT {i}', QueryResult(rows=[], row_count=0, execution_time=1.5))
    assert [e.query for e in history.entries()] == ['SELECT 2', 'SELECT 3', 'SELECT 4']
    assert len(store.get('queryHistory')) == 3

    reloaded = QueryHistory(store, max_size=3)
    assert [e.query for e in reloaded.entries()] == ['SELECT 2', 'SELECT 3', 'SELECT 4']
    assert reloaded.entries()[0].execution_time == 1.5

    reloaded.clear()
    assert store.get('queryHistory') == []


def test_history_filters_by_connection():
    history = QueryHistory(max_size=10)
    history.add('a', 'SELECT 1', QueryResult(rows=[], row_count=0))
    history.add('b', 'SELECT 2', QueryResult.failure('boom'))
    assert [e.query for e in history.entries('b')] == ['SELECT 2']
    assert history.entries('b')[0].error == 'boom'
    assert len(history) == 2
