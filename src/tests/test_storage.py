import json
import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from utils.settings import DEFAULTS, load_settings, save_settings
from utils.storage import JsonSecretStore, JsonStateStore


def test_state_store_round_trip(tmp_path):
    path = tmp_path / 'state.json'
    store = JsonStateStore(path)
    assert store.get('connections', []) == []
    store.update('connections', [{'id': 'a'}])
    assert JsonStateStore(path).get('connections') == [{'id': 'a'}]


def test_state_store_reads_legacy_encoding(tmp_path):
    path = tmp_path / 'state.json'
    path.write_bytes(json.dumps({'name': '数据库'}, ensure_ascii=False).encode('cp936'))
    assert JsonStateStore(path).get('name') == '数据库'


def test_unreadable_state_is_backed_up(tmp_path):
    path = tmp_path / 'state.json'
    path.write_text('{not json', encoding='utf-8')
    store = JsonStateStore(path)
    assert store.get('connections') is None
    assert (tmp_path / 'state.json.bak').read_text(encoding='utf-8') == '{not json'


def test_state_store_update_raises_and_keeps_memory_state(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('file, not a directory', encoding='utf-8')
    store = JsonStateStore(blocker / 'state.json')
    with pytest.raises(OSError):
        store.update('connections', [1])
    assert store.get('connections') is None


def test_secret_store_obfuscates_on_disk(tmp_path):
    path = tmp_path / 'secrets.json'
    store = JsonSecretStore(path)
    store.store('password.c1', 'hunter2')
    assert 'hunter2' not in path.read_text(encoding='utf-8')
    again = JsonSecretStore(path)
    assert again.get('password.c1') == 'hunter2'
    again.delete('password.c1')
    again.delete('password.c1')
    assert JsonSecretStore(path).get('password.c1') is None


def test_settings_defaults_file_and_env(tmp_path, monkeypatch):
    path = tmp_path / 'settings.json'
    assert load_settings(path) == DEFAULTS

    path.write_text(json.dumps({'max_query_history_size': '20', 'schema_cache_ttl_seconds': -5}), encoding='utf-8')
    monkeypatch.setenv('OPENDB_LOG_LEVEL', 'DEBUG')
    settings = load_settings(path)
    assert settings['max_query_history_size'] == 20
    assert settings['schema_cache_ttl_seconds'] == 300
    assert settings['log_level'] == 'DEBUG'

    monkeypatch.setenv('OPENDB_MAX_QUERY_HISTORY_SIZE', '7')
    assert load_settings(path)['max_query_history_size'] == 7


def test_malformed_settings_fall_back_to_defaults(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text('[1, 2', encoding='utf-8')
    assert load_settings(path) == DEFAULTS


def test_save_settings_round_trip(tmp_path):
    path = tmp_path / 'nested' / 'settings.json'
    save_settings({'schema_cache_max_tables': 10}, path)
    assert load_settings(path)['schema_cache_max_tables'] == 10
