import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.splitter import split_statements
from models.types import DatabaseType


def test_plain_statements_in_order():
    script = "SELECT 1;\nSELECT 2 ;  UPDATE t SET a = 1;"
    assert split_statements(script, DatabaseType.MYSQL) == ['SELECT 1', 'SELECT 2', 'UPDATE t SET a = 1']


def test_trailing_fragment_without_semicolon():
    assert split_statements("SELECT 1; SELECT 2", 'postgresql') == ['SELECT 1', 'SELECT 2']


def test_empty_statements_are_dropped():
    assert split_statements(" ; ;;SELECT 1;; ", DatabaseType.MSSQL) == ['SELECT 1']
    assert split_statements("", DatabaseType.MYSQL) == []


@pytest.mark.parametrize('script, expected', [
    ("SELECT ';' AS x; SELECT 2;", ["SELECT ';' AS x", "SELECT 2"]),
    ('SELECT "a;b" FROM t; SELECT 2', ['SELECT "a;b" FROM t', 'SELECT 2']),
    ("SELECT 'it''s; fine'; SELECT 2", ["SELECT 'it''s; fine'", "SELECT 2"]),
    ("SELECT 1 -- not here; really\n; SELECT 2", ["SELECT 1 -- not here; really", "SELECT 2"]),
    ("SELECT /* a; b */ 1; SELECT 2", ["SELECT /* a; b */ 1", "SELECT 2"]),
])
def test_semicolons_inside_literals_and_comments(script, expected):
    assert split_statements(script, DatabaseType.MYSQL) == expected


def test_quotes_inside_comments_are_ignored():
    script = "SELECT 1 -- don't split\n; /* \"odd */ SELECT 2; SELECT '--x'; SELECT 3"
    assert split_statements(script, DatabaseType.MYSQL) == [
        "SELECT 1 -- don't split",
        '/* "odd */ SELECT 2',
        "SELECT '--x'",
        "SELECT 3",
    ]


def test_comment_markers_inside_quotes_are_ignored():
    script = "SELECT '/*'; SELECT 2; SELECT '*/'"
    assert split_statements(script, DatabaseType.MYSQL) == ["SELECT '/*'", "SELECT 2", "SELECT '*/'"]


def test_block_comment_close_is_kept():
    assert split_statements("/* header */SELECT 1", DatabaseType.MYSQL) == ["/* header */SELECT 1"]


def test_comment_only_fragments_are_dropped():
    assert split_statements("SELECT 1; -- trailing note", DatabaseType.MYSQL) == ["SELECT 1"]


def test_unterminated_quote_keeps_rest_as_one_statement():
    assert split_statements("SELECT 'abc; SELECT 2", DatabaseType.MYSQL) == ["SELECT 'abc; SELECT 2"]


def test_mongo_script_is_one_statement():
    script = "  db.a.find({x: ';'});\n db.b.find()  "
    assert split_statements(script, DatabaseType.MONGODB) == ["db.a.find({x: ';'});\n db.b.find()"]
    assert split_statements("   ", 'mongodb') == []
