"""Decide whether a query's result set can be edited in place.

`classify` is purely textual: it accepts only a plain single-table SELECT and
pulls the table identity out of the FROM clause. `enrich` then asks the
provider for the table's columns and refuses tables without a primary key,
since edits are written back with primary-key predicates.
"""
import logging
import re
from dataclasses import replace
from typing import Optional

import sqlparse
from sqlparse import tokens as T

from db.providers.base import DatabaseProvider
from models.types import DatabaseType, EditableTableInfo

logger = logging.getLogger(__name__)

NOT_SELECT = "Only SELECT queries can be edited"
HAS_JOIN = "Queries with JOINs cannot be edited directly"
HAS_SUBQUERY = "Queries with subqueries cannot be edited directly"
HAS_UNION = "UNION queries cannot be edited directly"
HAS_GROUP_BY = "Aggregated queries cannot be edited"
NO_TABLE = "Could not identify table name"
NO_PRIMARY_KEY = "Table has no primary key - editing not supported"
NO_CONNECTION = "Connection not available"

_SELECT_RE = re.compile(r"\bselect\b", re.IGNORECASE)
_JOIN_RE = re.compile(r"\bjoin\b", re.IGNORECASE)
_UNION_RE = re.compile(r"\bunion\b", re.IGNORECASE)
_GROUP_BY_RE = re.compile(r"\bgroup\s+by\b", re.IGNORECASE)

_PART = r"(?:`[^`]+`|\"[^\"]+\"|\[[^\]]+\]|[\w$#@]+)"
_FROM_RE = re.compile(r"\bfrom\s+(%s(?:\s*\.\s*%s){0,2})" % (_PART, _PART), re.IGNORECASE)


def _scrub(query: str, dialect: Optional[DatabaseType] = None) -> str:
    """Blank out string literals and comments so keywords inside them are not seen.

    MySQL and MariaDB also read double-quoted text as a string literal.
    """
    double_quoted_strings = dialect in (DatabaseType.MYSQL, DatabaseType.MARIADB)
    out = []
    for statement in sqlparse.parse(query or ""):
        for token in statement.flatten():
            if token.ttype in T.Comment:
                out.append(" ")
            elif token.ttype in T.Literal.String.Single:
                out.append("''")
            elif double_quoted_strings and token.ttype in T.Literal.String.Symbol:
                out.append("''")
            else:
                out.append(token.value)
    return "".join(out)


def extract_table_parts(query: str) -> Optional[tuple]:
    """Return (database, schema, table) from the first FROM clause, or None."""
    m = _FROM_RE.search(query)
    if not m:
        return None
    parts = [p.strip().strip('`"[]') for p in m.group(1).split(".")]
    parts = [p for p in parts if p]
    if not parts:
        return None
    parts = parts[-3:]
    table = parts[-1]
    schema = parts[-2] if len(parts) >= 2 else None
    database = parts[-3] if len(parts) == 3 else None
    return database, schema, table


def classify(query: str, dialect: Optional[DatabaseType] = None) -> EditableTableInfo:
    """Check whether query is a plain single-table SELECT and identify its table."""
    text = _scrub(query, dialect).strip()

    if not text.lower().startswith("select"):
        return EditableTableInfo.rejected(NOT_SELECT)
    if _JOIN_RE.search(text):
        return EditableTableInfo.rejected(HAS_JOIN)
    if len(_SELECT_RE.findall(text)) > 1:
        return EditableTableInfo.rejected(HAS_SUBQUERY)
    if _UNION_RE.search(text):
        return EditableTableInfo.rejected(HAS_UNION)
    if _GROUP_BY_RE.search(text):
        return EditableTableInfo.rejected(HAS_GROUP_BY)

    found = extract_table_parts(text)
    if found is None:
        return EditableTableInfo.rejected(NO_TABLE)
    database, schema, table = found
    return EditableTableInfo(table_name=table, schema=schema, database=database, is_editable=True)


async def enrich(
    info: EditableTableInfo,
    provider: Optional[DatabaseProvider],
    database: Optional[str] = None,
) -> EditableTableInfo:
    """Attach columns and primary keys; reject tables without a primary key."""
    if not info.is_editable:
        return info
    if provider is None:
        return replace(info, is_editable=False, edit_error=NO_CONNECTION)

    db = info.database or database or None
    try:
        columns = await provider.get_columns(db, info.table_name, info.schema)
    except Exception as e:
        logger.error("Failed to get table metadata for %s: %s", info.table_name, e)
        return replace(info, is_editable=False, edit_error=f"Failed to get table info: {e}")

    primary_keys = [c.name for c in columns if c.is_primary_key]
    if not primary_keys:
        return replace(info, columns=columns, primary_keys=[], is_editable=False, edit_error=NO_PRIMARY_KEY)
    return replace(info, columns=columns, primary_keys=primary_keys, is_editable=True, edit_error=None)
