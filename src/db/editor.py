"""Turn edits made on a result grid into DELETE/UPDATE/INSERT statements.

Statements are rendered as literal SQL in the target dialect: identifiers are
quoted with the dialect's delimiters and values are formatted by
`format_value`. Rows are identified by their primary-key values.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from db import metadata
from db.connection import ConnectionManager
from models.pending_changes import PendingChanges, data_columns
from models.types import ConnectionState, DatabaseType, EditableTableInfo

logger = logging.getLogger(__name__)

NO_CHANGES = "No changes to save"


@dataclass
class SaveResult:
    success: bool
    message: str
    affected_rows: int = 0


def quote_identifier(name: str, dialect: Optional[DatabaseType] = None) -> str:
    if dialect in (DatabaseType.MYSQL, DatabaseType.MARIADB):
        return "`" + name.replace("`", "``") + "`"
    if dialect == DatabaseType.MSSQL:
        return "[" + name.replace("]", "]]") + "]"
    return '"' + name.replace('"', '""') + '"'


def format_value(value: Any, dialect: Optional[DatabaseType] = None) -> str:
    """Render value as a SQL literal.

    Only single quotes are escaped (by doubling). Backslashes pass through
    untouched, which MySQL in its default mode treats as an escape character.
    """
    if value is None:
        return "NULL"
    # bool first: it is an int subclass
    if isinstance(value, bool):
        if dialect == DatabaseType.POSTGRESQL:
            return "TRUE" if value else "FALSE"
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        if (isinstance(value, float) and not math.isfinite(value)) or (isinstance(value, Decimal) and not value.is_finite()):
            raise ValueError(f"Cannot write non-finite number {value} as a SQL literal")
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return f"'{value.isoformat()}'"
    return "'" + str(value).replace("'", "''") + "'"


def full_table_name(info: EditableTableInfo, dialect: Optional[DatabaseType] = None) -> str:
    parts = [p for p in (info.database, info.schema) if p]
    parts.append(info.table_name)
    return ".".join(quote_identifier(p, dialect) for p in parts)


class DataEditor:
    """Pending edits for one result set of one connection."""

    def __init__(self, manager: ConnectionManager, connection_id: str, dialect: Optional[DatabaseType] = None):
        self.manager = manager
        self.connection_id = connection_id
        self._dialect = DatabaseType.parse(dialect) if dialect else None
        self.changes = PendingChanges()

    @property
    def dialect(self) -> DatabaseType:
        if self._dialect is not None:
            return self._dialect
        provider = self.manager.get_provider(self.connection_id)
        if provider is not None:
            return provider.get_type()
        config = self.manager.get_connection(self.connection_id)
        return config.type if config else DatabaseType.MYSQL

    def parse_query_for_table(self, query: str) -> EditableTableInfo:
        return metadata.classify(query, self.dialect)

    async def get_table_metadata(self, info: EditableTableInfo, database: Optional[str] = None) -> EditableTableInfo:
        return await metadata.enrich(info, self.manager.get_provider(self.connection_id), database)

    # --- change tracking ---

    def add_cell_change(self, row_index: int, column: str, old_value: Any, new_value: Any) -> None:
        self.changes.record_update(row_index, column, old_value, new_value)

    def add_new_row(self, temp_id: str, data: Dict[str, Any]) -> None:
        self.changes.record_insert(temp_id, data)

    def mark_row_for_deletion(self, row_index: int, row_data: Dict[str, Any]) -> None:
        self.changes.record_delete(row_index, row_data)

    def get_pending_changes(self) -> PendingChanges:
        return self.changes

    def has_changes(self) -> bool:
        return self.changes.has_changes()

    def clear_changes(self) -> None:
        self.changes.clear()

    # --- SQL generation ---

    def _where_clause(self, info: EditableTableInfo, row: Dict[str, Any], dialect: DatabaseType) -> str:
        if not info.primary_keys:
            raise ValueError(metadata.NO_PRIMARY_KEY)
        predicates = []
        for pk in info.primary_keys:
            value = row.get(pk)
            if value is None:
                predicates.append(f"{quote_identifier(pk, dialect)} IS NULL")
            else:
                predicates.append(f"{quote_identifier(pk, dialect)} = {format_value(value, dialect)}")
        return " AND ".join(predicates)

    def generate_sql_statements(self, info: EditableTableInfo, rows: List[Dict[str, Any]]) -> List[str]:
        """Compile pending changes: all deletes, then all updates, then all inserts.

        rows is the result set as it was before editing; it supplies the
        primary-key values that identify each changed row.
        """
        dialect = self.dialect
        table = full_table_name(info, dialect)
        statements = []

        for deleted in self.changes.deletes:
            row = rows[deleted.row_index] if 0 <= deleted.row_index < len(rows) else deleted.data
            statements.append(f"DELETE FROM {table} WHERE {self._where_clause(info, row, dialect)};")

        for row_index, cell_changes in self.changes.updates_by_row().items():
            if not 0 <= row_index < len(rows):
                raise ValueError(f"Row {row_index} is not part of the result set")
            row = dict(rows[row_index])
            # an edited key column is still located by its old value
            for change in cell_changes:
                if change.column in info.primary_keys:
                    row[change.column] = change.old_value
            assignments = ", ".join(
                f"{quote_identifier(c.column, dialect)} = {format_value(c.new_value, dialect)}"
                for c in cell_changes
            )
            statements.append(f"UPDATE {table} SET {assignments} WHERE {self._where_clause(info, row, dialect)};")

        for new_row in self.changes.inserts:
            columns = data_columns(new_row.data)
            if not columns:
                if dialect in (DatabaseType.MYSQL, DatabaseType.MARIADB):
                    statements.append(f"INSERT INTO {table} () VALUES ();")
                else:
                    statements.append(f"INSERT INTO {table} DEFAULT VALUES;")
                continue
            names = ", ".join(quote_identifier(c, dialect) for c in columns)
            values = ", ".join(format_value(new_row.data[c], dialect) for c in columns)
            statements.append(f"INSERT INTO {table} ({names}) VALUES ({values});")

        return statements

    async def execute_changes(
        self,
        info: EditableTableInfo,
        rows: List[Dict[str, Any]],
        database: Optional[str] = None,
    ) -> SaveResult:
        """Run the compiled statements one by one.

        Statements are not wrapped in a transaction. On any failure the
        pending changes are kept so the save can be retried.
        """
        try:
            statements = self.generate_sql_statements(info, rows)
        except ValueError as e:
            return SaveResult(False, str(e), 0)
        if not statements:
            return SaveResult(True, NO_CHANGES, 0)

        provider = self.manager.get_provider(self.connection_id)
        if provider is None or provider.get_state() != ConnectionState.CONNECTED:
            return SaveResult(False, metadata.NO_CONNECTION, 0)

        affected = 0
        errors = []
        for sql in statements:
            logger.info("Executing: %s", sql)
            try:
                result = await provider.execute_query(sql, database)
            except Exception as e:
                errors.append(f"{sql}\nError: {e}")
                continue
            if result.error:
                errors.append(f"{sql}\nError: {result.error}")
            else:
                affected += result.row_count

        if errors:
            logger.warning("%d of %d statements failed while saving changes", len(errors), len(statements))
            return SaveResult(False, "Some changes failed:\n" + "\n\n".join(errors), affected)

        self.clear_changes()
        return SaveResult(True, f"Successfully saved {affected} changes", affected)
