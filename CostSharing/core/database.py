"""
Local SQLite store for groups, their content and sync bookkeeping.

Every record type of :mod:`CostSharing.core.models` lives in its own table whose columns mirror the
record's fields. Connections are opened per operation so the API can be used from any thread.
The schema is verified on start-up and tables that do not match the expected columns are recreated.
"""

import enum
import logging
import pathlib
import sqlite3
import time
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from PySide6 import QtCore

from .models import (
    Record, Group, GroupMember, Expense, ExpenseSplit, Settlement, SyncMetadata, PendingChange, GroupSnapshot
)
from ..settings import lib
from ..status import status

TYPE_MAPPING = {
    'int': 'INTEGER',
    'string': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Groups = 'groups'
    Members = 'members'
    Expenses = 'expenses'
    ExpenseSplits = 'expense_splits'
    Settlements = 'settlements'
    Metadata = 'sync_metadata'
    PendingChanges = 'pending_changes'


RECORD_TYPES: Dict[Table, Type[Record]] = {
    Table.Groups: Group,
    Table.Members: GroupMember,
    Table.Expenses: Expense,
    Table.ExpenseSplits: ExpenseSplit,
    Table.Settlements: Settlement,
    Table.Metadata: SyncMetadata,
    Table.PendingChanges: PendingChange,
}


def get_schema(record_type: Type[Record]) -> Dict[str, str]:
    """Return the column definitions of a record type's table.

    Args:
        record_type: A :class:`~CostSharing.core.models.Record` subclass.

    Returns:
        Dict[str, str]: Column name to SQL type definition, key column first.
    """
    schema: Dict[str, str] = {}
    for name in record_type.field_names():
        sql_type = TYPE_MAPPING['int'] if name in record_type.int_fields else TYPE_MAPPING['string']
        if name == record_type.key:
            sql_type = f'{sql_type} PRIMARY KEY'
        schema[name] = sql_type
    return schema


def _encode_filter(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return str(value.value)
    return value


class DatabaseAPI(QtCore.QObject):
    """Database API for local group data. Handles schema creation, validation, and data access."""

    def __init__(self, db_path: Optional[Union[str, pathlib.Path]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._db_path: Optional[pathlib.Path] = pathlib.Path(db_path) if db_path else None
        self._initialize_schema_if_needed()

    @property
    def db_path(self) -> pathlib.Path:
        """Path of the database file, defaults to the one in the settings directory."""
        return self._db_path or lib.settings.db_path

    def _initialize_schema_if_needed(self, _retry: bool = True) -> None:
        """
        Ensures the database file and every table exist with the expected columns.
        Missing tables are created, tables with unexpected columns are dropped and recreated.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            for table, record_type in RECORD_TYPES.items():
                schema = get_schema(record_type)
                if self._table_exists_in_conn(conn, table.value):
                    cursor = conn.execute(f'PRAGMA table_info({table.value})')
                    current_columns = {row[1] for row in cursor.fetchall()}
                    if current_columns == set(schema.keys()):
                        continue
                    logging.warning(
                        f"Table '{table.value}' schema is invalid. "
                        f"Difference: {current_columns.symmetric_difference(schema.keys())}. Table will be recreated."
                    )
                    conn.execute(f'DROP TABLE IF EXISTS {table.value}')

                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in schema.items())
                conn.execute(f'CREATE TABLE {table.value} ({cols_sql})')
                logging.info(f"Created table '{table.value}'.")
            conn.commit()
        except sqlite3.Error as e:
            logging.error(f'SQLite error during schema initialization: {e}. Attempting recovery.', exc_info=True)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None
            if not _retry:
                raise status.CacheInvalidException(f'Unrecoverable DB schema error: {e}') from e
            self.remove_database()
            self._initialize_schema_if_needed(_retry=False)
            logging.info('Database schema forcefully recreated after an error and delete.')
        finally:
            if conn:
                conn.close()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the local database.

        Returns:
            sqlite3.Connection: Database connection object with :class:`sqlite3.Row` rows.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 100000)
        return conn

    @classmethod
    def _table_exists_in_conn(cls, conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def table_exists(self, table_name: str) -> bool:
        """Check if a table exists in the database (opens a new connection)."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            return self._table_exists_in_conn(conn, table_name)
        finally:
            if conn:
                conn.close()

    def remove_database(self) -> None:
        """Delete the local database file, retrying on failure.

        Raises:
            status.CacheInvalidException: If unable to remove the database file after retries.
        """
        db_file = self.db_path
        if not db_file.exists():
            logging.debug('No database found to delete.')
            return

        max_attempts = 5
        attempt = 0
        wait_seconds = 1.0

        while attempt < max_attempts:
            attempt += 1
            try:
                db_file.unlink()
                logging.info(f'Database removed: {db_file}')
                return
            except OSError as ex:
                logging.error(f'Error removing DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    logging.debug(f'Retrying in {wait_seconds} seconds...')
                    time.sleep(wait_seconds)
                    wait_seconds *= 1.5
                else:
                    raise status.CacheInvalidException(
                        f'Failed to remove DB {db_file} after {max_attempts} attempts: {ex}'
                    ) from ex

    @QtCore.Slot()
    def reset(self) -> None:
        """Delete every local record by recreating the database file."""
        logging.debug('Resetting local database.')
        self.remove_database()
        self._initialize_schema_if_needed()

    @staticmethod
    def _insert_in_conn(conn: sqlite3.Connection, records: Iterable[Record]) -> int:
        count = 0
        for record in records:
            row = record.to_row()
            columns = ','.join(f'"{k}"' for k in row)
            placeholders = ','.join('?' * len(row))
            conn.execute(
                f'INSERT OR REPLACE INTO "{record.table}" ({columns}) VALUES ({placeholders})',
                tuple(row.values())
            )
            count += 1
        return count

    def save(self, record: Record) -> None:
        """Insert or replace a single record."""
        self.save_many([record])

    def save_many(self, records: Iterable[Record]) -> None:
        """Insert or replace records in a single transaction.

        Raises:
            sqlite3.Error: If the write fails. Nothing is written in that case.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            count = self._insert_in_conn(conn, records)
            conn.commit()
            logging.debug(f'Saved {count} record(s).')
        except sqlite3.Error as e:
            logging.error(f'Failed to save records: {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get(self, record_type: Type[Record], key: str) -> Optional[Record]:
        """Retrieve a record by its key.

        Args:
            record_type: Record class to look up.
            key: Value of the record's key field (``id``, or ``group_id`` for sync metadata).

        Returns:
            Optional[Record]: The record, or None if not found.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(
                f'SELECT * FROM "{record_type.table}" WHERE "{record_type.key}" = ?', (key,)
            ).fetchone()
            if not row:
                return None
            return record_type.from_row(dict(row))
        finally:
            if conn:
                conn.close()

    def get_all(self, record_type: Type[Record], order_by: Optional[str] = None, **filters: Any) -> List[Record]:
        """Retrieve all records of a type matching equality filters.

        Args:
            record_type: Record class to query.
            order_by: Optional field name to sort by, insertion order otherwise.
            **filters: Field name / value pairs that must match.

        Returns:
            List[Record]: Matching records.

        Raises:
            ValueError: If a filter or order_by names an unknown field.
        """
        fields = record_type.field_names()
        unknown = [k for k in list(filters) + ([order_by] if order_by else []) if k not in fields]
        if unknown:
            raise ValueError(f'Unknown field(s) for {record_type.__name__}: {unknown}')

        sql = f'SELECT * FROM "{record_type.table}"'
        if filters:
            sql += ' WHERE ' + ' AND '.join(f'"{k}" = ?' for k in filters)
        sql += f' ORDER BY "{order_by}", rowid' if order_by else ' ORDER BY rowid'

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            rows = conn.execute(sql, tuple(_encode_filter(v) for v in filters.values())).fetchall()
            return [record_type.from_row(dict(r)) for r in rows]
        finally:
            if conn:
                conn.close()

    def delete(self, record_type: Type[Record], key: str) -> bool:
        """Delete a record by key.

        Returns:
            bool: True if a row was removed.
        """
        return self.delete_where(record_type, **{record_type.key: key}) > 0

    def delete_where(self, record_type: Type[Record], **filters: Any) -> int:
        """Delete every record of a type matching equality filters.

        Returns:
            int: Number of removed rows.
        """
        if not filters:
            raise ValueError('delete_where needs at least one filter.')
        fields = record_type.field_names()
        if any(k not in fields for k in filters):
            raise ValueError(f'Unknown field(s) for {record_type.__name__}: {list(filters)}')

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            cursor = conn.execute(
                f'DELETE FROM "{record_type.table}" WHERE ' + ' AND '.join(f'"{k}" = ?' for k in filters),
                tuple(_encode_filter(v) for v in filters.values())
            )
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            logging.error(f'Failed to delete from "{record_type.table}": {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def save_expense(self, expense: Expense, splits: List[ExpenseSplit]) -> None:
        """Save an expense and replace its splits, in one transaction."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(f'DELETE FROM "{Table.ExpenseSplits.value}" WHERE expense_id = ?', (expense.id,))
            self._insert_in_conn(conn, [expense])
            self._insert_in_conn(conn, splits)
            conn.commit()
        except sqlite3.Error as e:
            logging.error(f'Failed to save expense "{expense.id}": {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense and its splits, in one transaction.

        Returns:
            bool: True if the expense existed.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(f'DELETE FROM "{Table.ExpenseSplits.value}" WHERE expense_id = ?', (expense_id,))
            cursor = conn.execute(f'DELETE FROM "{Table.Expenses.value}" WHERE id = ?', (expense_id,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            logging.error(f'Failed to delete expense "{expense_id}": {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get_snapshot(self, group_id: str) -> GroupSnapshot:
        """Collect the local content of a group.

        The returned snapshot carries no version; the caller stamps it before upload.

        Raises:
            status.GroupNotFoundException: If the group is not in the local store.
        """
        group = self.get(Group, group_id)
        if group is None:
            raise status.GroupNotFoundException(group_id)

        expenses = self.get_all(Expense, group_id=group_id)
        expense_ids = {e.id for e in expenses}
        splits = [s for s in self.get_all(ExpenseSplit) if s.expense_id in expense_ids]

        return GroupSnapshot(
            group=group,
            members=self.get_all(GroupMember, group_id=group_id),
            expenses=expenses,
            expense_splits=splits,
            settlements=self.get_all(Settlement, group_id=group_id),
        )

    def _delete_group_content_in_conn(self, conn: sqlite3.Connection, group_id: str) -> None:
        conn.execute(
            f'DELETE FROM "{Table.ExpenseSplits.value}" WHERE expense_id IN '
            f'(SELECT id FROM "{Table.Expenses.value}" WHERE group_id = ?)',
            (group_id,)
        )
        for table in (Table.Expenses, Table.Members, Table.Settlements):
            conn.execute(f'DELETE FROM "{table.value}" WHERE group_id = ?', (group_id,))

    def replace_group(self, snapshot: GroupSnapshot) -> None:
        """Overwrite the local content of a group with a snapshot, in one transaction."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            self._delete_group_content_in_conn(conn, snapshot.group_id)
            self._insert_in_conn(conn, [snapshot.group])
            self._insert_in_conn(conn, snapshot.members)
            self._insert_in_conn(conn, snapshot.expenses)
            self._insert_in_conn(conn, snapshot.expense_splits)
            self._insert_in_conn(conn, snapshot.settlements)
            conn.commit()
            logging.info(
                f'Replaced group "{snapshot.group_id}": {len(snapshot.members)} member(s), '
                f'{len(snapshot.expenses)} expense(s), {len(snapshot.settlements)} settlement(s).'
            )
        except sqlite3.Error as e:
            logging.error(f'Failed to replace group "{snapshot.group_id}": {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def delete_group(self, group_id: str) -> None:
        """Remove a group, its content and its sync bookkeeping."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            self._delete_group_content_in_conn(conn, group_id)
            conn.execute(f'DELETE FROM "{Table.Groups.value}" WHERE id = ?', (group_id,))
            conn.execute(f'DELETE FROM "{Table.Metadata.value}" WHERE group_id = ?', (group_id,))
            conn.execute(f'DELETE FROM "{Table.PendingChanges.value}" WHERE group_id = ?', (group_id,))
            conn.commit()
        except sqlite3.Error as e:
            logging.error(f'Failed to delete group "{group_id}": {e}', exc_info=True)
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()
