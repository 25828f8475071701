"""
Local SQLite store for cars, expenses, reminders, tags and planned expenses.

:class:`DatabaseAPI` owns the database file: schema creation and verification,
the metadata table holding the last sync stamp, and connections. The
:class:`LocalTable` subclasses are the typed per-entity accessors used by the sync
engine and by the application. Reads can be observed through :class:`LiveQuery`,
which re-reads its table whenever it is written to.
"""

import dataclasses
import datetime
import enum
import logging
import pathlib
import sqlite3
import time
from typing import Any, Dict, List, Optional

import pandas as pd
from PySide6 import QtCore

from . import models
from ..status import status

TYPE_MAPPING = {
    'int': 'INTEGER',
    'float': 'REAL',
    'string': 'TEXT',
    'bool': 'INTEGER',
}

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'last_sync': 'TEXT',
    'state': 'TEXT',
    'user_id': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Cars = 'cars'
    Expenses = 'expenses'
    Reminders = 'maintenance_reminders'
    Tags = 'expense_tags'
    TagLinks = 'expense_tag_links'
    PlannedExpenses = 'planned_expenses'


class StoreState(enum.StrEnum):
    """Enum for the state recorded by the last sync run."""
    Uninitialized = 'store was never synced'
    Synced = 'store is synced'
    Error = 'last sync failed'


TABLE_ENTITIES: Dict[Table, Any] = {
    Table.Cars: models.Car,
    Table.Expenses: models.Expense,
    Table.Reminders: models.MaintenanceReminder,
    Table.Tags: models.ExpenseTag,
    Table.TagLinks: models.ExpenseTagLink,
    Table.PlannedExpenses: models.PlannedExpense,
}

# Table constraints appended after the column definitions
TABLE_CONSTRAINTS: Dict[Table, List[str]] = {
    Table.Cars: ['PRIMARY KEY ("id")'],
    Table.Expenses: [
        'PRIMARY KEY ("id")',
        'FOREIGN KEY ("car_id") REFERENCES cars ("id") ON DELETE CASCADE ON UPDATE CASCADE',
    ],
    Table.Reminders: [
        'PRIMARY KEY ("id")',
        'FOREIGN KEY ("car_id") REFERENCES cars ("id") ON DELETE CASCADE ON UPDATE CASCADE',
    ],
    Table.Tags: ['PRIMARY KEY ("id")'],
    Table.TagLinks: [
        'PRIMARY KEY ("expense_id", "tag_id")',
        'FOREIGN KEY ("expense_id") REFERENCES expenses ("id") ON DELETE CASCADE ON UPDATE CASCADE',
        'FOREIGN KEY ("tag_id") REFERENCES expense_tags ("id") ON DELETE CASCADE ON UPDATE CASCADE',
    ],
    Table.PlannedExpenses: [
        'PRIMARY KEY ("id")',
        'FOREIGN KEY ("car_id") REFERENCES cars ("id") ON DELETE CASCADE ON UPDATE CASCADE',
    ],
}

TABLE_INDEXES: Dict[Table, List[str]] = {
    Table.Expenses: ['car_id', 'date'],
    Table.Reminders: ['car_id'],
    Table.Tags: ['user_id'],
    Table.TagLinks: ['tag_id'],
    Table.PlannedExpenses: ['car_id'],
}


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def get_sql_type(column_type: Any) -> str:
    """Get the SQLite column type for an entity column type. Enums are stored as TEXT."""
    if isinstance(column_type, str):
        return TYPE_MAPPING.get(column_type, 'TEXT')
    return 'TEXT'


def table_definition(table: Table) -> str:
    """Build the CREATE TABLE statement for an entity table."""
    entity_cls = TABLE_ENTITIES[table]
    cols = [
        f'"{name}" {get_sql_type(column_type)}' + ('' if name in entity_cls.OPTIONAL else ' NOT NULL')
        for name, column_type in entity_cls.SCHEMA.items()
    ]
    return f'CREATE TABLE IF NOT EXISTS {table.value} ({", ".join(cols + TABLE_CONSTRAINTS[table])})'


class DatabaseAPI(QtCore.QObject):
    """Owns the SQLite file. Handles schema creation, validation and connections.

    Signals:
        tableChanged (str): Emitted with the table name after every committed write.

    Args:
        db_path: Path of the database file. Defaults to the configured path.
    """
    tableChanged = QtCore.Signal(str)

    def __init__(self, db_path: Optional[str] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        if db_path is None:
            from ..settings import lib
            db_path = lib.settings.db_path
        self.db_path = pathlib.Path(db_path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the database with foreign keys enabled."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the metatable and every entity table exist.

        Tables missing columns (written by an older version) get the columns added.

        Raises:
            status.LocalStoreException: If the schema cannot be created.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()

            if not self._table_exists_in_conn(conn, Table.Meta.value):
                logging.info(f"Creating metadata table '{Table.Meta.value}'.")
                meta_cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in META_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Meta.value} ({meta_cols_sql})")
                conn.execute(
                    f"INSERT INTO {Table.Meta.value} (meta_id, state, last_sync, user_id) VALUES (1, ?, NULL, NULL)",
                    (StoreState.Uninitialized.name,)
                )

            for table, entity_cls in TABLE_ENTITIES.items():
                conn.execute(table_definition(table))
                for column in TABLE_INDEXES.get(table, []):
                    conn.execute(
                        f'CREATE INDEX IF NOT EXISTS idx_{table.value}_{column} ON {table.value} ("{column}")'
                    )

                current_columns = {row[1] for row in conn.execute(f"PRAGMA table_info({table.value})")}
                for name, column_type in entity_cls.SCHEMA.items():
                    if name in current_columns:
                        continue
                    logging.warning(f"Table '{table.value}' is missing column '{name}', adding it.")
                    conn.execute(f'ALTER TABLE {table.value} ADD COLUMN "{name}" {get_sql_type(column_type)}')

            conn.commit()
            logging.debug(f'Database schema verified at {self.db_path}.')
        except sqlite3.Error as e:
            logging.error(f"SQLite error during schema initialization: {e}", exc_info=True)
            raise status.LocalStoreException(f"Could not initialize the database schema: {e}") from e
        finally:
            if conn:
                conn.close()

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def table_exists(self, table_name: str) -> bool:
        """Check if a table exists in the database (opens a new connection)."""
        conn = self.connection()
        try:
            return self._table_exists_in_conn(conn, table_name)
        finally:
            conn.close()

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Run a read query and return all rows.

        Raises:
            status.LocalStoreException: On any SQLite error.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise status.LocalStoreException(f'Read failed: {e}') from e
        finally:
            if conn:
                conn.close()

    def write(self, sql: str, params: tuple = (), tables: tuple = ()) -> int:
        """Run a write statement in its own transaction.

        Args:
            sql: The statement.
            params: Statement parameters.
            tables: Tables affected by the write; each is announced through ``tableChanged``.

        Returns:
            int: The number of rows changed.

        Raises:
            status.LocalStoreException: On any SQLite error. The transaction is rolled back.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            cursor = conn.execute(sql, params)
            conn.commit()
            rowcount = cursor.rowcount
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            raise status.LocalStoreException(f'Write failed: {e}') from e
        finally:
            if conn:
                conn.close()

        for table in tables:
            self.tableChanged.emit(str(table))
        return rowcount

    def delete(self) -> None:
        """Delete the database file, retrying on failure.

        Raises:
            status.LocalStoreException: If unable to remove the database file after retries.
        """
        if not self.db_path.exists():
            logging.debug('No database found to delete.')
            return

        max_attempts = 5
        wait_seconds = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                self.db_path.unlink()
                logging.info(f'Database removed: {self.db_path}')
                break
            except OSError as ex:
                logging.error(f'Error removing database (attempt {attempt}/{max_attempts}): {ex}')
                if attempt == max_attempts:
                    raise status.LocalStoreException(
                        f'Failed to remove database {self.db_path} after {max_attempts} attempts: {ex}'
                    ) from ex
                logging.debug(f'Retrying in {wait_seconds} seconds...')
                time.sleep(wait_seconds)
                wait_seconds *= 1.5

        for table in TABLE_ENTITIES:
            self.tableChanged.emit(table.value)

    def stamp(self, user_id: str, state: StoreState = StoreState.Synced) -> None:
        """Record the time, user and outcome of a sync run in the metadata table."""
        self.write(
            f"UPDATE {Table.Meta.value} SET last_sync=?, state=?, user_id=? WHERE meta_id=1",
            (now_str(), state.name, user_id),
        )

    def get_stamp(self) -> Optional[datetime.datetime]:
        """Retrieve the last synchronization timestamp, or None if never synced."""
        rows = self.query(f"SELECT last_sync FROM {Table.Meta.value} WHERE meta_id=1")
        if rows and rows[0][0]:
            try:
                return datetime.datetime.fromisoformat(rows[0][0])
            except ValueError:
                logging.warning(f'Invalid last sync date format in DB: {rows[0][0]}.')
        return None

    def get_state(self) -> StoreState:
        """Retrieve the state recorded by the last sync run."""
        rows = self.query(f"SELECT state FROM {Table.Meta.value} WHERE meta_id=1")
        if rows and rows[0][0]:
            try:
                return StoreState[rows[0][0]]
            except KeyError:
                logging.warning(f"Invalid state value '{rows[0][0]}' found in database.")
        return StoreState.Error

    def data(self, table: Table) -> pd.DataFrame:
        """Load a table into a pandas DataFrame for read-only consumers."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            df = pd.read_sql_query(f"SELECT * FROM {Table(table).value}", conn)
            logging.debug(f'Loaded {len(df)} rows from "{table}".')
            return df
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            raise status.LocalStoreException(f'Error loading "{table}": {e}') from e
        finally:
            if conn:
                conn.close()


class LiveQuery(QtCore.QObject):
    """A reactive read of a local table.

    Holds the latest result of ``list_all(scope)`` and re-reads it whenever the
    table is written to.

    Signals:
        changed (list): Emitted with the fresh snapshot after a re-read.
    """
    changed = QtCore.Signal(list)

    def __init__(self, table: 'LocalTable', scope: Optional[str] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._table = table
        self._scope = scope
        self._snapshot: List[Any] = table.list_all(scope)
        table.db.tableChanged.connect(self._on_table_changed)

    def snapshot(self) -> List[Any]:
        """Returns the latest emitted value."""
        return list(self._snapshot)

    @QtCore.Slot(str)
    def _on_table_changed(self, table_name: str) -> None:
        if table_name != self._table.table.value:
            return
        self._snapshot = self._table.list_all(self._scope)
        self.changed.emit(self.snapshot())

    def close(self) -> None:
        self._table.db.tableChanged.disconnect(self._on_table_changed)


class LocalTable:
    """Typed accessor for one entity table.

    Args:
        db: The database.

    Attributes:
        table: The table accessed.
        entity_cls: The entity dataclass stored in the table.
        parent_field: Column restricting ``list_all`` to a scope, if any.
        order_by: Default ordering of ``list_all``.
    """
    table: Table = None
    entity_cls = None
    parent_field: Optional[str] = None
    order_by: str = 'created_at'

    def __init__(self, db: DatabaseAPI) -> None:
        self.db = db

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.table.value})'

    def _entity(self, row: sqlite3.Row):
        return self.entity_cls.from_row(dict(row))

    def list_all(self, scope: Optional[str] = None) -> List[Any]:
        """Returns every entity, restricted to ``scope`` when the table has a parent column."""
        if scope is not None and self.parent_field:
            rows = self.db.query(
                f'SELECT * FROM {self.table.value} WHERE "{self.parent_field}" = ? ORDER BY "{self.order_by}"',
                (scope,)
            )
        else:
            rows = self.db.query(f'SELECT * FROM {self.table.value} ORDER BY "{self.order_by}"')
        return [self._entity(row) for row in rows]

    def watch(self, scope: Optional[str] = None) -> LiveQuery:
        """Returns a live query over ``list_all(scope)``."""
        return LiveQuery(self, scope)

    def get(self, identity: str):
        rows = self.db.query(f'SELECT * FROM {self.table.value} WHERE "id" = ?', (identity,))
        return self._entity(rows[0]) if rows else None

    def insert(self, entity):
        """Inserts the entity as-is. An identity already present is overwritten."""
        row = entity.to_row()
        columns = list(row.keys())
        cols_sql = ', '.join(f'"{c}"' for c in columns)
        placeholders = ', '.join('?' for _ in columns)
        updates = ', '.join(f'"{c}" = excluded."{c}"' for c in columns if c != 'id')
        self.db.write(
            f'INSERT INTO {self.table.value} ({cols_sql}) VALUES ({placeholders}) '
            f'ON CONFLICT ("id") DO UPDATE SET {updates}',
            tuple(row.values()),
            tables=(self.table,)
        )
        logging.debug(f'{self!r}: inserted {entity.identity}.')
        return entity

    def update(self, entity):
        """Overwrites the stored entity with ``entity`` verbatim, keeping its ``updated_at``.

        Raises:
            status.LocalStoreException: If the identity is not stored.
        """
        row = entity.to_row()
        assignments = ', '.join(f'"{c}" = ?' for c in row if c != 'id')
        params = tuple(v for c, v in row.items() if c != 'id') + (entity.identity,)
        changed = self.db.write(
            f'UPDATE {self.table.value} SET {assignments} WHERE "id" = ?',
            params,
            tables=(self.table,)
        )
        if not changed:
            raise status.LocalStoreException(f'{self!r}: {entity.identity} not found.')
        logging.debug(f'{self!r}: updated {entity.identity}.')
        return entity

    def edit(self, entity):
        """Stores a user edit, bumping ``updated_at`` so the edit wins the next sync."""
        entity = dataclasses.replace(entity, updated_at=max(models.now_ms(), (entity.updated_at or 0) + 1))
        return self.update(entity)

    def delete(self, identity: str) -> None:
        """Deletes the entity. Children are removed by the foreign key cascade."""
        self.db.write(
            f'DELETE FROM {self.table.value} WHERE "id" = ?',
            (identity,),
            tables=self._cascade_tables()
        )
        logging.debug(f'{self!r}: deleted {identity}.')

    def _cascade_tables(self) -> tuple:
        return (self.table,)


class CarTable(LocalTable):
    table = Table.Cars
    entity_cls = models.Car

    def _cascade_tables(self) -> tuple:
        return Table.Cars, Table.Expenses, Table.Reminders, Table.PlannedExpenses, Table.TagLinks

    def list_active(self) -> List[models.Car]:
        return [car for car in self.list_all() if car.is_active]

    def archive(self, identity: str) -> models.Car:
        """Soft-deletes a car by clearing its active flag."""
        car = self.get(identity)
        if car is None:
            raise status.LocalStoreException(f'{self!r}: {identity} not found.')
        return self.edit(dataclasses.replace(car, is_active=False))

    def update_odometer(self, identity: str, odometer: int) -> models.Car:
        car = self.get(identity)
        if car is None:
            raise status.LocalStoreException(f'{self!r}: {identity} not found.')
        if odometer <= car.current_odometer:
            return car
        return self.edit(dataclasses.replace(car, current_odometer=odometer))

    def rewrite_identity(self, old_identity: str, new_identity: str) -> None:
        """Re-keys a car. Expenses, reminders and planned expenses follow through the cascade."""
        changed = self.db.write(
            f'UPDATE {self.table.value} SET "id" = ? WHERE "id" = ?',
            (new_identity, old_identity),
            tables=self._cascade_tables()
        )
        if not changed:
            raise status.LocalStoreException(f'{self!r}: {old_identity} not found.')
        logging.info(f'{self!r}: rewrote identity {old_identity} -> {new_identity}.')


class ExpenseTable(LocalTable):
    table = Table.Expenses
    entity_cls = models.Expense
    parent_field = 'car_id'
    order_by = 'date'

    def _cascade_tables(self) -> tuple:
        return Table.Expenses, Table.TagLinks

    def total_for_car(self, car_id: str) -> float:
        rows = self.db.query(
            f'SELECT COALESCE(SUM("amount"), 0) FROM {self.table.value} WHERE "car_id" = ?', (car_id,)
        )
        return float(rows[0][0])


class ReminderTable(LocalTable):
    table = Table.Reminders
    entity_cls = models.MaintenanceReminder
    parent_field = 'car_id'

    def get_by_type(self, car_id: str,
                    maintenance_type: models.MaintenanceType) -> Optional[models.MaintenanceReminder]:
        rows = self.db.query(
            f'SELECT * FROM {self.table.value} WHERE "car_id" = ? AND "type" = ?',
            (car_id, maintenance_type.value)
        )
        return self._entity(rows[0]) if rows else None

    def delete_by_type(self, car_id: str, maintenance_type: models.MaintenanceType) -> None:
        self.db.write(
            f'DELETE FROM {self.table.value} WHERE "car_id" = ? AND "type" = ?',
            (car_id, maintenance_type.value),
            tables=(self.table,)
        )

    def update_after_maintenance(self, car_id: str, maintenance_type: models.MaintenanceType,
                                 odometer: int) -> models.MaintenanceReminder:
        """Upserts the reminder of ``maintenance_type`` for a car after the work was done at ``odometer``."""
        existing = self.get_by_type(car_id, maintenance_type)
        if existing is None:
            reminder = models.MaintenanceReminder.create(car_id, maintenance_type, odometer)
            logging.debug(f'{self!r}: creating {maintenance_type} reminder for car {car_id}.')
            return self.insert(reminder)

        now = models.now_ms()
        reminder = dataclasses.replace(
            existing,
            last_change_odometer=odometer,
            last_change_date=now,
            next_change_odometer=odometer + existing.interval_km,
        )
        logging.debug(f'{self!r}: refreshing {maintenance_type} reminder for car {car_id}.')
        return self.edit(reminder)

    def update_after_expense_edit(self, car_id: str,
                                  old_service: Optional[models.ServiceType],
                                  new_service: Optional[models.ServiceType],
                                  odometer: int) -> Optional[models.MaintenanceReminder]:
        """Moves the reminder when the service recorded on an edited expense changes."""
        old_type = models.MaintenanceType.from_service_type(old_service)
        new_type = models.MaintenanceType.from_service_type(new_service)

        if old_type != new_type:
            if old_type is not None:
                self.delete_by_type(car_id, old_type)
            if new_type is not None:
                return self.update_after_maintenance(car_id, new_type, odometer)
            return None
        if new_type is not None:
            return self.update_after_maintenance(car_id, new_type, odometer)
        return None


class TagTable(LocalTable):
    table = Table.Tags
    entity_cls = models.ExpenseTag
    parent_field = 'user_id'
    order_by = 'name'

    def _cascade_tables(self) -> tuple:
        return Table.Tags, Table.TagLinks


class TagLinkTable(LocalTable):
    """Expense and tag cross references, keyed by ``"<expense_id>:<tag_id>"``."""
    table = Table.TagLinks
    entity_cls = models.ExpenseTagLink
    order_by = 'expense_id'

    def get(self, identity: str) -> Optional[models.ExpenseTagLink]:
        expense_id, tag_id = models.split_link_identity(identity)
        rows = self.db.query(
            f'SELECT * FROM {self.table.value} WHERE "expense_id" = ? AND "tag_id" = ?',
            (expense_id, tag_id)
        )
        return self._entity(rows[0]) if rows else None

    def insert(self, entity: models.ExpenseTagLink) -> models.ExpenseTagLink:
        self.db.write(
            f'INSERT OR IGNORE INTO {self.table.value} ("expense_id", "tag_id") VALUES (?, ?)',
            (entity.expense_id, entity.tag_id),
            tables=(self.table,)
        )
        return entity

    def update(self, entity: models.ExpenseTagLink) -> models.ExpenseTagLink:
        # A link has no fields besides its key
        return self.insert(entity)

    def edit(self, entity: models.ExpenseTagLink) -> models.ExpenseTagLink:
        return self.insert(entity)

    def delete(self, identity: str) -> None:
        expense_id, tag_id = models.split_link_identity(identity)
        self.db.write(
            f'DELETE FROM {self.table.value} WHERE "expense_id" = ? AND "tag_id" = ?',
            (expense_id, tag_id),
            tables=(self.table,)
        )

    def tags_for_expense(self, expense_id: str) -> List[str]:
        rows = self.db.query(f'SELECT "tag_id" FROM {self.table.value} WHERE "expense_id" = ?', (expense_id,))
        return [row[0] for row in rows]


class PlannedExpenseTable(LocalTable):
    """Planned expenses, flagged ``is_synced`` once the remote holds their current version."""
    table = Table.PlannedExpenses
    entity_cls = models.PlannedExpense
    parent_field = 'car_id'

    def edit(self, entity: models.PlannedExpense) -> models.PlannedExpense:
        return super().edit(dataclasses.replace(entity, is_synced=False))

    def mark_synced(self, identity: str, synced: bool = True) -> None:
        """Sets the sync flag alone, leaving ``updated_at`` untouched."""
        self.db.write(
            f'UPDATE {self.table.value} SET "is_synced" = ? WHERE "id" = ?',
            (int(synced), identity),
            tables=(self.table,)
        )

    def list_unsynced(self, car_id: Optional[str] = None) -> List[models.PlannedExpense]:
        return [p for p in self.list_all(car_id) if not p.is_synced]


class LocalStore:
    """One local accessor per entity family, over a shared database.

    Args:
        db: The database. Defaults to one at the configured path.
    """

    def __init__(self, db: Optional[DatabaseAPI] = None) -> None:
        self.db = db or DatabaseAPI()
        self.cars = CarTable(self.db)
        self.expenses = ExpenseTable(self.db)
        self.reminders = ReminderTable(self.db)
        self.tags = TagTable(self.db)
        self.tag_links = TagLinkTable(self.db)
        self.planned_expenses = PlannedExpenseTable(self.db)

    def accessor(self, kind: models.EntityKind) -> LocalTable:
        return getattr(self, kind.value)

    def record_expense(self, expense: models.Expense) -> models.Expense:
        """Stores a new expense and refreshes the maintenance reminder it completes."""
        self.expenses.insert(expense)
        maintenance_type = models.MaintenanceType.from_service_type(expense.service_type)
        if expense.category == models.ExpenseCategory.MAINTENANCE and maintenance_type is not None:
            self.reminders.update_after_maintenance(expense.car_id, maintenance_type, expense.odometer)
        self.cars.update_odometer(expense.car_id, expense.odometer)
        return expense

    def edit_expense(self, expense: models.Expense) -> models.Expense:
        """Stores an edited expense and moves its reminder if the service type changed."""
        previous = self.expenses.get(expense.identity)
        if previous is None:
            raise status.LocalStoreException(f'Expense {expense.identity} not found.')
        expense = self.expenses.edit(expense)

        old_service = previous.service_type if previous.category == models.ExpenseCategory.MAINTENANCE else None
        new_service = expense.service_type if expense.category == models.ExpenseCategory.MAINTENANCE else None
        if old_service is not None or new_service is not None:
            self.reminders.update_after_expense_edit(expense.car_id, old_service, new_service, expense.odometer)
        return expense

    def stamp(self, user_id: str, ok: bool) -> None:
        """Records the outcome of a sync run."""
        self.db.stamp(user_id, StoreState.Synced if ok else StoreState.Error)
