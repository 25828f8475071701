"""Google Sheets remote store.

Every entity family lives in its own worksheet of the configured spreadsheet. The
first row of a worksheet is the header (the entity columns followed by ``user_id``),
and every data row is stamped with the identity of the user who owns it, so one
spreadsheet can hold the data of several users and devices.

:class:`SheetsBackend` wraps the Sheets API client: service creation, worksheet
lookups, header verification and the raw row reads and writes.
:class:`RemoteTable` and its subclasses are the typed per-entity accessors used by
the sync engine. Accessor methods never raise: they return a :class:`Result`
carrying either the value or the error.
"""

import dataclasses
import logging
import re
import socket
import ssl
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import google_auth_httplib2
import httplib2
import pandas as pd
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from . import models
from .auth import auth_manager, AuthExpiredError
from .signals import signals
from ..status import status

T = TypeVar('T')

USER_COLUMN: str = 'user_id'
ROW_COLUMN: str = '_row'


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


class Result(Generic[T]):
    """Outcome of a remote call: a value on success, an exception on failure."""

    def __init__(self, value: Optional[T] = None, error: Optional[Exception] = None) -> None:
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Optional[T] = None) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> 'Result[T]':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def get_or_none(self) -> Optional[T]:
        return self.value if self.ok else None

    def get_or_raise(self) -> T:
        if not self.ok:
            raise self.error
        return self.value

    def __repr__(self) -> str:
        if self.ok:
            return f'Result.success({self.value!r})'
        return f'Result.failure({self.error!r})'


def to_status_exception(ex: Exception) -> status.BaseStatusException:
    """Convert a transport or API error into a status exception."""
    if isinstance(ex, status.BaseStatusException):
        return ex
    if isinstance(ex, AuthExpiredError):
        signals.authenticationRequested.emit()
        return status.NotAuthenticatedException(str(ex))
    if isinstance(ex, HttpError):
        stat: Optional[int] = ex.resp.status if ex.resp else None
        if stat == 404:
            return status.RemoteUnavailableException(f'Spreadsheet not found (HTTP 404): {ex}')
        if stat == 403:
            return status.RemoteUnavailableException(
                'Access denied (HTTP 403). Please share the spreadsheet with your Google account.'
            )
        return status.RemoteUnavailableException(f'Sheets API error (HTTP {stat}): {ex}')
    if isinstance(ex, (socket.timeout, TimeoutError)):
        return status.RemoteUnavailableException(f'Timeout error: {ex}')
    if isinstance(ex, ssl.SSLError):
        return status.RemoteUnavailableException(f'SSL error: {ex}')
    if isinstance(ex, (httplib2.HttpLib2Error, OSError)):
        return status.RemoteUnavailableException(f'Connection error: {ex}')
    return status.UnknownException(f'{type(ex).__name__}: {ex}')


class SheetsBackend:
    """Connection to the configured spreadsheet.

    The rows of each worksheet are cached by :meth:`read_rows` and kept current by
    this backend's own writes, so a sync pass reads a worksheet once instead of once
    per written record.

    Args:
        auth: Provides the OAuth2 credentials. Defaults to the module-level auth manager.
        service: A ready Sheets API resource. When omitted one is built on first use,
            and dropped again whenever the signed-in account changes.
    """

    def __init__(self, auth=None, service: Any = None) -> None:
        self._auth = auth or auth_manager
        self._service = service
        self._owns_service = service is None
        self._sheet_ids: Dict[str, int] = {}
        self._headers: Dict[str, List[str]] = {}
        self._rows: Dict[str, pd.DataFrame] = {}

        signals.authenticationChanged.connect(self._on_authentication_changed)
        signals.configSectionChanged.connect(self._on_config_section_changed)

    def _on_authentication_changed(self, logged_in: bool) -> None:
        logging.debug('Authentication changed, clearing the Sheets client.')
        self.clear_service()

    def _on_config_section_changed(self, section: str) -> None:
        if section in ('client_secret', 'remote'):
            self.clear_service()
        elif section in ('spreadsheet', 'worksheets'):
            self.clear_cache()

    @property
    def spreadsheet_id(self) -> str:
        from ..settings import lib
        spreadsheet_id = lib.settings.get_section('spreadsheet').get('id', '')
        if not spreadsheet_id:
            raise status.SpreadsheetIdNotConfiguredException
        return spreadsheet_id

    @property
    def num_retries(self) -> int:
        from ..settings import lib
        return lib.settings.get_section('remote').get('num_retries', 0)

    def get_service(self) -> Any:
        """Builds (or returns the cached) Google Sheets service client."""
        if self._service is not None:
            return self._service

        from ..settings import lib
        creds = self._auth.get_valid_credentials()
        timeout = lib.settings.get_section('remote').get('timeout')
        try:
            http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
            self._service = build('sheets', 'v4', http=http, cache_discovery=False)
        except Exception as ex:
            raise status.RemoteUnavailableException(f'Could not create the Sheets client: {ex}') from ex
        logging.debug('Google Sheets service client created successfully.')
        return self._service

    def clear_service(self) -> None:
        """Drop the cached client, worksheet lookups and rows.

        A client passed in by the caller is kept; only a client this backend built
        (and the credentials it carries) is closed and dropped.
        """
        if self._owns_service and self._service is not None:
            try:
                self._service.close()
            except Exception as ex:
                logging.debug(f'Failed closing cached Sheets service client: {ex}')
            self._service = None
        self.clear_cache()

    def clear_cache(self) -> None:
        self._sheet_ids.clear()
        self._headers.clear()
        self._rows.clear()

    def execute(self, request: Any) -> Dict[str, Any]:
        return request.execute(num_retries=self.num_retries)

    def sheet_id(self, worksheet: str) -> int:
        """Returns the numeric sheet id of a worksheet, creating the worksheet if it is missing.

        Raises:
            status.WorksheetNotFoundException: If the worksheet cannot be found or created.
        """
        if worksheet in self._sheet_ids:
            return self._sheet_ids[worksheet]

        self._load_sheet_ids()
        if worksheet not in self._sheet_ids:
            logging.info(f'Worksheet "{worksheet}" not found, adding it to the spreadsheet.')
            self.execute(self.get_service().spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={'requests': [{'addSheet': {'properties': {'title': worksheet}}}]}
            ))
            self._load_sheet_ids()

        if worksheet not in self._sheet_ids:
            raise status.WorksheetNotFoundException(f'Worksheet "{worksheet}" not found.')
        return self._sheet_ids[worksheet]

    def _load_sheet_ids(self) -> None:
        result = self.execute(self.get_service().spreadsheets().get(
            spreadsheetId=self.spreadsheet_id,
            fields='sheets(properties(sheetId,title))'
        ))
        self._sheet_ids = {
            s['properties']['title']: s['properties']['sheetId']
            for s in result.get('sheets', [])
        }

    def header(self, worksheet: str, columns: List[str]) -> List[str]:
        """Returns the worksheet header, writing it first when the worksheet is empty.

        Columns are matched by name, so the remote order may differ from ``columns``.

        Raises:
            status.HeadersInvalidException: If the header lacks any of the expected columns.
        """
        if worksheet in self._headers:
            return self._headers[worksheet]

        self.sheet_id(worksheet)
        result = self.execute(self.get_service().spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id,
            range=f'{worksheet}!1:1',
            valueRenderOption='UNFORMATTED_VALUE'
        ))
        values = result.get('values', [])
        header = [str(cell) for cell in values[0]] if values else []

        if not header:
            logging.info(f'Writing header to the empty worksheet "{worksheet}".')
            self.execute(self.get_service().spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{worksheet}!A1',
                valueInputOption='RAW',
                body={'values': [columns]}
            ))
            header = list(columns)

        missing = [c for c in columns if c not in header]
        if missing:
            raise status.HeadersInvalidException(
                f'Worksheet "{worksheet}" is missing columns: {", ".join(missing)}.'
            )

        self._headers[worksheet] = header
        return header

    def read_rows(self, worksheet: str, columns: List[str], cached: bool = False) -> pd.DataFrame:
        """Reads every data row of a worksheet.

        Args:
            worksheet: The worksheet title.
            columns: The columns the header must contain.
            cached: Return the rows of the previous read, if any, instead of fetching them.

        Returns:
            pd.DataFrame: One row per sheet row, with the header as columns and the
            1-based sheet row number in ``ROW_COLUMN``.
        """
        if cached and worksheet in self._rows:
            return self._rows[worksheet]

        header = self.header(worksheet, columns)
        last_col = idx_to_col(len(header) - 1)

        result = self.execute(self.get_service().spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id,
            range=f'{worksheet}!A2:{last_col}',
            valueRenderOption='UNFORMATTED_VALUE'
        ))
        values: List[List[Any]] = result.get('values', [])

        rows = [
            (list(r) + [''] * (len(header) - len(r)))[:len(header)]
            for r in values
        ]
        df = pd.DataFrame(rows, columns=header, dtype=object)
        df[ROW_COLUMN] = list(range(2, len(rows) + 2))
        logging.debug(f'Read {len(df)} rows from "{worksheet}".')
        self._rows[worksheet] = df
        return df

    def append_row(self, worksheet: str, columns: List[str], row: Dict[str, Any]) -> None:
        header = self.header(worksheet, columns)
        values = self._to_values(header, row)
        result = self.execute(self.get_service().spreadsheets().values().append(
            spreadsheetId=self.spreadsheet_id,
            range=f'{worksheet}!A1',
            valueInputOption='RAW',
            insertDataOption='INSERT_ROWS',
            body={'values': [values]}
        ))

        if worksheet not in self._rows:
            return
        # e.g. "Cars!A5:K5" or "'My Cars'!A5:K5"
        updated_range = (result or {}).get('updates', {}).get('updatedRange', '')
        m = re.search(r'![A-Z]+(\d+)', updated_range)
        if not m:
            del self._rows[worksheet]
            return
        record = dict(zip(header, values))
        record[ROW_COLUMN] = int(m.group(1))
        df = self._rows[worksheet]
        added = pd.DataFrame([record], dtype=object)
        self._rows[worksheet] = added if df.empty else pd.concat([df, added], ignore_index=True)

    def update_row(self, worksheet: str, columns: List[str], row_number: int, row: Dict[str, Any]) -> None:
        header = self.header(worksheet, columns)
        last_col = idx_to_col(len(header) - 1)
        values = self._to_values(header, row)
        self.execute(self.get_service().spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=f'{worksheet}!A{row_number}:{last_col}{row_number}',
            valueInputOption='RAW',
            body={'values': [values]}
        ))

        df = self._rows.get(worksheet)
        if df is None:
            return
        for idx in df.index[df[ROW_COLUMN] == row_number]:
            for column, value in zip(header, values):
                df.at[idx, column] = value

    def delete_row(self, worksheet: str, row_number: int) -> None:
        sheet_id = self.sheet_id(worksheet)
        self.execute(self.get_service().spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={'requests': [{
                'deleteDimension': {
                    'range': {
                        'sheetId': sheet_id,
                        'dimension': 'ROWS',
                        'startIndex': row_number - 1,
                        'endIndex': row_number,
                    }
                }
            }]}
        ))

        df = self._rows.get(worksheet)
        if df is None:
            return
        # Rows below the deleted one move up
        df = df.loc[df[ROW_COLUMN] != row_number].copy()
        below = df[ROW_COLUMN] > row_number
        df.loc[below, ROW_COLUMN] = df.loc[below, ROW_COLUMN] - 1
        self._rows[worksheet] = df

    @staticmethod
    def _to_values(header: List[str], row: Dict[str, Any]) -> List[Any]:
        return ['' if row.get(h) is None else row.get(h) for h in header]


def _updated_at(entity) -> int:
    # Tag links and older tags carry no timestamp
    return getattr(entity, 'updated_at', None) or 0


class RemoteTable:
    """Typed accessor for one entity family, scoped by the signed-in user.

    Args:
        backend: The spreadsheet connection.
        auth: The authentication gate providing the user identity.
        entity_cls: The entity dataclass stored in the worksheet.
        key: Entity family key, also the worksheet key in the settings.
        parent_field: Column restricting ``list_all`` to a scope, if any.
    """

    def __init__(self, backend: SheetsBackend, auth, entity_cls, key: str,
                 parent_field: Optional[str] = None) -> None:
        self.backend = backend
        self.auth = auth
        self.entity_cls = entity_cls
        self.key = key
        self.parent_field = parent_field

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.key})'

    @property
    def worksheet(self) -> str:
        from ..settings import lib
        return lib.settings.worksheet(self.key)

    @property
    def columns(self) -> List[str]:
        columns = self.entity_cls.columns()
        if USER_COLUMN not in columns:
            columns.append(USER_COLUMN)
        return columns

    def _user_id(self) -> str:
        user_id = self.auth.current_user_id()
        if not user_id:
            raise status.NotAuthenticatedException
        return user_id

    def _call(self, description: str, func: Callable[[], T]) -> Result[T]:
        try:
            return Result.success(func())
        except Exception as ex:
            error = to_status_exception(ex)
            logging.error(f'{self!r}: {description} failed: {error}')
            # The cached rows may no longer match the sheet
            self.backend.clear_cache()
            return Result.failure(error)

    def _owned_rows(self, cached: bool = False) -> Dict[str, Tuple[int, Any]]:
        """Returns the signed-in user's entities as identity -> (sheet row number, entity).

        Devices appending the same identity concurrently leave duplicate rows behind.
        Of those, the row with the greatest ``updated_at`` is used (the first one on a tie).
        """
        user_id = self._user_id()
        df = self.backend.read_rows(self.worksheet, self.columns, cached=cached)
        if df.empty:
            return {}
        df = df[df[USER_COLUMN].astype(str) == user_id]

        rows: Dict[str, Tuple[int, Any]] = {}
        for record in df.to_dict('records'):
            entity = self.entity_cls.from_row(record)
            row_number = int(record[ROW_COLUMN])
            kept = rows.get(entity.identity)
            if kept is not None:
                logging.warning(
                    f'{self!r}: {entity.identity} is duplicated on rows {kept[0]} and {row_number}.'
                )
                if _updated_at(entity) <= _updated_at(kept[1]):
                    continue
            rows[entity.identity] = (row_number, entity)
        return rows

    def _find(self, identity: str) -> Optional[Tuple[int, Any]]:
        return self._owned_rows(cached=True).get(identity)

    def _row(self, entity) -> Dict[str, Any]:
        row = entity.to_row()
        row[USER_COLUMN] = self._user_id()
        return row

    def list_all(self, scope: Optional[str] = None) -> Result[List[Any]]:
        """Lists the user's entities, restricted to ``scope`` when the family has a parent."""

        def _list():
            entities = [e for _, e in self._owned_rows().values()]
            if scope is not None and self.parent_field:
                entities = [e for e in entities if getattr(e, self.parent_field) == scope]
            return entities

        return self._call('list_all', _list)

    def get(self, identity: str) -> Result[Optional[Any]]:
        def _get():
            found = self._owned_rows().get(identity)
            return found[1] if found else None

        return self._call(f'get {identity}', _get)

    def insert(self, entity) -> Result[Any]:
        """Inserts the entity. An identity already present is overwritten instead."""

        def _insert():
            found = self._find(entity.identity)
            if found:
                logging.debug(f'{self!r}: {entity.identity} already exists, updating it instead.')
                self.backend.update_row(self.worksheet, self.columns, found[0], self._row(entity))
            else:
                self.backend.append_row(self.worksheet, self.columns, self._row(entity))
            return entity

        return self._call(f'insert {entity.identity}', _insert)

    def update(self, entity) -> Result[Any]:
        """Overwrites the entity. A missing identity is appended instead."""

        def _update():
            found = self._find(entity.identity)
            if found:
                self.backend.update_row(self.worksheet, self.columns, found[0], self._row(entity))
            else:
                logging.debug(f'{self!r}: {entity.identity} not found, appending it instead.')
                self.backend.append_row(self.worksheet, self.columns, self._row(entity))
            return entity

        return self._call(f'update {entity.identity}', _update)

    def delete(self, identity: str) -> Result[None]:
        """Deletes the entity. Deleting a missing identity succeeds."""

        def _delete():
            found = self._find(identity)
            if found:
                self.backend.delete_row(self.worksheet, found[0])
            return None

        return self._call(f'delete {identity}', _delete)


class RemoteCarTable(RemoteTable):
    """Car accessor. Cars still keyed by a legacy integer id get a new UUID on insert."""

    def __init__(self, backend: SheetsBackend, auth) -> None:
        super().__init__(backend, auth, models.Car, models.EntityKind.Car.value)

    def insert(self, entity: models.Car) -> Result[models.Car]:
        if models.is_legacy_id(entity.id):
            assigned = dataclasses.replace(entity, id=models.new_id())
            logging.info(f'Car {entity.id} has a legacy id, assigning {assigned.id}.')
            return super().insert(assigned)
        return super().insert(entity)


class RemoteStore:
    """One remote accessor per entity family.

    Args:
        backend: The spreadsheet connection. A default one is built when omitted.
        auth: The authentication gate. Defaults to the module-level auth manager.
    """

    def __init__(self, backend: Optional[SheetsBackend] = None, auth=None) -> None:
        self.auth = auth or auth_manager
        self.backend = backend or SheetsBackend(auth=self.auth)

        kind = models.EntityKind
        self.cars = RemoteCarTable(self.backend, self.auth)
        self.expenses = RemoteTable(
            self.backend, self.auth, models.Expense, kind.Expense.value, parent_field='car_id')
        self.reminders = RemoteTable(
            self.backend, self.auth, models.MaintenanceReminder, kind.Reminder.value, parent_field='car_id')
        self.tags = RemoteTable(
            self.backend, self.auth, models.ExpenseTag, kind.Tag.value, parent_field='user_id')
        self.tag_links = RemoteTable(
            self.backend, self.auth, models.ExpenseTagLink, kind.TagLink.value)
        self.planned_expenses = RemoteTable(
            self.backend, self.auth, models.PlannedExpense, kind.PlannedExpense.value, parent_field='car_id')

    def accessor(self, kind: models.EntityKind) -> RemoteTable:
        return getattr(self, kind.value)
