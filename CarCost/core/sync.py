"""Two-way reconciliation between the local SQLite store and the remote spreadsheet.

Each entity family is merged by a :class:`Reconciler` using last-writer-wins on the
``updated_at`` timestamp and a union of identities:

1. The remote collection for the scope is listed. A failure aborts the family.
2. The local collection for the same scope is read.
3. Records present on both sides are compared; the newer side overwrites the older.
4. Local-only records are inserted remotely. A car still keyed by a legacy integer
   id gets the identity assigned by the remote store written back locally.
5. Remote-only records are inserted locally.

Each record is pushed or pulled independently: a failing record is collected in the
:class:`ReconcileReport` and the pass carries on with its siblings.

:class:`SyncAPI` sequences the families (cars before their expenses, reminders and
planned expenses; tags before tag links), skips the children of cars missing
remotely, and publishes its :class:`SyncState` through ``stateChanged``.
"""
import dataclasses
import enum
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from PySide6 import QtCore

from .models import EntityKind
from .remote import Result
from ..log import log
from ..status import status


class SyncStateKind(enum.StrEnum):
    Idle = enum.auto()
    Syncing = enum.auto()
    Success = enum.auto()
    Error = enum.auto()


@dataclasses.dataclass(frozen=True)
class SyncState:
    """The state published by the orchestrator."""
    kind: SyncStateKind = SyncStateKind.Idle
    message: str = ''

    @classmethod
    def idle(cls) -> 'SyncState':
        return cls(SyncStateKind.Idle)

    @classmethod
    def syncing(cls, message: str = '') -> 'SyncState':
        return cls(SyncStateKind.Syncing, message)

    @classmethod
    def success(cls, message: str = '') -> 'SyncState':
        return cls(SyncStateKind.Success, message)

    @classmethod
    def error(cls, message: str) -> 'SyncState':
        return cls(SyncStateKind.Error, message)


@dataclasses.dataclass
class ReconcileReport:
    """What one pass over an entity family did.

    Attributes:
        kind: The entity family.
        pushed_new: Identities inserted remotely.
        pushed_updates: Identities whose remote copy was overwritten.
        pulled_new: Identities inserted locally.
        pulled_updates: Identities whose local copy was overwritten.
        rewritten: (old, new) identity pairs rewritten locally after a remote insert.
        skipped: Parent identities whose children were not reconciled.
        failures: (identity, message) pairs of records left unreconciled.
    """
    kind: EntityKind
    pushed_new: List[str] = dataclasses.field(default_factory=list)
    pushed_updates: List[str] = dataclasses.field(default_factory=list)
    pulled_new: List[str] = dataclasses.field(default_factory=list)
    pulled_updates: List[str] = dataclasses.field(default_factory=list)
    rewritten: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
    skipped: List[str] = dataclasses.field(default_factory=list)
    failures: List[Tuple[str, str]] = dataclasses.field(default_factory=list)

    @property
    def pushed(self) -> int:
        return len(self.pushed_new) + len(self.pushed_updates) + len(self.rewritten)

    @property
    def pulled(self) -> int:
        return len(self.pulled_new) + len(self.pulled_updates)

    @property
    def writes(self) -> int:
        """Number of records written to either store."""
        return self.pushed + self.pulled

    @property
    def failed_ids(self) -> List[str]:
        return [identity for identity, _ in self.failures]

    def summary(self) -> str:
        text = f'{self.kind.name}: {self.pushed} pushed, {self.pulled} pulled'
        if self.skipped:
            text += f', {len(self.skipped)} skipped'
        if self.failures:
            text += f', {len(self.failures)} failed'
        return text


@dataclasses.dataclass
class SyncResult:
    """Outcome of an orchestrator operation.

    Attributes:
        ok: False if the run was rejected or stopped.
        message: Human-readable summary, or the error that stopped the run.
        error: The exception that stopped the run.
        reports: Reports of the entity families reconciled so far.
        log: Messages logged during the run.
    """
    ok: bool
    message: str = ''
    error: Optional[Exception] = None
    reports: List[ReconcileReport] = dataclasses.field(default_factory=list)
    log: List[str] = dataclasses.field(default_factory=list)

    @property
    def failures(self) -> List[Tuple[str, str]]:
        return [failure for report in self.reports for failure in report.failures]

    def report(self, kind: EntityKind) -> Optional[ReconcileReport]:
        return next((r for r in self.reports if r.kind == kind), None)


class LocalAccessor(Protocol):
    """Local per-entity operations. Failures raise :class:`status.LocalStoreException`."""

    def list_all(self, scope: Optional[str] = None) -> List[Any]: ...

    def get(self, identity: str) -> Optional[Any]: ...

    def insert(self, entity: Any) -> Any: ...

    def update(self, entity: Any) -> Any: ...

    def delete(self, identity: str) -> None: ...


class RemoteAccessor(Protocol):
    """Remote per-entity operations. Failures are returned, never raised."""

    def list_all(self, scope: Optional[str] = None) -> Result[List[Any]]: ...

    def get(self, identity: str) -> Result[Optional[Any]]: ...

    def insert(self, entity: Any) -> Result[Any]: ...

    def update(self, entity: Any) -> Result[Any]: ...

    def delete(self, identity: str) -> Result[None]: ...


def compare_by_timestamp(local: Any, remote: Any) -> int:
    """Returns 1 if the local record is newer, -1 if the remote one is, 0 if equal."""
    return (local.updated_at > remote.updated_at) - (local.updated_at < remote.updated_at)


def compare_tags(local: Any, remote: Any) -> int:
    """Compare tags, which older clients stored without ``updated_at``.

    Tags with a timestamp on both sides use last-writer-wins. A tag with a timestamp
    wins over one without. When neither has one, any field difference is resolved in
    favour of the local tag.
    """
    if local.updated_at is not None and remote.updated_at is not None:
        return compare_by_timestamp(local, remote)
    if local.updated_at is not None:
        return 1
    if remote.updated_at is not None:
        return -1
    return 1 if local.to_row() != remote.to_row() else 0


def compare_links(local: Any, remote: Any) -> int:
    # Links are keys only; equal identities are equal records
    return 0


COMPARATORS: Dict[EntityKind, Callable[[Any, Any], int]] = {
    EntityKind.Tag: compare_tags,
    EntityKind.TagLink: compare_links,
}


class Reconciler:
    """Merges one entity family between a local and a remote accessor.

    Args:
        kind: The entity family.
        local: The local accessor.
        remote: The remote accessor.
        compare: Conflict policy; positive when the local record wins.
        rewrite_identity: Called with (local, assigned) when the remote store assigned a
            different identity on insert. Only cars use it.
        cancel_check: Called before every record operation; raises to abort the pass.
        on_synced: Called with the identity of every record pushed or pulled successfully.
    """

    def __init__(
            self,
            kind: EntityKind,
            local: LocalAccessor,
            remote: RemoteAccessor,
            compare: Callable[[Any, Any], int] = compare_by_timestamp,
            rewrite_identity: Optional[Callable[[Any, Any], None]] = None,
            cancel_check: Optional[Callable[[], None]] = None,
            on_synced: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.kind = kind
        self.local = local
        self.remote = remote
        self.compare = compare
        self.rewrite_identity = rewrite_identity
        self.cancel_check = cancel_check
        self.on_synced = on_synced

    def reconcile(self, scope: Optional[str] = None,
                  report: Optional[ReconcileReport] = None) -> ReconcileReport:
        """Runs one pass over ``scope``, accumulating into ``report`` when given.

        Raises:
            status.ReconcileException: If either collection cannot be listed.
            status.SyncCancelledException: If the pass was cancelled.
        """
        report = report or ReconcileReport(self.kind)
        scope_label = f' [{scope}]' if scope else ''

        remote_result = self.remote.list_all(scope)
        if not remote_result.ok:
            raise status.ReconcileException(
                f'{self.kind.name}{scope_label}: could not list remote records: {remote_result.error}'
            ) from remote_result.error

        try:
            local_records = self.local.list_all(scope)
        except status.LocalStoreException as ex:
            raise status.ReconcileException(
                f'{self.kind.name}{scope_label}: could not read local records: {ex}'
            ) from ex

        remote_by_id = {record.identity: record for record in remote_result.value}
        local_by_id = {record.identity: record for record in local_records}
        logging.debug(
            f'{self.kind.name}{scope_label}: {len(local_by_id)} local, {len(remote_by_id)} remote records.'
        )

        for identity, local in local_by_id.items():
            remote = remote_by_id.get(identity)
            if remote is None:
                self._attempt(report, identity, self._push_new, local, report)
                continue

            order = self.compare(local, remote)
            if order > 0:
                self._attempt(report, identity, self._push_update, local, report)
            elif order < 0:
                self._attempt(report, identity, self._pull_update, remote, report)

        for identity, remote in remote_by_id.items():
            if identity in local_by_id:
                continue
            self._attempt(report, identity, self._pull_new, remote, report)

        return report

    def _attempt(self, report: ReconcileReport, identity: str, func: Callable, *args) -> None:
        if self.cancel_check:
            self.cancel_check()
        try:
            func(*args)
            if self.on_synced:
                self.on_synced(identity)
        except status.SyncCancelledException:
            raise
        except status.BaseStatusException as ex:
            logging.warning(f'{self.kind.name}: {identity} left unreconciled: {ex}')
            report.failures.append((identity, str(ex)))

    def _push_new(self, local: Any, report: ReconcileReport) -> None:
        assigned = self.remote.insert(local).get_or_raise()
        if assigned is None or assigned.identity == local.identity:
            report.pushed_new.append(local.identity)
            return

        if self.rewrite_identity is None:
            raise status.ReconcileException(
                f'{self.kind.name}: remote assigned {assigned.identity} to {local.identity}.'
            )
        self.rewrite_identity(local, assigned)
        report.rewritten.append((local.identity, assigned.identity))

    def _push_update(self, local: Any, report: ReconcileReport) -> None:
        self.remote.update(local).get_or_raise()
        report.pushed_updates.append(local.identity)

    def _pull_new(self, remote: Any, report: ReconcileReport) -> None:
        self.local.insert(remote)
        report.pulled_new.append(remote.identity)

    def _pull_update(self, remote: Any, report: ReconcileReport) -> None:
        self.local.update(remote)
        report.pulled_updates.append(remote.identity)


# Sync runs in flight, by user
_leases: Dict[str, threading.Lock] = {}
_leases_lock = threading.Lock()


def _lease(user_id: str) -> threading.Lock:
    with _leases_lock:
        return _leases.setdefault(user_id, threading.Lock())


class SyncAPI(QtCore.QObject):
    """Sequences the reconcilers and publishes the sync state.

    Args:
        local: The local store (one accessor per entity family).
        remote: The remote store (one accessor per entity family).
        auth: The authentication gate.

    Signals:
        stateChanged (SyncState): Emitted on every state transition.
    """
    stateChanged = QtCore.Signal(object)

    CHILD_KINDS: Tuple[EntityKind, ...] = (EntityKind.Expense, EntityKind.Reminder, EntityKind.PlannedExpense)
    OPTIONAL_KINDS: Tuple[EntityKind, ...] = (EntityKind.TagLink, EntityKind.PlannedExpense)

    def __init__(self, local, remote, auth, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.local = local
        self.remote = remote
        self.auth = auth
        self._state = SyncState.idle()
        self._cancel_event = threading.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        from .signals import signals

        self._state = state
        logging.debug(f'Sync state: {state.kind} {state.message}')
        self.stateChanged.emit(state)
        signals.syncStateChanged.emit(state)

    def cancel(self) -> None:
        """Requests cancellation of the run in flight at its next record operation."""
        logging.info('Sync cancellation requested.')
        self._cancel_event.set()

    def _check_cancelled(self) -> None:
        thread = QtCore.QThread.currentThread()
        if self._cancel_event.is_set() or (thread is not None and thread.isInterruptionRequested()):
            raise status.SyncCancelledException

    def safe_initial_sync(self) -> SyncResult:
        """Syncs after sign-in. Car children are only synced when there are cars."""
        return self._run('Initial sync', self._initial_steps)

    def full_sync(self) -> SyncResult:
        """Syncs every entity family in dependency order."""
        return self._run('Full sync', self._full_steps)

    def sync_entity_type_only(self, kind: EntityKind) -> SyncResult:
        """Syncs a single entity family. Car children are synced for every local car."""
        kind = EntityKind(kind)
        return self._run(f'{kind.name} sync', lambda user_id, reports: reports.append(
            self._reconcile_kind(kind, user_id)
        ))

    def sync_subset_for_parent(self, car_id: str, kinds: Optional[Iterable[EntityKind]] = None) -> SyncResult:
        """Syncs the children of one car, by default its expenses, reminders and planned expenses."""
        kinds = tuple(EntityKind(k) for k in (kinds or self.CHILD_KINDS))
        for kind in kinds:
            if not kind.is_car_child:
                raise ValueError(f'{kind.name} is not scoped by car.')

        def _steps(user_id: str, reports: List[ReconcileReport]) -> None:
            for kind in kinds:
                if kind in self.OPTIONAL_KINDS and not self._enabled(kind):
                    continue
                reports.append(self._reconcile_children(kind, [car_id]))

        return self._run(f'Sync of car {car_id}', _steps)

    def start(self, operation: str, *args: Any) -> 'SyncWorker':
        """Runs an operation of this API on a worker thread and returns the started worker."""
        worker = SyncWorker(self, operation, *args, parent=self)
        worker.start()
        return worker

    def _initial_steps(self, user_id: str, reports: List[ReconcileReport]) -> None:
        reports.append(self._reconcile(EntityKind.Car))

        has_cars = bool(self._local_car_ids())
        if has_cars:
            reports.append(self._reconcile_children(EntityKind.Expense))
            reports.append(self._reconcile_children(EntityKind.Reminder))
        else:
            logging.info('No cars stored, skipping expenses and reminders.')

        reports.append(self._reconcile(EntityKind.Tag, scope=user_id))

        if not has_cars:
            return
        if self._enabled(EntityKind.TagLink):
            reports.append(self._reconcile(EntityKind.TagLink))
        if self._enabled(EntityKind.PlannedExpense):
            reports.append(self._reconcile_children(EntityKind.PlannedExpense))

    def _full_steps(self, user_id: str, reports: List[ReconcileReport]) -> None:
        for kind in EntityKind:
            if kind in self.OPTIONAL_KINDS and not self._enabled(kind):
                logging.debug(f'{kind.name} sync is disabled in the settings.')
                continue
            reports.append(self._reconcile_kind(kind, user_id))

    def _run(self, label: str, steps: Callable[[str, List[ReconcileReport]], None]) -> SyncResult:
        from .signals import signals

        user_id = self.auth.current_user_id() if self.auth.is_logged_in() else None
        if not user_id:
            error = status.NotAuthenticatedException()
            return SyncResult(False, error.status_message, error)

        lease = _lease(user_id)
        if not lease.acquire(blocking=False):
            error = status.SyncInProgressException()
            return SyncResult(False, error.status_message, error)

        tank = log.get_tank()
        mark = tank.mark() if tank else 0

        try:
            self._cancel_event.clear()
            self._set_state(SyncState.syncing(label))
            logging.info(f'{label} started for user {user_id}.')

            reports: List[ReconcileReport] = []
            try:
                steps(user_id, reports)
            except status.BaseStatusException as ex:
                result = SyncResult(False, str(ex), ex, reports)
            except Exception as ex:
                logging.exception(f'{label} failed unexpectedly.')
                result = SyncResult(False, f'{label} failed: {ex}', ex, reports)
            else:
                result = SyncResult(True, self._summary(label, reports), None, reports)

            try:
                self.local.stamp(user_id, result.ok)
            except status.LocalStoreException as ex:
                logging.error(f'Could not record the sync stamp: {ex}')

            if result.ok:
                logging.info(result.message)
                self._set_state(SyncState.success(result.message))
            else:
                logging.error(f'{label} stopped: {result.message}')
                self._set_state(SyncState.error(result.message))

            if tank:
                result.log = tank.since(mark)
            signals.syncFinished.emit(result)
            return result
        finally:
            lease.release()

    @staticmethod
    def _summary(label: str, reports: List[ReconcileReport]) -> str:
        if not reports:
            return f'{label} finished, nothing to sync.'
        return f'{label} finished. ' + '; '.join(r.summary() for r in reports)

    def _enabled(self, kind: EntityKind) -> bool:
        from ..settings import lib
        return lib.settings.sync_enabled(kind.value)

    def _local_car_ids(self) -> List[str]:
        try:
            return [car.identity for car in self.local.cars.list_all()]
        except status.LocalStoreException as ex:
            raise status.ReconcileException(f'Could not read local cars: {ex}') from ex

    def _reconciler(self, kind: EntityKind) -> Reconciler:
        local = self.local.accessor(kind)
        return Reconciler(
            kind,
            local,
            self.remote.accessor(kind),
            compare=COMPARATORS.get(kind, compare_by_timestamp),
            rewrite_identity=self._rewrite_car_identity if kind == EntityKind.Car else None,
            cancel_check=self._check_cancelled,
            # Only tables tracking a sync flag (planned expenses) have it
            on_synced=getattr(local, 'mark_synced', None),
        )

    def _rewrite_car_identity(self, local: Any, assigned: Any) -> None:
        self.local.cars.rewrite_identity(local.identity, assigned.identity)

    def _reconcile_kind(self, kind: EntityKind, user_id: str) -> ReconcileReport:
        if kind.is_car_child:
            return self._reconcile_children(kind)
        if kind == EntityKind.Tag:
            return self._reconcile(kind, scope=user_id)
        return self._reconcile(kind)

    def _reconcile(self, kind: EntityKind, scope: Optional[str] = None) -> ReconcileReport:
        report = self._reconciler(kind).reconcile(scope)
        logging.info(report.summary())
        return report

    def _reconcile_children(self, kind: EntityKind, car_ids: Optional[List[str]] = None) -> ReconcileReport:
        """Reconciles a car child family car by car.

        The remote car set is listed once; the children of a car missing remotely are skipped.
        """
        remote_cars = self.remote.cars.list_all()
        if not remote_cars.ok:
            raise status.ReconcileException(
                f'{kind.name}: could not list remote cars: {remote_cars.error}'
            ) from remote_cars.error
        remote_car_ids = {car.identity for car in remote_cars.value}

        if car_ids is None:
            car_ids = self._local_car_ids()

        reconciler = self._reconciler(kind)
        report = ReconcileReport(kind)
        for car_id in car_ids:
            if car_id not in remote_car_ids:
                logging.warning(f'{kind.name}: car {car_id} is missing remotely, skipping its records.')
                report.skipped.append(car_id)
                continue
            reconciler.reconcile(scope=car_id, report=report)

        logging.info(report.summary())
        return report


class SyncWorker(QtCore.QThread):
    """Runs one :class:`SyncAPI` operation off the calling thread.

    Signals:
        resultReady (SyncResult): Emitted with the operation's result.
    """
    resultReady = QtCore.Signal(object)

    def __init__(self, api: SyncAPI, operation: str, *args: Any, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        if operation not in ('safe_initial_sync', 'full_sync', 'sync_entity_type_only', 'sync_subset_for_parent'):
            raise ValueError(f'Unknown sync operation "{operation}"')
        self.api = api
        self.operation = operation
        self.args = args
        self.result: Optional[SyncResult] = None

    def run(self) -> None:
        logging.debug(f'SyncWorker running {self.operation}{self.args}.')
        self.result = getattr(self.api, self.operation)(*self.args)
        self.resultReady.emit(self.result)

    def cancel(self) -> None:
        """Requests cooperative cancellation; records already written stay written."""
        self.requestInterruption()
        self.api.cancel()
