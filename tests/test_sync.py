"""Tests for the reconciler and the sync orchestrator.

Run: python -m unittest tests.test_sync
"""
import dataclasses
import unittest

from CarCost.core import models
from CarCost.core import sync
from CarCost.core.models import EntityKind
from CarCost.core.sync import SyncAPI, SyncStateKind, SyncWorker
from CarCost.settings import lib
from CarCost.status import status
from tests.base import BaseTestCase, FakeAuth, FakeLocalStore, FakeRemoteStore, USER_ID


def make_car(identity='c1', updated_at=100, **kwargs):
    return models.Car(
        id=identity, brand='Skoda', model='Octavia', year=2015, license_plate='A123BC',
        created_at=100, updated_at=updated_at, **kwargs
    )


def make_expense(identity, car_id='c1', updated_at=100, amount=42.5, **kwargs):
    return models.Expense(
        id=identity, car_id=car_id, category=models.ExpenseCategory.FUEL, amount=amount,
        date=100, odometer=1000, created_at=100, updated_at=updated_at, **kwargs
    )


def make_tag(identity, name, updated_at=None):
    return models.ExpenseTag(id=identity, name=name, user_id=USER_ID, created_at=100, updated_at=updated_at)


def write_calls(calls):
    return [c for c in calls if c[2] in ('insert', 'update', 'delete', 'rewrite_identity')]


class TestComparators(unittest.TestCase):

    def test_compare_by_timestamp(self):
        self.assertEqual(sync.compare_by_timestamp(make_car(updated_at=200), make_car(updated_at=100)), 1)
        self.assertEqual(sync.compare_by_timestamp(make_car(updated_at=100), make_car(updated_at=200)), -1)
        self.assertEqual(sync.compare_by_timestamp(make_car(updated_at=100), make_car(updated_at=100)), 0)

    def test_compare_tags_without_timestamps_prefers_local_on_mismatch(self):
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil'), make_tag('t1', 'Fuel')), 1)
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil'), make_tag('t1', 'Oil')), 0)

    def test_compare_tags_with_timestamps(self):
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil', 100), make_tag('t1', 'Fuel', 200)), -1)
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil', 300), make_tag('t1', 'Fuel', 200)), 1)

    def test_compare_tags_timestamp_beats_missing_timestamp(self):
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil'), make_tag('t1', 'Fuel', 200)), -1)
        self.assertEqual(sync.compare_tags(make_tag('t1', 'Oil', 200), make_tag('t1', 'Fuel')), 1)

    def test_compare_links(self):
        link = models.ExpenseTagLink(expense_id='e1', tag_id='t1')
        self.assertEqual(sync.compare_links(link, link), 0)


class TestReconciler(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.calls = []
        self.local = FakeLocalStore(self.calls)
        self.remote = FakeRemoteStore(self.calls)

    def reconciler(self, kind, **kwargs):
        return sync.Reconciler(kind, self.local.accessor(kind), self.remote.accessor(kind), **kwargs)

    def test_union(self):
        self.local.cars.seed(make_car('a'), make_car('b'))
        self.remote.cars.seed(make_car('b'), make_car('c'))

        report = self.reconciler(EntityKind.Car).reconcile()

        self.assertEqual(set(self.local.cars.records), {'a', 'b', 'c'})
        self.assertEqual(set(self.remote.cars.records), {'a', 'b', 'c'})
        self.assertEqual(report.pushed_new, ['a'])
        self.assertEqual(report.pulled_new, ['c'])
        self.assertEqual(report.writes, 2)

    def test_newer_side_wins(self):
        self.local.cars.seed(make_car('a', updated_at=200, current_odometer=5000), make_car('b', updated_at=100))
        self.remote.cars.seed(make_car('a', updated_at=100), make_car('b', updated_at=300, color='red'))

        report = self.reconciler(EntityKind.Car).reconcile()

        self.assertEqual(self.remote.cars.records['a'].current_odometer, 5000)
        self.assertEqual(self.remote.cars.records['a'].updated_at, 200)
        self.assertEqual(self.local.cars.records['b'].color, 'red')
        self.assertEqual(self.local.cars.records['b'].updated_at, 300)
        self.assertEqual(report.pushed_updates, ['a'])
        self.assertEqual(report.pulled_updates, ['b'])

    def test_equal_timestamps_write_nothing(self):
        self.local.cars.seed(make_car('a'))
        self.remote.cars.seed(make_car('a'))

        report = self.reconciler(EntityKind.Car).reconcile()

        self.assertEqual(report.writes, 0)
        self.assertEqual(write_calls(self.calls), [])

    def test_second_pass_is_idempotent(self):
        self.local.expenses.seed(make_expense('e1', updated_at=300), make_expense('e2'))
        self.remote.expenses.seed(make_expense('e1'), make_expense('e3', updated_at=400))
        reconciler = self.reconciler(EntityKind.Expense)

        first = reconciler.reconcile(scope='c1')
        n = len(self.calls)
        second = reconciler.reconcile(scope='c1')

        self.assertGreater(first.writes, 0)
        self.assertEqual(second.writes, 0)
        self.assertEqual(write_calls(self.calls[n:]), [])

    def test_scope_restricts_records(self):
        self.local.expenses.seed(make_expense('e1', car_id='c1'), make_expense('e2', car_id='c2'))

        report = self.reconciler(EntityKind.Expense).reconcile(scope='c1')

        self.assertEqual(report.pushed_new, ['e1'])
        self.assertNotIn('e2', self.remote.expenses.records)

    def test_record_failure_is_isolated(self):
        self.local.expenses.seed(*(make_expense(f'e{i}') for i in range(1, 6)))
        self.remote.expenses.fail_ids = {'e3'}

        report = self.reconciler(EntityKind.Expense).reconcile(scope='c1')

        self.assertEqual(set(self.remote.expenses.records), {'e1', 'e2', 'e4', 'e5'})
        self.assertEqual(report.failed_ids, ['e3'])
        self.assertEqual(len(report.pushed_new), 4)

    def test_local_write_failure_is_isolated(self):
        self.remote.expenses.seed(make_expense('e1'), make_expense('e2'))
        self.local.expenses.fail_ids = {'e1'}

        report = self.reconciler(EntityKind.Expense).reconcile(scope='c1')

        self.assertEqual(set(self.local.expenses.records), {'e2'})
        self.assertEqual(report.failed_ids, ['e1'])

    def test_remote_list_failure_raises(self):
        self.remote.cars.fail_list = True
        with self.assertRaises(status.ReconcileException):
            self.reconciler(EntityKind.Car).reconcile()

    def test_local_list_failure_raises(self):
        self.local.cars.fail_list = True
        with self.assertRaises(status.ReconcileException):
            self.reconciler(EntityKind.Car).reconcile()

    def test_assigned_identity_without_rewrite_is_a_failure(self):
        self.local.cars.seed(make_car('7'))

        report = self.reconciler(EntityKind.Car).reconcile()

        self.assertEqual(report.failed_ids, ['7'])
        self.assertIn('7', self.local.cars.records)

    def test_assigned_identity_is_rewritten(self):
        self.local.cars.seed(make_car('7'))
        rewrites = []

        report = self.reconciler(
            EntityKind.Car, rewrite_identity=lambda local, assigned: rewrites.append((local.id, assigned.id))
        ).reconcile()

        self.assertEqual(len(rewrites), 1)
        self.assertEqual(report.rewritten, rewrites)
        self.assertEqual(set(self.remote.cars.records), {rewrites[0][1]})

    def test_on_synced_reports_reconciled_records(self):
        self.local.expenses.seed(make_expense('e1'), make_expense('e2', updated_at=300), make_expense('e3'),
                                 make_expense('e5'))
        self.remote.expenses.seed(make_expense('e2'), make_expense('e4'), make_expense('e5'))
        self.remote.expenses.fail_ids = {'e3'}
        synced = []

        self.reconciler(EntityKind.Expense, on_synced=synced.append).reconcile(scope='c1')

        # e3 failed to push, e5 was already equal on both sides
        self.assertEqual(sorted(synced), ['e1', 'e2', 'e4'])

    def test_cancel_check_runs_before_each_record(self):
        self.local.expenses.seed(make_expense('e1'), make_expense('e2'))
        checks = []

        def _cancel_check():
            checks.append(len(checks))
            if len(checks) > 1:
                raise status.SyncCancelledException

        with self.assertRaises(status.SyncCancelledException):
            self.reconciler(EntityKind.Expense, cancel_check=_cancel_check).reconcile(scope='c1')

        self.assertEqual(len(self.remote.expenses.records), 1)

    def test_tag_links_union(self):
        link_a = models.ExpenseTagLink(expense_id='e1', tag_id='t1')
        link_b = models.ExpenseTagLink(expense_id='e2', tag_id='t1')
        self.local.tag_links.seed(link_a)
        self.remote.tag_links.seed(link_a, link_b)

        report = self.reconciler(EntityKind.TagLink, compare=sync.compare_links).reconcile()

        self.assertEqual(set(self.local.tag_links.records), {'e1:t1', 'e2:t1'})
        self.assertEqual(report.pulled_new, ['e2:t1'])
        self.assertEqual(report.pushed, 0)


class TestSyncAPI(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.calls = []
        self.local = FakeLocalStore(self.calls)
        self.remote = FakeRemoteStore(self.calls)
        self.auth = FakeAuth()
        self.api = SyncAPI(self.local, self.remote, self.auth)
        self.states = []
        self.api.stateChanged.connect(lambda state: self.states.append(state))

    def assertConverged(self, kind):
        local = self.local.accessor(kind).records
        remote = self.remote.accessor(kind).records
        self.assertEqual(set(local), set(remote), f'{kind.name} identities differ')
        for identity in local:
            self.assertEqual(local[identity].to_row(), remote[identity].to_row(), f'{kind.name} {identity} differs')

    def test_requires_authentication(self):
        self.auth.user_id = None
        self.local.cars.seed(make_car('c1'))

        result = self.api.full_sync()

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, status.NotAuthenticatedException)
        self.assertEqual(self.calls, [])
        self.assertEqual(self.states, [])
        self.assertEqual(self.api.state.kind, SyncStateKind.Idle)
        self.assertEqual(self.local.stamps, [])

    def test_state_transitions_on_success(self):
        result = self.api.full_sync()

        self.assertTrue(result.ok)
        self.assertEqual([s.kind for s in self.states], [SyncStateKind.Syncing, SyncStateKind.Success])
        self.assertEqual(self.api.state.kind, SyncStateKind.Success)
        self.assertEqual(self.api.state.message, result.message)
        self.assertEqual(self.local.stamps, [(USER_ID, True)])

    def test_new_device(self):
        car = make_car('c1', updated_at=100)
        expenses = [make_expense('e1'), make_expense('e2', title='Refuel')]
        self.remote.cars.seed(car)
        self.remote.expenses.seed(*expenses)

        result = self.api.safe_initial_sync()

        self.assertTrue(result.ok, result.message)
        self.assertEqual(list(self.local.cars.records.values()), [car])
        self.assertEqual(
            sorted(self.local.expenses.records.values(), key=lambda e: e.id),
            expenses
        )
        self.assertEqual(write_calls([c for c in self.calls if c[0] == 'remote']), [])

    def test_initial_sync_without_cars_skips_children(self):
        self.remote.tags.seed(make_tag('t1', 'Oil'))

        result = self.api.safe_initial_sync()

        self.assertTrue(result.ok)
        kinds = {c[1] for c in self.calls}
        self.assertEqual(kinds, {EntityKind.Car, EntityKind.Tag})
        self.assertIn('t1', self.local.tags.records)

    def test_offline_edit_then_reconnect(self):
        self.local.cars.seed(make_car('c1', updated_at=200, current_odometer=5000))
        self.remote.cars.seed(make_car('c1', updated_at=100, current_odometer=1000))

        result = self.api.full_sync()

        self.assertTrue(result.ok)
        remote_car = self.remote.cars.records['c1']
        self.assertEqual(remote_car.current_odometer, 5000)
        self.assertEqual(remote_car.updated_at, 200)
        self.assertEqual(result.report(EntityKind.Car).pushed_updates, ['c1'])

    def test_tag_mismatch_local_wins(self):
        self.local.tags.seed(make_tag('t1', 'Oil'))
        self.remote.tags.seed(make_tag('t1', 'Fuel'))

        result = self.api.full_sync()

        self.assertTrue(result.ok)
        self.assertEqual(self.remote.tags.records['t1'].name, 'Oil')
        self.assertEqual(self.local.tags.records['t1'].name, 'Oil')

    def test_tags_of_other_users_are_not_synced(self):
        other = dataclasses.replace(make_tag('t2', 'Wash'), user_id='user-2')
        self.remote.tags.seed(make_tag('t1', 'Oil'), other)

        self.api.full_sync()

        self.assertEqual(set(self.local.tags.records), {'t1'})

    def test_full_sync_converges(self):
        self.local.cars.seed(make_car('c1', updated_at=200), make_car('c2'))
        self.remote.cars.seed(make_car('c1', updated_at=100), make_car('c3'))
        self.local.expenses.seed(make_expense('e1', updated_at=100), make_expense('e2', car_id='c2'))
        self.remote.expenses.seed(make_expense('e1', updated_at=500, amount=99.0), make_expense('e3', car_id='c3'))
        self.local.reminders.seed(models.MaintenanceReminder(id='r1', car_id='c1', updated_at=100))
        self.remote.planned_expenses.seed(models.PlannedExpense(id='p1', car_id='c3', title='Tires', updated_at=100))
        self.local.tags.seed(make_tag('t1', 'Oil', 100))
        self.remote.tags.seed(make_tag('t2', 'Fuel', 100))
        self.local.tag_links.seed(models.ExpenseTagLink(expense_id='e1', tag_id='t1'))

        result = self.api.full_sync()

        self.assertTrue(result.ok, result.message)
        for kind in EntityKind:
            self.assertConverged(kind)
        self.assertEqual(self.local.expenses.records['e1'].amount, 99.0)
        self.assertEqual([r.kind for r in result.reports], list(EntityKind))

    def test_full_sync_is_idempotent(self):
        self.local.cars.seed(make_car('c1', updated_at=200), make_car('c2'))
        self.remote.cars.seed(make_car('c1', updated_at=100), make_car('c3'))
        self.remote.expenses.seed(make_expense('e1', car_id='c3'))
        self.local.tags.seed(make_tag('t1', 'Oil'))
        self.remote.tags.seed(make_tag('t1', 'Fuel'))

        first = self.api.full_sync()
        n = len(self.calls)
        second = self.api.full_sync()

        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertGreater(sum(r.writes for r in first.reports), 0)
        self.assertEqual(sum(r.writes for r in second.reports), 0)
        self.assertEqual(write_calls(self.calls[n:]), [])

    def test_remote_car_is_pulled_before_its_expenses_are_reconciled(self):
        self.remote.cars.seed(make_car('C'))
        self.local.expenses.seed(make_expense('e1', car_id='C'))

        result = self.api.full_sync()

        self.assertTrue(result.ok)
        car_pulled = self.calls.index(('local', EntityKind.Car, 'insert', 'C'))
        expenses_listed = self.calls.index(('remote', EntityKind.Expense, 'list_all', 'C'))
        expense_pushed = self.calls.index(('remote', EntityKind.Expense, 'insert', 'e1'))
        self.assertLess(car_pulled, expenses_listed)
        self.assertLess(expenses_listed, expense_pushed)
        self.assertIn('e1', self.remote.expenses.records)

    def test_tags_are_reconciled_before_links(self):
        self.local.tags.seed(make_tag('t1', 'Oil', 100))
        self.local.tag_links.seed(models.ExpenseTagLink(expense_id='e1', tag_id='t1'))

        self.api.full_sync()

        self.assertLess(
            self.calls.index(('remote', EntityKind.Tag, 'insert', 't1')),
            self.calls.index(('remote', EntityKind.TagLink, 'insert', 'e1:t1'))
        )

    def test_partial_failure_isolation(self):
        self.local.cars.seed(make_car('c1'))
        self.remote.cars.seed(make_car('c1'))
        self.local.expenses.seed(make_expense('e1'), make_expense('e2'), make_expense('e3'))
        self.remote.expenses.fail_ids = {'e2'}

        result = self.api.full_sync()

        self.assertTrue(result.ok)
        self.assertEqual(set(self.remote.expenses.records), {'e1', 'e3'})
        self.assertEqual(result.report(EntityKind.Expense).failed_ids, ['e2'])
        self.assertEqual([identity for identity, _ in result.failures], ['e2'])
        self.assertIn('1 failed', result.message)

    def test_entity_failure_stops_run(self):
        self.local.cars.seed(make_car('c1'))
        self.remote.expenses.fail_list = True

        result = self.api.full_sync()

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, status.ReconcileException)
        self.assertEqual(self.api.state.kind, SyncStateKind.Error)
        self.assertEqual(self.api.state.message, result.message)
        # Cars were committed before the failing family
        self.assertIn('c1', self.remote.cars.records)
        self.assertIsNotNone(result.report(EntityKind.Car))
        self.assertNotIn(EntityKind.Tag, {c[1] for c in self.calls})
        self.assertEqual(self.local.stamps, [(USER_ID, False)])

    def test_legacy_car_identity_is_rewritten(self):
        self.local.cars.seed(make_car('7'))
        self.local.expenses.seed(make_expense('e1', car_id='7'))

        result = self.api.full_sync()

        self.assertTrue(result.ok, result.message)
        (old, new), = result.report(EntityKind.Car).rewritten
        self.assertEqual(old, '7')
        self.assertFalse(models.is_legacy_id(new))
        self.assertEqual(set(self.local.cars.records), {new})
        self.assertEqual(set(self.remote.cars.records), {new})
        self.assertEqual(self.local.expenses.records['e1'].car_id, new)
        self.assertEqual(self.remote.expenses.records['e1'].car_id, new)

    def test_children_of_car_missing_remotely_are_skipped(self):
        self.local.cars.seed(make_car('c1'), make_car('c2'))
        self.local.expenses.seed(make_expense('e1', car_id='c1'), make_expense('e2', car_id='c2'))
        self.remote.cars.fail_ids = {'c2'}

        result = self.api.full_sync()

        self.assertTrue(result.ok)
        self.assertEqual(result.report(EntityKind.Car).failed_ids, ['c2'])
        self.assertEqual(result.report(EntityKind.Expense).skipped, ['c2'])
        self.assertEqual(set(self.remote.expenses.records), {'e1'})
        self.assertNotIn(('remote', EntityKind.Expense, 'list_all', 'c2'), self.calls)

    def test_sync_subset_for_parent(self):
        self.local.cars.seed(make_car('c1'), make_car('c2'))
        self.remote.cars.seed(make_car('c1'), make_car('c2'))
        self.local.expenses.seed(make_expense('e1', car_id='c1'), make_expense('e2', car_id='c2'))
        self.remote.reminders.seed(models.MaintenanceReminder(id='r1', car_id='c1'))

        result = self.api.sync_subset_for_parent('c1')

        self.assertTrue(result.ok)
        self.assertEqual(set(self.remote.expenses.records), {'e1'})
        self.assertEqual(set(self.local.reminders.records), {'r1'})
        self.assertEqual(
            [r.kind for r in result.reports],
            [EntityKind.Expense, EntityKind.Reminder, EntityKind.PlannedExpense]
        )
        self.assertNotIn(('remote', EntityKind.Car, 'insert', 'c2'), self.calls)

    def test_sync_subset_for_parent_with_kinds(self):
        self.remote.cars.seed(make_car('c1'))
        result = self.api.sync_subset_for_parent('c1', [EntityKind.Expense])
        self.assertEqual([r.kind for r in result.reports], [EntityKind.Expense])

    def test_sync_subset_for_parent_rejects_unscoped_kinds(self):
        with self.assertRaises(ValueError):
            self.api.sync_subset_for_parent('c1', [EntityKind.Tag])

    def test_sync_subset_for_missing_remote_car(self):
        self.local.cars.seed(make_car('c1'))
        self.local.expenses.seed(make_expense('e1'))

        result = self.api.sync_subset_for_parent('c1')

        self.assertTrue(result.ok)
        self.assertEqual(result.report(EntityKind.Expense).skipped, ['c1'])
        self.assertEqual(self.remote.expenses.records, {})

    def test_sync_entity_type_only(self):
        self.local.cars.seed(make_car('c1'))
        self.local.tags.seed(make_tag('t1', 'Oil'))

        result = self.api.sync_entity_type_only(EntityKind.Tag)

        self.assertTrue(result.ok)
        self.assertEqual({c[1] for c in self.calls}, {EntityKind.Tag})
        self.assertIn('t1', self.remote.tags.records)
        self.assertNotIn('c1', self.remote.cars.records)

    def test_sync_entity_type_only_accepts_values(self):
        self.remote.cars.seed(make_car('c1'))
        self.remote.expenses.seed(make_expense('e1'))
        self.local.cars.seed(make_car('c1'))

        result = self.api.sync_entity_type_only('expenses')

        self.assertTrue(result.ok)
        self.assertIn('e1', self.local.expenses.records)

    def test_disabled_families_are_not_synced(self):
        lib.settings.set_section('sync', {'tag_links': False, 'planned_expenses': False})
        self.local.tag_links.seed(models.ExpenseTagLink(expense_id='e1', tag_id='t1'))

        result = self.api.full_sync()

        self.assertEqual(
            [r.kind for r in result.reports],
            [EntityKind.Car, EntityKind.Expense, EntityKind.Reminder, EntityKind.Tag]
        )
        self.assertEqual(self.remote.tag_links.records, {})

    def test_overlapping_run_is_rejected(self):
        lease = sync._lease(USER_ID)
        lease.acquire()
        try:
            result = self.api.full_sync()
        finally:
            lease.release()

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, status.SyncInProgressException)
        self.assertEqual(self.calls, [])
        self.assertEqual(self.states, [])

        self.assertTrue(self.api.full_sync().ok)

    def test_cancel_keeps_written_records(self):
        self.local.cars.seed(make_car('c1'), make_car('c2'), make_car('c3'))
        insert = self.remote.cars.insert

        def _insert_then_cancel(entity):
            result = insert(entity)
            self.api.cancel()
            return result

        self.remote.cars.insert = _insert_then_cancel

        result = self.api.full_sync()

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, status.SyncCancelledException)
        self.assertEqual(len(self.remote.cars.records), 1)
        self.assertEqual(self.api.state.kind, SyncStateKind.Error)

    def test_cancel_request_is_cleared_by_the_next_run(self):
        self.api.cancel()
        self.local.cars.seed(make_car('c1'))

        self.assertTrue(self.api.full_sync().ok)
        self.assertIn('c1', self.remote.cars.records)

    def test_worker(self):
        self.local.cars.seed(make_car('c1'))
        worker = SyncWorker(self.api, 'full_sync')
        worker.start()
        self.assertTrue(worker.wait(10000))

        self.assertTrue(worker.result.ok)
        self.assertIn('c1', self.remote.cars.records)

    def test_worker_with_arguments(self):
        self.remote.cars.seed(make_car('c1'))
        self.remote.expenses.seed(make_expense('e1'))
        worker = SyncWorker(self.api, 'sync_subset_for_parent', 'c1')
        worker.start()
        self.assertTrue(worker.wait(10000))

        self.assertTrue(worker.result.ok)
        self.assertIn('e1', self.local.expenses.records)

    def test_worker_rejects_unknown_operations(self):
        with self.assertRaises(ValueError):
            SyncWorker(self.api, 'delete_everything')


if __name__ == '__main__':
    unittest.main()
