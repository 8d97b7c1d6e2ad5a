import threading
import time
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.db import OperationalError
from django.test import SimpleTestCase, override_settings

from slots.locks import KeyedLock
from slots.models import Assignment, Task
from slots.services import AssignmentReconcilerService, SlotLedgerService
from .base import SlotTestBase


class ReconcileTest(SlotTestBase):
    """Test drift detection and repair."""

    def setUp(self):
        super().setUp()
        SlotLedgerService.claim(self.task.id, self.worker_a.snapshot(), now=self.now)

    def test_no_drift(self):
        report = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertEqual(report.before, 1)
        self.assertEqual(report.after, 1)
        self.assertFalse(report.corrected)
        self.assertIsNotNone(self.refresh_task().reconciled_at)

    def test_counter_too_high_is_lowered(self):
        Task.objects.filter(pk=self.task.id).update(assigned_count=2)

        report = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertTrue(report.corrected)
        self.assertEqual((report.before, report.after), (2, 1))
        self.assertEqual(self.refresh_task().assigned_count, 1)

    def test_counter_too_low_is_raised(self):
        Assignment.objects.create(task=self.task, worker=self.worker_b)

        report = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertTrue(report.corrected)
        self.assertEqual(self.refresh_task().assigned_count, 2)

    def test_withdrawn_rows_are_not_counted(self):
        Assignment.objects.create(task=self.task, worker=self.worker_b, status="withdrawn")

        report = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertFalse(report.corrected)
        self.assertEqual(report.after, 1)

    def test_second_run_is_a_no_op(self):
        Task.objects.filter(pk=self.task.id).update(assigned_count=0)

        first = AssignmentReconcilerService.reconcile(self.task.id)
        second = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertTrue(first.corrected)
        self.assertFalse(second.corrected)
        self.assertEqual(second.before, second.after)

    def test_legacy_rows_over_capacity_are_flagged(self):
        Assignment.objects.create(task=self.task, worker=self.worker_b)
        Assignment.objects.create(task=self.task, worker=self.worker_c)

        report = AssignmentReconcilerService.reconcile(self.task.id)

        self.assertTrue(report.over_capacity)
        self.assertEqual(self.refresh_task().assigned_count, 3)
        # A full task keeps turning new claims away.
        extra = self.create_worker("Extra")
        self.assertFalse(SlotLedgerService.claim(self.task.id, extra.snapshot(), now=self.now).ok)

    def test_claims_after_repair_use_true_count(self):
        Task.objects.filter(pk=self.task.id).update(assigned_count=2)
        self.assertFalse(SlotLedgerService.claim(self.task.id, self.worker_b.snapshot(), now=self.now).ok)

        AssignmentReconcilerService.reconcile(self.task.id)

        self.assertTrue(SlotLedgerService.claim(self.task.id, self.worker_b.snapshot(), now=self.now).ok)

    def test_unknown_task(self):
        self.assertIsNone(AssignmentReconcilerService.reconcile(999999))


class ReconcileSweepTest(SlotTestBase):

    def setUp(self):
        super().setUp()
        self.drifted = Task.objects.create(title="Drifted", max_workers=3, assigned_count=2)
        self.closed = Task.objects.create(title="Closed", status="completed", assigned_count=1)

    def test_sweep_skips_terminal_tasks(self):
        reports = AssignmentReconcilerService.reconcile_many()

        ids = {r.task_id for r in reports}
        self.assertIn(self.task.id, ids)
        self.assertIn(self.drifted.id, ids)
        self.assertNotIn(self.closed.id, ids)
        self.assertEqual(self.refresh_task(self.drifted).assigned_count, 0)
        self.assertEqual(self.refresh_task(self.closed).assigned_count, 1)

    def test_sweep_of_selected_tasks(self):
        reports = AssignmentReconcilerService.reconcile_many([self.closed.id, 999999])

        self.assertEqual([r.task_id for r in reports], [self.closed.id])
        self.assertEqual(self.refresh_task(self.closed).assigned_count, 0)

    def test_storage_failure_on_one_task_does_not_stop_sweep(self):
        original = AssignmentReconcilerService.reconcile.__func__

        def flaky(cls, task_id):
            if task_id == self.task.id:
                raise OperationalError("gone")
            return original(cls, task_id)

        with mock.patch.object(AssignmentReconcilerService, "reconcile", classmethod(flaky)):
            reports = AssignmentReconcilerService.reconcile_many([self.task.id, self.drifted.id])

        self.assertEqual([r.task_id for r in reports], [self.drifted.id])

    @override_settings(SLOTS_RECONCILE_IDLE_SECONDS=600)
    def test_reconcile_if_idle(self):
        self.assertIsNone(AssignmentReconcilerService.reconcile_if_idle(self.drifted.id, 30))
        self.assertEqual(self.refresh_task(self.drifted).assigned_count, 2)

        report = AssignmentReconcilerService.reconcile_if_idle(self.drifted.id, 900)

        self.assertTrue(report.corrected)
        self.assertEqual(self.refresh_task(self.drifted).assigned_count, 0)


class ReconcileCommandTest(SlotTestBase):

    def test_single_sweep(self):
        drifted = Task.objects.create(title="Drifted", max_workers=3, assigned_count=2)
        out = StringIO()

        call_command("reconcile_slots", "--once", stdout=out)

        self.assertEqual(self.refresh_task(drifted).assigned_count, 0)
        self.assertIn(f"task {drifted.id}: 2 -> 0", out.getvalue())
        self.assertIn("1 corrected", out.getvalue())

    def test_selected_task_only(self):
        drifted = Task.objects.create(title="Drifted", max_workers=3, assigned_count=2)
        other = Task.objects.create(title="Other", max_workers=3, assigned_count=1)

        call_command("reconcile_slots", "--once", "--task", str(drifted.id), stdout=StringIO())

        self.assertEqual(self.refresh_task(drifted).assigned_count, 0)
        self.assertEqual(self.refresh_task(other).assigned_count, 1)


class SeedCommandTest(SlotTestBase):

    def test_seed_load_repairs_counters(self):
        out = StringIO()

        call_command("load_seed_data", "--truncate", stdout=out)

        counts = dict(Task.objects.values_list("id", "assigned_count"))
        self.assertEqual(counts, {1: 1, 2: 1, 3: 1, 4: 0})
        self.assertIn("3 slot counters corrected", out.getvalue())

    def test_reloading_without_truncate_adds_nothing(self):
        call_command("load_seed_data", "--truncate", stdout=StringIO())
        rows = Assignment.objects.count()
        out = StringIO()

        call_command("load_seed_data", stdout=out)

        self.assertEqual(Assignment.objects.count(), rows)
        self.assertEqual(Assignment.objects.filter(task_id=3, worker_id=1, status="withdrawn").count(), 1)
        self.assertIn("0 slot counters corrected", out.getvalue())


class KeyedLockTest(SimpleTestCase):

    def test_same_key_is_serialized(self):
        locks = KeyedLock()
        active = []
        overlaps = []

        def work():
            with locks.hold(1):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(len(locks), 0)

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = threading.Event()

        def other():
            with locks.hold(2):
                entered.set()

        with locks.hold(1):
            t = threading.Thread(target=other)
            t.start()
            self.assertTrue(entered.wait(timeout=2))
            t.join()
