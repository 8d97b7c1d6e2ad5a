import threading

from django.db import connection

from slots.models import WorkerProfile
from slots.schemas import ClaimError
from slots.services import SlotLedgerService
from .base import SlotTransactionTestBase


class ClaimRaceTest(SlotTransactionTestBase):
    """Claims racing on separate database connections."""

    def setUp(self):
        super().setUp()
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("threads need a file-backed test database")

    def race(self, snapshots, task=None):
        """Release all claims at once from their own threads; returns the results in thread order."""
        task = task or self.task
        barrier = threading.Barrier(len(snapshots))
        results = [None] * len(snapshots)
        errors = []

        def run(index, snapshot):
            try:
                barrier.wait()
                results[index] = SlotLedgerService.claim(task.id, snapshot, now=self.now)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=run, args=(i, s)) for i, s in enumerate(snapshots)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        return results

    def test_parallel_claims_fill_exactly_the_capacity(self):
        workers = [self.worker_a, self.worker_b, self.worker_c]
        workers += [self.create_worker(f"Racer {i}") for i in range(3)]

        results = self.race([w.snapshot() for w in workers])

        self.assertEqual(sum(r.ok for r in results), 2)
        self.assertEqual(
            {r.error for r in results if not r.ok},
            {ClaimError.CAPACITY_EXHAUSTED.value},
        )
        task = self.refresh_task()
        self.assertEqual(task.assigned_count, 2)
        self.assertEqual(self.live_rows().count(), 2)

    def test_worker_racing_itself_gets_one_slot(self):
        self.task.max_workers = 5
        self.task.save()
        snapshot = self.worker_a.snapshot()

        results = self.race([snapshot] * 4)

        self.assertEqual(sum(r.ok for r in results), 1)
        self.assertEqual(
            {r.error for r in results if not r.ok},
            {ClaimError.ALREADY_CLAIMED.value},
        )
        self.assertEqual(self.refresh_task().assigned_count, 1)
        self.assertEqual(self.live_rows().count(), 1)


class ClaimCommitTest(SlotTransactionTestBase):
    """Failures that only show when the claim transaction commits."""

    def test_worker_removed_after_snapshot(self):
        snapshot = self.worker_a.snapshot()
        WorkerProfile.objects.filter(pk=self.worker_a.id).delete()

        result = SlotLedgerService.claim(self.task.id, snapshot, now=self.now)

        self.assertFalse(result.ok)
        self.assertEqual(result.error, ClaimError.WORKER_NOT_FOUND)
        self.assertEqual(self.refresh_task().assigned_count, 0)
        self.assertEqual(self.live_rows().count(), 0)
