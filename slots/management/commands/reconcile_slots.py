import time

from django.conf import settings
from django.core.management.base import BaseCommand

from slots.services import AssignmentReconcilerService


class Command(BaseCommand):
    help = "Repair drift between task slot counters and live assignments, once or on an interval."

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single sweep and exit.",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=settings.SLOTS_RECONCILE_INTERVAL_SECONDS,
            help="Seconds between sweeps (default: SLOTS_RECONCILE_INTERVAL_SECONDS).",
        )
        parser.add_argument(
            "--task",
            type=int,
            action="append",
            dest="task_ids",
            help="Only reconcile this task id; may be repeated.",
        )

    def handle(self, *args, **options):
        while True:
            reports = AssignmentReconcilerService.reconcile_many(options["task_ids"])
            for report in reports:
                if report.corrected:
                    self.stdout.write(
                        f"task {report.task_id}: {report.before} -> {report.after}"
                    )
                if report.over_capacity:
                    self.stdout.write(self.style.WARNING(
                        f"task {report.task_id} has more live assignments than slots"
                    ))
            self.stdout.write(self.style.SUCCESS(
                f"Reconciled {len(reports)} tasks, {sum(r.corrected for r in reports)} corrected"
            ))

            if options["once"]:
                return
            time.sleep(options["interval"])
