import json
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from slots.models import Assignment, PayoutDetails, Task, WorkerProfile
from slots.services import AssignmentReconcilerService

DEFAULT_DIR = Path(__file__).resolve().parents[2] / "seed_data"


class Command(BaseCommand):
    help = "Load demo workers, tasks and assignments from JSON files, then reconcile slot counters."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default=str(DEFAULT_DIR),
            help="Directory containing JSON files (default: the bundled seed_data).",
        )

    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        workers = load_json("workers")
        payouts = load_json("payout_details")
        tasks   = load_json("tasks")
        assigns = load_json("assignments")

        with transaction.atomic():
            if options["truncate"]:
                self.stdout.write("Deleting existing records…")
                Assignment.objects.all().delete()
                Task.objects.all().delete()
                PayoutDetails.objects.all().delete()
                WorkerProfile.objects.all().delete()

            WorkerProfile.objects.bulk_create(
                [
                    WorkerProfile(
                        id=w["id"],
                        name=w["name"],
                        rating=w.get("rating", 3.0),
                        category=w.get("category", "General"),
                    )
                    for w in workers
                ],
                ignore_conflicts=True,
            )
            PayoutDetails.objects.bulk_create(
                [
                    PayoutDetails(
                        worker_id=p["worker_id"],
                        bank_name=p["bank_name"],
                        account_holder_name=p["account_holder_name"],
                        account_number=p["account_number"],
                        ifsc_code=p["ifsc_code"],
                        upi_id=p.get("upi_id", ""),
                        is_active=p.get("is_active", True),
                    )
                    for p in payouts
                ],
                ignore_conflicts=True,
            )
            # Counters in seed files are not trusted; reconciliation below sets them.
            Task.objects.bulk_create(
                [
                    Task(
                        id=t["id"],
                        title=t["title"],
                        description=t.get("description", ""),
                        category=t.get("category", ""),
                        role_category=t.get("role_category", "General"),
                        required_rating=t.get("required_rating", 1.0),
                        max_workers=t.get("max_workers", 1),
                        assigned_count=t.get("assigned_count", 0),
                        window_start=t.get("window_start"),
                        window_end=t.get("window_end"),
                        status=t.get("status", "active"),
                        budget_per_slot=t.get("budget_per_slot", 0),
                    )
                    for t in tasks
                ],
                ignore_conflicts=True,
            )
            # Withdrawn rows are history and not covered by the unique constraint; skip rows already loaded.
            existing = set(Assignment.objects.values_list("task_id", "worker_id", "status"))
            Assignment.objects.bulk_create(
                [
                    Assignment(
                        task_id=a["task_id"],
                        worker_id=a["worker_id"],
                        status=a.get("status", "assigned"),
                    )
                    for a in assigns
                    if (a["task_id"], a["worker_id"], a.get("status", "assigned")) not in existing
                ],
                ignore_conflicts=True,
            )

        reports = AssignmentReconcilerService.reconcile_many([t["id"] for t in tasks])
        corrected = sum(1 for r in reports if r.corrected)

        self.stdout.write(self.style.SUCCESS(
            f"✅  Seed data loaded successfully ({corrected} slot counters corrected)"
        ))
