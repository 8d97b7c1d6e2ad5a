import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WorkerProfile",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100)),
                ("rating", models.FloatField(default=3.0)),
                ("category", models.CharField(default="General", max_length=50)),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("rating__gte", 0), ("rating__lte", 5)),
                        name="worker_rating_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Task",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True)),
                ("category", models.CharField(blank=True, max_length=50)),
                ("role_category", models.CharField(default="General", max_length=50)),
                ("required_rating", models.FloatField(default=1.0)),
                ("max_workers", models.PositiveIntegerField(default=1)),
                ("assigned_count", models.PositiveIntegerField(default=0)),
                ("window_start", models.TimeField(blank=True, null=True)),
                ("window_end", models.TimeField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("paused", "Paused"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="active",
                        max_length=16,
                    ),
                ),
                ("budget_per_slot", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("reconciled_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("max_workers__gte", 1)),
                        name="task_max_workers_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("required_rating__gte", 0), ("required_rating__lte", 5)),
                        name="task_required_rating_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutDetails",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("bank_name", models.CharField(max_length=100)),
                ("account_holder_name", models.CharField(max_length=100)),
                ("account_number", models.CharField(max_length=34)),
                ("ifsc_code", models.CharField(max_length=11)),
                ("upi_id", models.CharField(blank=True, max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "worker",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payout_details",
                        to="slots.workerprofile",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Assignment",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("assigned", "Assigned"),
                            ("working", "Working"),
                            ("submitted", "Submitted"),
                            ("completed", "Completed"),
                            ("withdrawn", "Withdrawn"),
                        ],
                        default="assigned",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "task",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="assignments",
                        to="slots.task",
                    ),
                ),
                (
                    "worker",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="assignments",
                        to="slots.workerprofile",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["task", "status"], name="slots_assign_task_status_idx"),
                    models.Index(fields=["worker", "status"], name="slots_assign_worker_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "withdrawn"), _negated=True),
                        fields=("task", "worker"),
                        name="unique_live_assignment",
                    ),
                ],
            },
        ),
    ]
