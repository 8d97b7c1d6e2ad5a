from dataclasses import dataclass

from django.db import models
from django.db.models import Q


class TaskStatus(models.TextChoices):
    ACTIVE    = "active", "Active"
    PAUSED    = "paused", "Paused"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class AssignmentStatus(models.TextChoices):
    ASSIGNED  = "assigned", "Assigned"
    WORKING   = "working", "Working"
    SUBMITTED = "submitted", "Submitted"
    COMPLETED = "completed", "Completed"
    WITHDRAWN = "withdrawn", "Withdrawn"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


@dataclass(frozen=True)
class WorkerSnapshot:
    """Resolved attributes of the calling worker, as used by eligibility checks."""
    id: int
    rating: float
    category: str
    has_payout_details: bool


class WorkerProfile(models.Model):
    id       = models.BigAutoField(primary_key=True)
    name     = models.CharField(max_length=100)
    rating   = models.FloatField(default=3.0)
    category = models.CharField(max_length=50, default="General")

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(rating__gte=0, rating__lte=5),
                name="worker_rating_range",
            ),
        ]

    def has_payout_details(self) -> bool:
        return self.payout_details.filter(is_active=True).exists()

    def snapshot(self) -> WorkerSnapshot:
        return WorkerSnapshot(
            id=self.id,
            rating=self.rating,
            category=self.category,
            has_payout_details=self.has_payout_details(),
        )


class PayoutDetails(models.Model):
    id                  = models.BigAutoField(primary_key=True)
    worker              = models.ForeignKey(
        WorkerProfile,
        on_delete=models.CASCADE,
        related_name="payout_details"
    )
    bank_name           = models.CharField(max_length=100)
    account_holder_name = models.CharField(max_length=100)
    account_number      = models.CharField(max_length=34)
    ifsc_code           = models.CharField(max_length=11)
    upi_id              = models.CharField(max_length=100, blank=True)
    is_active           = models.BooleanField(default=True)


class Task(models.Model):
    id              = models.BigAutoField(primary_key=True)
    title           = models.CharField(max_length=200)
    description     = models.TextField(blank=True)
    category        = models.CharField(max_length=50, blank=True)
    role_category   = models.CharField(max_length=50, default="General")
    required_rating = models.FloatField(default=1.0)
    max_workers     = models.PositiveIntegerField(default=1)
    assigned_count  = models.PositiveIntegerField(default=0)
    window_start    = models.TimeField(null=True, blank=True)
    window_end      = models.TimeField(null=True, blank=True)
    status          = models.CharField(
        max_length=16,
        choices=TaskStatus.choices,
        default=TaskStatus.ACTIVE,
        db_index=True
    )
    budget_per_slot = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    created_at      = models.DateTimeField(auto_now_add=True)
    reconciled_at   = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(max_workers__gte=1),
                name="task_max_workers_positive",
            ),
            models.CheckConstraint(
                condition=Q(required_rating__gte=0, required_rating__lte=5),
                name="task_required_rating_range",
            ),
        ]

    @property
    def has_window(self) -> bool:
        return self.window_start is not None and self.window_end is not None


class Assignment(models.Model):
    id         = models.BigAutoField(primary_key=True)
    task       = models.ForeignKey(
        Task,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    worker     = models.ForeignKey(
        WorkerProfile,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    status     = models.CharField(
        max_length=16,
        choices=AssignmentStatus.choices,
        default=AssignmentStatus.ASSIGNED
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            # Withdrawn rows stay as history; only one live claim per pair.
            models.UniqueConstraint(
                fields=["task", "worker"],
                condition=~Q(status="withdrawn"),
                name="unique_live_assignment",
            ),
        ]
        indexes = [
            models.Index(fields=["task", "status"], name="slots_assign_task_status_idx"),
            models.Index(fields=["worker", "status"], name="slots_assign_worker_status_idx"),
        ]
