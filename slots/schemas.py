from datetime import datetime, time
from decimal import Decimal
from typing import Literal

from django.db import models
from ninja import Field, Schema


class ClaimError(models.TextChoices):
    CAPACITY_EXHAUSTED = "capacity_exhausted", "This task has no free slots left."
    ALREADY_CLAIMED    = "already_claimed", "You have already claimed a slot on this task."
    ELIGIBILITY_DENIED = "eligibility_denied", "You are not eligible to claim this task."
    TASK_NOT_FOUND     = "task_not_found", "Task not found."
    WORKER_NOT_FOUND   = "worker_not_found", "Worker profile not found."
    TRANSIENT_ERROR    = "transient_error", "The service is temporarily unavailable, refresh and try again."


class TaskStatusError(models.TextChoices):
    NOT_FOUND          = "not_found", "Task not found."
    INVALID_TRANSITION = "invalid_transition", "Completed or cancelled tasks cannot change status."


class ReleaseError(models.TextChoices):
    NOT_FOUND       = "not_found", "No active assignment to release."
    TRANSIENT_ERROR = "transient_error", "The service is temporarily unavailable, refresh and try again."


class ResizeError(models.TextChoices):
    NOT_FOUND        = "not_found", "Task not found."
    INVALID_CAPACITY = "invalid_capacity", "A task needs at least one slot."
    BELOW_ASSIGNED   = "below_assigned", "Capacity cannot drop below the number of claimed slots."


class TransitionError(models.TextChoices):
    NOT_FOUND          = "not_found", "Assignment not found."
    INVALID_TRANSITION = "invalid_transition", "This status change is not allowed."


class AssignmentSchema(Schema):
    """Single worker claim on a task slot."""
    id: int
    task_id: int
    worker_id: int
    status: str
    created_at: datetime


class AssigneeSchema(Schema):
    """Assignee row shown in a task's slot view."""
    assignment_id: int
    worker_id: int
    worker_name: str
    status: str
    created_at: datetime


class TaskSlotView(Schema):
    """Read-only view of a task's slots and its current assignees."""
    task_id: int
    assigned_count: int
    max_workers: int
    available: int
    assignees: list[AssigneeSchema]


class Eligibility(Schema):
    allowed: bool
    reason: str | None = None
    message: str | None = None


class TaskEligibilitySchema(Schema):
    """A task listed for a worker together with the eligibility verdict."""
    task_id: int
    title: str
    category: str
    role_category: str
    required_rating: float
    available: int
    allowed: bool
    reason: str | None = None
    message: str | None = None


class ClaimResult(Schema):
    ok: bool
    assignment: AssignmentSchema | None = None
    error: str | None = None
    reason: str | None = None
    message: str | None = None


class ReleaseResult(Schema):
    ok: bool
    error: str | None = None
    message: str | None = None


class DriftReport(Schema):
    """Outcome of comparing a task's counter against its live assignments."""
    task_id: int
    before: int
    after: int
    corrected: bool
    over_capacity: bool = False


class TaskCreateSchema(Schema):
    """Payload used by employers to post a task."""
    title: str
    description: str = ""
    category: str = ""
    role_category: str = "General"
    required_rating: float = Field(1.0, ge=0, le=5)
    max_workers: int = Field(1, ge=1)
    window_start: time | None = None
    window_end: time | None = None
    budget_per_slot: Decimal = Decimal("0")


class TaskOut(Schema):
    id: int
    title: str
    status: str
    category: str
    role_category: str
    required_rating: float
    max_workers: int
    assigned_count: int
    window_start: time | None = None
    window_end: time | None = None
    budget_per_slot: Decimal


class TaskStatusIn(Schema):
    status: Literal["active", "paused", "completed", "cancelled"]


class TaskStatusResult(Schema):
    ok: bool
    error: str | None = None
    message: str | None = None
    task: TaskOut | None = None


class CapacityIn(Schema):
    max_workers: int


class ResizeResult(Schema):
    ok: bool
    error: str | None = None
    message: str | None = None
    max_workers: int | None = None
    assigned_count: int | None = None


class AssignmentStatusIn(Schema):
    status: Literal["working", "submitted", "completed"]


class TransitionResult(Schema):
    ok: bool
    error: str | None = None
    message: str | None = None
    assignment: AssignmentSchema | None = None


class Message(Schema):
    detail: str
