"""
Claim eligibility rules.

Everything here is pure: the checks only look at the task row, the worker
snapshot and the clock they are given, so they can run on cached rows for
listing pages. Capacity and duplicate-claim answers from a cached row are
advisory; the slot ledger re-checks both inside its atomic claim.
"""
from datetime import datetime, time
from typing import Callable

from django.conf import settings
from django.db import models
from django.utils import timezone

from .models import TaskStatus, WorkerSnapshot
from .schemas import Eligibility


class DenialReason(models.TextChoices):
    TASK_NOT_ACTIVE           = "task_not_active", "This task is not accepting workers right now."
    RATING_TOO_LOW            = "rating_too_low", "Your rating is below the rating this task requires."
    OUTSIDE_ASSIGNMENT_WINDOW = "outside_assignment_window", "This task can only be claimed during its assignment window."
    CATEGORY_MISMATCH         = "category_mismatch", "This task is reserved for a different worker category."
    MISSING_PAYOUT_DETAILS    = "missing_payout_details", "Add your bank details before claiming tasks."
    CAPACITY_EXHAUSTED        = "capacity_exhausted", "All slots on this task are taken."
    ALREADY_CLAIMED           = "already_claimed", "You have already claimed a slot on this task."


def clock_time(now: datetime) -> time:
    """Time of day for `now`, in the configured time zone when `now` is aware."""
    if timezone.is_aware(now):
        now = timezone.localtime(now)
    return now.time().replace(tzinfo=None)


def within_window(start: time, end: time, moment: time) -> bool:
    """Inclusive window check; a window with start after end wraps past midnight."""
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end


def _task_active(task, worker, now, already_claimed):
    return task.status == TaskStatus.ACTIVE


def _rating_sufficient(task, worker, now, already_claimed):
    return worker.rating >= task.required_rating


def _inside_window(task, worker, now, already_claimed):
    if task.window_start is None or task.window_end is None:
        return True
    return within_window(task.window_start, task.window_end, clock_time(now))


def _category_matches(task, worker, now, already_claimed):
    wildcard = settings.SLOTS_WILDCARD_CATEGORY
    return task.role_category == wildcard or worker.category == task.role_category


def _payout_ready(task, worker, now, already_claimed):
    return worker.has_payout_details


def _has_capacity(task, worker, now, already_claimed):
    return task.assigned_count < task.max_workers


def _not_claimed(task, worker, now, already_claimed):
    return not already_claimed


Check = Callable[[object, WorkerSnapshot, datetime, bool], bool]

# Order matters: the first failing check is the reason reported.
CLAIM_CHECKS: list[tuple[DenialReason, Check]] = [
    (DenialReason.TASK_NOT_ACTIVE, _task_active),
    (DenialReason.RATING_TOO_LOW, _rating_sufficient),
    (DenialReason.OUTSIDE_ASSIGNMENT_WINDOW, _inside_window),
    (DenialReason.CATEGORY_MISMATCH, _category_matches),
    (DenialReason.MISSING_PAYOUT_DETAILS, _payout_ready),
    (DenialReason.CAPACITY_EXHAUSTED, _has_capacity),
    (DenialReason.ALREADY_CLAIMED, _not_claimed),
]

PRE_CLAIM_CHECKS = CLAIM_CHECKS[:5]


def first_denial(checks, task, worker: WorkerSnapshot, now: datetime,
                 already_claimed: bool = False) -> DenialReason | None:
    for reason, check in checks:
        if not check(task, worker, now, already_claimed):
            return reason
    return None


def denied(reason: DenialReason) -> Eligibility:
    return Eligibility(allowed=False, reason=reason.value, message=reason.label)


def can_claim(task, worker: WorkerSnapshot, now: datetime,
              already_claimed: bool = False) -> Eligibility:
    """
    Decide whether `worker` may claim a slot on `task` at `now`.

    `task` is any object carrying the Task fields (a model instance, possibly
    stale). `already_claimed` says whether the worker holds a live assignment
    on the task.
    """
    reason = first_denial(CLAIM_CHECKS, task, worker, now, already_claimed)
    if reason is not None:
        return denied(reason)
    return Eligibility(allowed=True)
