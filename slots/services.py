import logging
from datetime import datetime

from django.conf import settings
from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from .eligibility import PRE_CLAIM_CHECKS, DenialReason, can_claim, first_denial
from .locks import KeyedLock
from .models import (
    TERMINAL_TASK_STATUSES, Assignment, AssignmentStatus, Task, TaskStatus, WorkerProfile, WorkerSnapshot,
)
from .schemas import (
    AssigneeSchema, AssignmentSchema, ClaimError, ClaimResult, DriftReport, ReleaseError,
    ReleaseResult, ResizeError, ResizeResult, TaskCreateSchema, TaskEligibilitySchema, TaskOut, TaskSlotView,
    TaskStatusError, TaskStatusResult, TransitionError, TransitionResult,
)

logger = logging.getLogger(__name__)

# Connectivity problems reported by the database driver.
TRANSIENT_ERRORS = (OperationalError, InterfaceError)


def to_assignment_schema(assignment: Assignment) -> AssignmentSchema:
    return AssignmentSchema(
        id=assignment.id,
        task_id=assignment.task_id,
        worker_id=assignment.worker_id,
        status=str(assignment.status),
        created_at=assignment.created_at,
    )


def live_assignments(task_id: int):
    """Assignments of a task that still hold a slot."""
    return Assignment.objects.filter(task_id=task_id).exclude(status=AssignmentStatus.WITHDRAWN)


class SlotLedgerService:
    """Service class for claiming and releasing task slots."""

    @staticmethod
    def _reserve_slot(task_id: int) -> int:
        """Take one slot in a single guarded UPDATE; returns the affected row count."""
        return Task.objects.filter(
            pk=task_id,
            status=TaskStatus.ACTIVE,
            assigned_count__lt=F("max_workers"),
        ).update(assigned_count=F("assigned_count") + 1)

    @staticmethod
    def _free_slot(task_id: int) -> int:
        return Task.objects.filter(
            pk=task_id,
            assigned_count__gt=0,
        ).update(assigned_count=F("assigned_count") - 1)

    @staticmethod
    def _holds_slot(task_id: int, worker_id: int) -> bool:
        return live_assignments(task_id).filter(worker_id=worker_id).exists()

    @staticmethod
    def _claim_failure(error: ClaimError, reason: DenialReason | None = None) -> ClaimResult:
        if reason is not None:
            return ClaimResult(ok=False, error=error.value, reason=reason.value, message=reason.label)
        return ClaimResult(ok=False, error=error.value, message=error.label)

    @classmethod
    def claim(cls, task_id: int, worker: WorkerSnapshot, now: datetime | None = None) -> ClaimResult:
        """
        Claim one slot on a task for a worker.

        Rating, window, category, payout and status rules are checked against
        the current row first. Capacity and duplicate claims are decided inside
        one transaction: the guarded counter increment and the assignment
        insert either both land or neither does.
        """
        now = now or timezone.now()
        try:
            return cls._claim(task_id, worker, now)
        except TRANSIENT_ERRORS:
            logger.exception("Storage failure while worker %s claimed task %s", worker.id, task_id)
            return cls._claim_failure(ClaimError.TRANSIENT_ERROR)

    @classmethod
    def _claim(cls, task_id: int, worker: WorkerSnapshot, now: datetime) -> ClaimResult:
        task = Task.objects.filter(pk=task_id).first()
        if task is None:
            return cls._claim_failure(ClaimError.TASK_NOT_FOUND)

        reason = first_denial(PRE_CLAIM_CHECKS, task, worker, now)
        if reason is not None:
            logger.info("Worker %s denied on task %s: %s", worker.id, task_id, reason.value)
            return cls._claim_failure(ClaimError.ELIGIBILITY_DENIED, reason)

        try:
            with transaction.atomic():
                reserved = cls._reserve_slot(task_id)
                if reserved:
                    assignment = Assignment.objects.create(task_id=task_id, worker_id=worker.id)
        except IntegrityError:
            # The increment rolled back with the failed insert.
            if cls._holds_slot(task_id, worker.id):
                logger.info("Worker %s already holds a slot on task %s", worker.id, task_id)
                return cls._claim_failure(ClaimError.ALREADY_CLAIMED)
            if not WorkerProfile.objects.filter(pk=worker.id).exists():
                logger.info("Worker %s no longer exists, claim on task %s dropped", worker.id, task_id)
                return cls._claim_failure(ClaimError.WORKER_NOT_FOUND)
            raise

        if not reserved:
            # The row may have left 'active' between the pre-check and the update.
            status = Task.objects.filter(pk=task_id).values_list("status", flat=True).first()
            if status is None:
                return cls._claim_failure(ClaimError.TASK_NOT_FOUND)
            if status != TaskStatus.ACTIVE:
                return cls._claim_failure(ClaimError.ELIGIBILITY_DENIED, DenialReason.TASK_NOT_ACTIVE)
            # A worker holding one of the slots of a full task is told so, not that it is full.
            if cls._holds_slot(task_id, worker.id):
                logger.info("Worker %s already holds a slot on full task %s", worker.id, task_id)
                return cls._claim_failure(ClaimError.ALREADY_CLAIMED)
            logger.info("Task %s is full, worker %s turned away", task_id, worker.id)
            return cls._claim_failure(ClaimError.CAPACITY_EXHAUSTED)

        logger.info("Worker %s claimed task %s (assignment %s)", worker.id, task_id, assignment.id)
        return ClaimResult(ok=True, assignment=to_assignment_schema(assignment))

    @classmethod
    def release(cls, task_id: int, worker_id: int) -> ReleaseResult:
        """Withdraw the worker's live assignment and give its slot back."""
        try:
            with transaction.atomic():
                withdrawn = live_assignments(task_id).filter(worker_id=worker_id).update(
                    status=AssignmentStatus.WITHDRAWN,
                    updated_at=timezone.now(),
                )
                if withdrawn:
                    cls._free_slot(task_id)
        except TRANSIENT_ERRORS:
            logger.exception("Storage failure while worker %s released task %s", worker_id, task_id)
            return ReleaseResult(
                ok=False,
                error=ReleaseError.TRANSIENT_ERROR.value,
                message=ReleaseError.TRANSIENT_ERROR.label,
            )

        if not withdrawn:
            return ReleaseResult(ok=False, error=ReleaseError.NOT_FOUND.value, message=ReleaseError.NOT_FOUND.label)

        logger.info("Worker %s released task %s", worker_id, task_id)
        return ReleaseResult(ok=True)

    @staticmethod
    def snapshot(task_id: int) -> TaskSlotView | None:
        """Current counter, capacity and live assignees of a task."""
        task = Task.objects.filter(pk=task_id).first()
        if task is None:
            return None

        assignees = [
            AssigneeSchema(
                assignment_id=a.id,
                worker_id=a.worker_id,
                worker_name=a.worker.name,
                status=str(a.status),
                created_at=a.created_at,
            )
            for a in live_assignments(task_id).select_related("worker").order_by("created_at", "id")
        ]

        return TaskSlotView(
            task_id=task.id,
            assigned_count=task.assigned_count,
            max_workers=task.max_workers,
            available=max(task.max_workers - task.assigned_count, 0),
            assignees=assignees,
        )

    @staticmethod
    def list_claimable(worker: WorkerSnapshot, now: datetime | None = None,
                       only_allowed: bool = False) -> list[TaskEligibilitySchema]:
        """
        Active tasks with the eligibility verdict for one worker.

        Built from the rows as read here, so the verdicts are only a preview of
        what `claim` will decide.
        """
        now = now or timezone.now()
        claimed = set(
            Assignment.objects.filter(worker_id=worker.id)
            .exclude(status=AssignmentStatus.WITHDRAWN)
            .values_list("task_id", flat=True)
        )

        rows = []
        for task in Task.objects.filter(status=TaskStatus.ACTIVE).order_by("-created_at", "-id"):
            verdict = can_claim(task, worker, now, already_claimed=task.id in claimed)
            if only_allowed and not verdict.allowed:
                continue
            rows.append(TaskEligibilitySchema(
                task_id=task.id,
                title=task.title,
                category=task.category,
                role_category=task.role_category,
                required_rating=task.required_rating,
                available=max(task.max_workers - task.assigned_count, 0),
                allowed=verdict.allowed,
                reason=verdict.reason,
                message=verdict.message,
            ))
        return rows


class AssignmentReconcilerService:
    """Service class that repairs drift between slot counters and assignments."""

    _locks = KeyedLock()

    @classmethod
    def reconcile(cls, task_id: int) -> DriftReport | None:
        """
        Overwrite a task's counter with its live assignment count.

        Runs under a per-task lock and a row lock, so two repairs of the same
        task never interleave while different tasks proceed independently.
        """
        with cls._locks.hold(task_id), transaction.atomic():
            task = Task.objects.select_for_update().filter(pk=task_id).first()
            if task is None:
                return None

            before = task.assigned_count
            after = live_assignments(task_id).count()
            corrected = before != after

            fields = {"reconciled_at": timezone.now()}
            if corrected:
                fields["assigned_count"] = after
            Task.objects.filter(pk=task_id).update(**fields)

        over_capacity = after > task.max_workers
        if corrected:
            logger.warning("Corrected slot drift on task %s: %s -> %s", task_id, before, after)
        if over_capacity:
            logger.warning(
                "Task %s holds %s live assignments for %s slots", task_id, after, task.max_workers
            )

        return DriftReport(
            task_id=task_id,
            before=before,
            after=after,
            corrected=corrected,
            over_capacity=over_capacity,
        )

    @classmethod
    def reconcile_many(cls, task_ids=None) -> list[DriftReport]:
        """Sweep the given tasks, or every task that is not completed or cancelled."""
        if task_ids is None:
            task_ids = list(
                Task.objects.exclude(status__in=TERMINAL_TASK_STATUSES)
                .order_by("id")
                .values_list("id", flat=True)
            )

        reports = []
        for task_id in task_ids:
            try:
                report = cls.reconcile(task_id)
            except TRANSIENT_ERRORS:
                logger.exception("Storage failure while reconciling task %s", task_id)
                continue
            if report is not None:
                reports.append(report)

        drifted = sum(1 for r in reports if r.corrected)
        logger.info("Reconciled %s tasks, %s corrected", len(reports), drifted)
        return reports

    @classmethod
    def reconcile_if_idle(cls, task_id: int, idle_seconds: float) -> DriftReport | None:
        """Repair a task when a client comes back to it after a long idle period."""
        if idle_seconds < settings.SLOTS_RECONCILE_IDLE_SECONDS:
            return None
        return cls.reconcile(task_id)


class TaskAdminService:
    """Service class for employer and admin operations on tasks and assignments."""

    # Forward-only progress; withdrawal goes through SlotLedgerService.release.
    TRANSITIONS = {
        AssignmentStatus.WORKING.value: (AssignmentStatus.ASSIGNED.value,),
        AssignmentStatus.SUBMITTED.value: (AssignmentStatus.ASSIGNED.value, AssignmentStatus.WORKING.value),
        AssignmentStatus.COMPLETED.value: (AssignmentStatus.SUBMITTED.value,),
    }

    @staticmethod
    def create_task(payload: TaskCreateSchema) -> Task:
        task = Task.objects.create(
            **payload.model_dump(),
            status=TaskStatus.ACTIVE.value,
            assigned_count=0,
        )
        logger.info("Created task %s with %s slots", task.id, task.max_workers)
        return task

    @staticmethod
    def set_status(task_id: int, status: str) -> TaskStatusResult:
        """Move a task between statuses; completed and cancelled are final."""
        updated = Task.objects.filter(pk=task_id).exclude(
            status__in=TERMINAL_TASK_STATUSES,
        ).update(status=status)

        task = Task.objects.filter(pk=task_id).first()
        if task is None:
            return TaskStatusResult(
                ok=False,
                error=TaskStatusError.NOT_FOUND.value,
                message=TaskStatusError.NOT_FOUND.label,
            )
        if not updated:
            logger.info("Task %s is %s, refused move to %s", task_id, task.status, status)
            return TaskStatusResult(
                ok=False,
                error=TaskStatusError.INVALID_TRANSITION.value,
                message=TaskStatusError.INVALID_TRANSITION.label,
                task=TaskOut.from_orm(task),
            )

        logger.info("Task %s moved to %s", task_id, status)
        return TaskStatusResult(ok=True, task=TaskOut.from_orm(task))

    @staticmethod
    def resize(task_id: int, max_workers: int) -> ResizeResult:
        """
        Change a task's capacity.

        Lowering capacity below the slots already claimed is refused; live
        assignments have to be released first.
        """
        if max_workers < 1:
            return ResizeResult(
                ok=False,
                error=ResizeError.INVALID_CAPACITY.value,
                message=ResizeError.INVALID_CAPACITY.label,
            )

        updated = Task.objects.filter(
            pk=task_id,
            assigned_count__lte=max_workers,
        ).update(max_workers=max_workers)

        task = Task.objects.filter(pk=task_id).first()
        if task is None:
            return ResizeResult(ok=False, error=ResizeError.NOT_FOUND.value, message=ResizeError.NOT_FOUND.label)
        if not updated:
            return ResizeResult(
                ok=False,
                error=ResizeError.BELOW_ASSIGNED.value,
                message=ResizeError.BELOW_ASSIGNED.label,
                max_workers=task.max_workers,
                assigned_count=task.assigned_count,
            )

        logger.info("Task %s resized to %s slots", task_id, max_workers)
        return ResizeResult(ok=True, max_workers=task.max_workers, assigned_count=task.assigned_count)

    @classmethod
    def advance(cls, assignment_id: int, status: str) -> TransitionResult:
        """Move an assignment forward through assigned, working, submitted, completed."""
        sources = cls.TRANSITIONS.get(status, ())
        updated = 0
        if sources:
            updated = Assignment.objects.filter(pk=assignment_id, status__in=sources).update(
                status=status,
                updated_at=timezone.now(),
            )

        assignment = Assignment.objects.filter(pk=assignment_id).first()
        if assignment is None:
            return TransitionResult(
                ok=False,
                error=TransitionError.NOT_FOUND.value,
                message=TransitionError.NOT_FOUND.label,
            )
        if not updated:
            return TransitionResult(
                ok=False,
                error=TransitionError.INVALID_TRANSITION.value,
                message=TransitionError.INVALID_TRANSITION.label,
                assignment=to_assignment_schema(assignment),
            )
        return TransitionResult(ok=True, assignment=to_assignment_schema(assignment))
