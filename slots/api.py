import logging

from django.db import InterfaceError, OperationalError
from django.http import HttpRequest
from ninja import NinjaAPI, Swagger
from ninja.security import APIKeyHeader

from .models import WorkerProfile, WorkerSnapshot
from .schemas import (
    AssignmentStatusIn, CapacityIn, ClaimError, ClaimResult, DriftReport, Message, ReleaseError, ReleaseResult,
    ResizeError, ResizeResult, TaskCreateSchema, TaskEligibilitySchema, TaskOut, TaskSlotView, TaskStatusError,
    TaskStatusIn, TaskStatusResult, TransitionError, TransitionResult,
)
from .services import AssignmentReconcilerService, SlotLedgerService, TaskAdminService

logger = logging.getLogger(__name__)

api = NinjaAPI(docs=Swagger(settings={"persistAuthorization": True}))


class WorkerKey(APIKeyHeader):
    """Resolves the calling worker from the X-Worker-Id header."""
    param_name = "X-Worker-Id"

    def authenticate(self, request: HttpRequest, key: str | None) -> WorkerSnapshot | None:
        if not key or not key.isdigit():
            return None
        worker = WorkerProfile.objects.filter(pk=int(key)).first()
        if worker is None:
            return None
        return worker.snapshot()


worker_auth = WorkerKey()

CLAIM_STATUS = {
    ClaimError.ELIGIBILITY_DENIED.value: 403,
    ClaimError.TASK_NOT_FOUND.value: 404,
    ClaimError.WORKER_NOT_FOUND.value: 404,
    ClaimError.CAPACITY_EXHAUSTED.value: 409,
    ClaimError.ALREADY_CLAIMED.value: 409,
    ClaimError.TRANSIENT_ERROR.value: 503,
}

RELEASE_STATUS = {
    ReleaseError.NOT_FOUND.value: 404,
    ReleaseError.TRANSIENT_ERROR.value: 503,
}

TASK_STATUS = {
    TaskStatusError.NOT_FOUND.value: 404,
    TaskStatusError.INVALID_TRANSITION.value: 409,
}

RESIZE_STATUS = {
    ResizeError.NOT_FOUND.value: 404,
    ResizeError.INVALID_CAPACITY.value: 422,
    ResizeError.BELOW_ASSIGNED.value: 409,
}

TRANSITION_STATUS = {
    TransitionError.NOT_FOUND.value: 404,
    TransitionError.INVALID_TRANSITION.value: 409,
}


@api.exception_handler(OperationalError)
@api.exception_handler(InterfaceError)
def storage_unavailable(request: HttpRequest, exc: Exception):
    logger.exception("Storage failure on %s", request.path)
    return api.create_response(request, {"detail": "Storage temporarily unavailable"}, status=503)


@api.get("/tasks/{task_id}/slots", response={200: TaskSlotView, 404: Message})
def get_task_slots(request: HttpRequest, task_id: int):
    """Slot counter, capacity and live assignees of a task."""
    view = SlotLedgerService.snapshot(task_id)
    if view is None:
        return 404, {"detail": "Task not found"}
    return view


@api.post("/tasks/{task_id}/claim", response={200: ClaimResult, 403: ClaimResult, 404: ClaimResult,
                                              409: ClaimResult, 503: ClaimResult}, auth=worker_auth)
def claim_task(request: HttpRequest, task_id: int):
    """
    Claim one slot on a task for the calling worker.

    Failures come back with `error` set and, for eligibility denials, the
    `reason` and a message that can be shown to the worker as is:
    - 403 eligibility_denied
    - 404 task_not_found, or worker_not_found when the profile was removed mid-claim
    - 409 capacity_exhausted or already_claimed
    - 503 transient_error; fetch the slots again before retrying
    """
    result = SlotLedgerService.claim(task_id, request.auth)
    if result.ok:
        return result
    return CLAIM_STATUS[result.error], result


@api.post("/tasks/{task_id}/release", response={200: ReleaseResult, 404: ReleaseResult, 503: ReleaseResult},
          auth=worker_auth)
def release_task(request: HttpRequest, task_id: int):
    """Withdraw the calling worker from a task and free the slot."""
    result = SlotLedgerService.release(task_id, request.auth.id)
    if result.ok:
        return result
    return RELEASE_STATUS[result.error], result


@api.post("/tasks/{task_id}/observe", response={200: TaskSlotView, 404: Message})
def observe_task(request: HttpRequest, task_id: int, idle_seconds: float = 0):
    """
    Slot view for a client that is showing the task again.

    Clients send how long the task was out of view; past the configured idle
    threshold the counter is reconciled before the view is built.
    """
    AssignmentReconcilerService.reconcile_if_idle(task_id, idle_seconds)
    view = SlotLedgerService.snapshot(task_id)
    if view is None:
        return 404, {"detail": "Task not found"}
    return view


@api.post("/tasks/{task_id}/reconcile", response={200: DriftReport, 404: Message})
def reconcile_task(request: HttpRequest, task_id: int):
    """Recount live assignments and repair the task's slot counter."""
    report = AssignmentReconcilerService.reconcile(task_id)
    if report is None:
        return 404, {"detail": "Task not found"}
    return report


@api.get("/workers/me/claimable", response=list[TaskEligibilitySchema], auth=worker_auth)
def list_claimable_tasks(request: HttpRequest, only_allowed: bool = False):
    """Active tasks with the calling worker's eligibility for each."""
    return SlotLedgerService.list_claimable(request.auth, only_allowed=only_allowed)


@api.post("/tasks", response={201: TaskOut})
def create_task(request: HttpRequest, payload: TaskCreateSchema):
    """Post a new task; it starts active with no slots taken."""
    return 201, TaskAdminService.create_task(payload)


@api.post("/tasks/{task_id}/status", response={200: TaskStatusResult, 404: TaskStatusResult, 409: TaskStatusResult})
def set_task_status(request: HttpRequest, task_id: int, payload: TaskStatusIn):
    """
    Pause, resume, complete or cancel a task.

    Only active tasks take new claims. Completed and cancelled are final: a
    later change is refused with 409 invalid_transition and the task as it
    stands. Existing assignments are left untouched either way.
    """
    result = TaskAdminService.set_status(task_id, payload.status)
    if result.ok:
        return result
    return TASK_STATUS[result.error], result


@api.post("/tasks/{task_id}/capacity", response={200: ResizeResult, 404: ResizeResult, 409: ResizeResult,
                                                 422: ResizeResult})
def resize_task(request: HttpRequest, task_id: int, payload: CapacityIn):
    """Change how many workers a task accepts; never below the slots already claimed."""
    result = TaskAdminService.resize(task_id, payload.max_workers)
    if result.ok:
        return result
    return RESIZE_STATUS[result.error], result


@api.post("/assignments/{assignment_id}/status", response={200: TransitionResult, 404: TransitionResult,
                                                           409: TransitionResult})
def advance_assignment(request: HttpRequest, assignment_id: int, payload: AssignmentStatusIn):
    """
    Move an assignment forward: assigned -> working -> submitted -> completed.

    Submitting straight from assigned is allowed. Other skips, backward moves
    and changes to withdrawn assignments return 409 invalid_transition;
    withdrawing goes through the release endpoint so the slot is freed.
    """
    result = TaskAdminService.advance(assignment_id, payload.status)
    if result.ok:
        return result
    return TRANSITION_STATUS[result.error], result
