"""Task intake, applications, and the tasker selection transaction."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any, cast

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.task_store import (
    DuplicateApplicationError,
    DuplicateTaskError,
    SelectionConflictError,
)
from task_market_service.services.validation import (
    MAX_NOTE_LENGTH,
    TASK_AREAS,
    TASK_CATEGORIES,
    check_in_future,
    check_payment_range,
    check_time_window,
    now_iso,
    now_utc,
    parse_iso,
    require_amount,
    require_datetime,
    require_text,
    to_iso,
    validate_new_task,
)
from task_market_service.services.visibility import require_application_list, require_view

if TYPE_CHECKING:
    import logging
    from datetime import datetime

    from task_market_service.clients.notification_client import NotificationClient
    from task_market_service.services.actors import Actor
    from task_market_service.services.task_store import TaskStore

_VALID_STATUSES = frozenset({"active", "scheduled", "completed", "cancelled"})
_VALID_APPLICATION_STATUSES = frozenset({"pending", "confirmed", "rejected"})

# One retry after a detected write conflict, then CONFLICT
_SELECTION_ATTEMPTS = 2


def _require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise ServiceError("UNAUTHENTICATED", "Authentication required", 401, {})
    return actor


def _application_to_response(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "application_id": row["application_id"],
        "task_id": row["task_id"],
        "tasker_id": row["tasker_id"],
        "proposed_payment": row["proposed_payment"],
        "note": row["note"],
        "estimated_duration_hours": row["estimated_duration_hours"],
        "available_start_date": row["available_start_date"],
        "available_end_date": row["available_end_date"],
        "status": row["status"],
        "confirmed_by_tasker": row["confirmed_by_tasker"],
        "confirmed_time": row["confirmed_time"],
        "confirmed_payment": row["confirmed_payment"],
        "created_at": row["created_at"],
    }


def task_to_response(row: dict[str, Any]) -> dict[str, Any]:
    """Convert a task row to the full response dict."""
    return {
        "task_id": row["task_id"],
        "customer_id": row["customer_id"],
        "title": row["title"],
        "description": row["description"],
        "category": row["category"],
        "area": row["area"],
        "min_payment": row["min_payment"],
        "max_payment": row["max_payment"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "status": row["status"],
        "is_targeted": row["is_targeted"],
        "targeted_tasker_id": row["targeted_tasker_id"],
        "selected_tasker_id": row["selected_tasker_id"],
        "agreed_payment": row["agreed_payment"],
        "agreed_time": row["agreed_time"],
        "selected_at": row["selected_at"],
        "advance_payment": row["advance_payment"],
        "advance_payment_status": row["advance_payment_status"],
        "advance_payment_date": row["advance_payment_date"],
        "advance_payment_released_at": row["advance_payment_released_at"],
        "payment_id": row["payment_id"],
        "tasker_confirmed": row["tasker_confirmed"],
        "tasker_completed_at": row["tasker_completed_at"],
        "customer_completed_at": row["customer_completed_at"],
        "completion_photos": list(row["completion_photos"]),
        "completion_notes": row["completion_notes"],
        "customer_rating": row["customer_rating"],
        "customer_review": row["customer_review"],
        "tasker_rating_for_customer": row["tasker_rating_for_customer"],
        "tasker_feedback": row["tasker_feedback"],
        "cancellation_reason": row["cancellation_reason"],
        "cancelled_by": row["cancelled_by"],
        "cancelled_at": row["cancelled_at"],
        "completed_at": row["completed_at"],
        "created_at": row["created_at"],
    }


def _task_to_summary(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "task_id": row["task_id"],
        "customer_id": row["customer_id"],
        "title": row["title"],
        "category": row["category"],
        "area": row["area"],
        "min_payment": row["min_payment"],
        "max_payment": row["max_payment"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "status": row["status"],
        "is_targeted": row["is_targeted"],
        "created_at": row["created_at"],
    }


class MatchingEngine:
    """
    Runs the matching cycle of a task: creation, applications, the tasker's
    time/payment confirmation, and the customer's selection.

    Selection is a single store transaction: the task is assigned, the
    winning application is confirmed, and every sibling pending application
    is rejected, or nothing changes at all. The task stays active until the
    advance payment lands.
    """

    def __init__(
        self,
        store: TaskStore,
        notification_client: NotificationClient,
        time_tolerance_seconds: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._notification_client = notification_client
        self._time_tolerance = timedelta(seconds=time_tolerance_seconds)
        self._logger = logger if logger is not None else get_logger(__name__)

    def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return task

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(self, actor: Actor | None, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Post a new task.

        Error precedence:
        1. UNAUTHENTICATED
        2. FORBIDDEN - caller is not a customer
        3. INVALID_PAYLOAD / OUT_OF_RANGE - field validation
        4. FORBIDDEN - customer targets themself
        """
        caller = _require_actor(actor)
        if not caller.is_customer:
            raise ServiceError("FORBIDDEN", "Only customers can post tasks", 403, {})

        fields = validate_new_task(payload, caller.subject_id, now_utc())
        task_id = f"task-{uuid.uuid4()}"

        try:
            self._store.insert_task(
                {
                    "task_id": task_id,
                    "customer_id": caller.subject_id,
                    **fields,
                    "status": "active",
                    "selected_tasker_id": None,
                    "agreed_payment": None,
                    "agreed_time": None,
                    "selected_at": None,
                    "advance_payment": None,
                    "advance_payment_status": None,
                    "advance_payment_date": None,
                    "advance_payment_released_at": None,
                    "payment_id": None,
                    "tasker_confirmed": 0,
                    "tasker_completed_at": None,
                    "customer_completed_at": None,
                    "completion_photos": [],
                    "completion_notes": None,
                    "customer_rating": None,
                    "customer_review": None,
                    "tasker_rating_for_customer": None,
                    "tasker_feedback": None,
                    "cancellation_reason": None,
                    "cancelled_by": None,
                    "cancelled_at": None,
                    "completed_at": None,
                    "created_at": now_iso(),
                }
            )
        except DuplicateTaskError as exc:
            raise ServiceError("CONFLICT", "Task already exists", 409, {}) from exc

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "customer_id": caller.subject_id,
                "is_targeted": bool(fields["is_targeted"]),
            },
        )
        return task_to_response(self._load_task(task_id))

    async def get_task(self, actor: Actor | None, task_id: str) -> dict[str, Any]:
        """
        Get a single task as seen by actor.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHENTICATED, FORBIDDEN
        """
        task = self._load_task(task_id)
        applications = self._store.get_applications_for_task(task_id)
        require_view(task, applications, actor)
        response = task_to_response(task)
        response["application_count"] = len(applications)
        return response

    async def list_tasks(
        self,
        actor: Actor | None,
        category: str | None,
        area: str | None,
        min_payment: int | None,
        max_payment: int | None,
        offset: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        """
        List active tasks that still accept applications. All filters use AND logic.

        Targeted tasks only appear for their customer and targeted tasker.
        """
        if category is not None and category not in TASK_CATEGORIES:
            raise ServiceError("INVALID_PAYLOAD", "Invalid category filter", 400, {})
        if area is not None and area not in TASK_AREAS:
            raise ServiceError("INVALID_PAYLOAD", "Invalid area filter", 400, {})
        if min_payment is not None and max_payment is not None and min_payment > max_payment:
            raise ServiceError(
                "OUT_OF_RANGE",
                "min_payment filter must not exceed max_payment filter",
                400,
                {},
            )

        rows = self._store.list_open_tasks(
            viewer_id=actor.subject_id if actor is not None else None,
            starts_after=now_iso(),
            category=category,
            area=area,
            min_payment=min_payment,
            max_payment=max_payment,
            limit=limit,
            offset=offset,
        )
        return [_task_to_summary(row) for row in rows]

    async def list_my_tasks(self, actor: Actor | None, status: str | None) -> list[dict[str, Any]]:
        """
        Customers get the tasks they posted; taskers get the tasks they
        were selected for or targeted by.
        """
        caller = _require_actor(actor)
        if status is not None and status not in _VALID_STATUSES:
            raise ServiceError("INVALID_PAYLOAD", f"Invalid status filter: {status}", 400, {})

        if caller.is_customer:
            rows = self._store.list_tasks_for_customer(caller.subject_id, status)
        elif caller.is_tasker:
            rows = self._store.list_tasks_for_tasker(caller.subject_id, status)
        else:
            raise ServiceError("FORBIDDEN", "Only customers and taskers have tasks", 403, {})
        return [_task_to_summary(row) for row in rows]

    async def cancel_task(
        self,
        actor: Actor | None,
        task_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """
        Cancel an active task. Only the customer may cancel.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - not the customer
        4. INVALID_STATE - not active
        """
        caller = _require_actor(actor)
        task = self._load_task(task_id)
        if caller.subject_id != task["customer_id"]:
            raise ServiceError("FORBIDDEN", "Only the customer can cancel this task", 403, {})
        if task["status"] != "active":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot cancel task in '{task['status']}' status, must be 'active'",
                409,
                {},
            )
        cancellation_reason = require_text(reason, "reason", MAX_NOTE_LENGTH, required=False)

        updated_rows = self._store.update_task(
            task_id,
            {
                "status": "cancelled",
                "cancellation_reason": cancellation_reason,
                "cancelled_by": caller.subject_id,
                "cancelled_at": now_iso(),
            },
            expected_status="active",
        )
        if updated_rows == 0:
            raise ServiceError("INVALID_STATE", "Task is no longer active", 409, {})

        self._logger.info("Task cancelled", extra={"task_id": task_id})
        return task_to_response(self._load_task(task_id))

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_status": self._store.count_tasks_by_status(),
        }

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    async def apply(
        self,
        actor: Actor | None,
        task_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Submit a tasker's application to a task.

        Error precedence:
        1. UNAUTHENTICATED
        2. FORBIDDEN - caller is not a tasker
        3. TASK_NOT_FOUND
        4. FORBIDDEN - own task, or a task targeted at someone else
        5. INVALID_STATE - task not active or already started
        6. CONFLICT - tasker already applied
        7. INVALID_PAYLOAD / OUT_OF_RANGE - proposed_payment
        """
        caller = _require_actor(actor)
        if not caller.is_tasker:
            raise ServiceError("FORBIDDEN", "Only taskers can apply for tasks", 403, {})

        task = self._load_task(task_id)
        if caller.subject_id == task["customer_id"]:
            raise ServiceError("FORBIDDEN", "Cannot apply to your own task", 403, {})
        if task["is_targeted"] and caller.subject_id != task["targeted_tasker_id"]:
            raise ServiceError(
                "FORBIDDEN",
                "This task is only available to a specific tasker",
                403,
                {},
            )
        if task["status"] != "active":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot apply to task in '{task['status']}' status, must be 'active'",
                409,
                {},
            )
        if parse_iso(task["start_date"]) <= now_utc():
            raise ServiceError(
                "INVALID_STATE",
                "Cannot apply to a task whose start date has passed",
                409,
                {},
            )
        if self._store.get_application_for_tasker(task_id, caller.subject_id) is not None:
            raise ServiceError("CONFLICT", "You have already applied for this task", 409, {})

        proposed_payment = require_amount(payload.get("proposed_payment"), "proposed_payment")
        check_payment_range(proposed_payment, task, "proposed_payment")

        note = require_text(payload.get("note"), "note", MAX_NOTE_LENGTH, required=False)
        duration: object = payload.get("estimated_duration_hours")
        if duration is not None and (
            isinstance(duration, bool) or not isinstance(duration, int | float) or duration <= 0
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "estimated_duration_hours must be a positive number",
                400,
                {"field": "estimated_duration_hours"},
            )
        available_start = payload.get("available_start_date")
        available_end = payload.get("available_end_date")

        application = self._new_application(
            task_id,
            caller.subject_id,
            proposed_payment,
            note=note,
            estimated_duration_hours=cast("float | None", duration),
            available_start_date=(
                to_iso(require_datetime(available_start, "available_start_date"))
                if available_start is not None
                else None
            ),
            available_end_date=(
                to_iso(require_datetime(available_end, "available_end_date"))
                if available_end is not None
                else None
            ),
        )
        try:
            self._store.insert_application(application)
        except DuplicateApplicationError as exc:
            raise ServiceError(
                "CONFLICT",
                "You have already applied for this task",
                409,
                {},
            ) from exc

        self._logger.info(
            "Application submitted",
            extra={
                "task_id": task_id,
                "application_id": application["application_id"],
                "tasker_id": caller.subject_id,
            },
        )
        return _application_to_response(application)

    @staticmethod
    def _new_application(
        task_id: str,
        tasker_id: str,
        proposed_payment: int,
        *,
        note: str | None = None,
        estimated_duration_hours: float | None = None,
        available_start_date: str | None = None,
        available_end_date: str | None = None,
    ) -> dict[str, Any]:
        return {
            "application_id": f"app-{uuid.uuid4()}",
            "task_id": task_id,
            "tasker_id": tasker_id,
            "proposed_payment": proposed_payment,
            "note": note,
            "estimated_duration_hours": estimated_duration_hours,
            "available_start_date": available_start_date,
            "available_end_date": available_end_date,
            "status": "pending",
            "confirmed_by_tasker": False,
            "confirmed_time": None,
            "confirmed_payment": None,
            "created_at": now_iso(),
        }

    async def list_applications(
        self,
        actor: Actor | None,
        task_id: str,
        status: str | None,
    ) -> dict[str, Any]:
        """
        List a task's applications.

        While the task is active only the customer may list them; later the
        selected tasker may too.
        """
        task = self._load_task(task_id)
        require_application_list(task, actor)
        if status is not None and status not in _VALID_APPLICATION_STATUSES:
            raise ServiceError("INVALID_PAYLOAD", f"Invalid status filter: {status}", 400, {})

        applications = [
            _application_to_response(row)
            for row in self._store.get_applications_for_task(task_id, status)
        ]
        return {"task_id": task_id, "applications": applications}

    async def list_my_applications(
        self,
        actor: Actor | None,
        status: str | None,
    ) -> list[dict[str, Any]]:
        """List the calling tasker's own applications."""
        caller = _require_actor(actor)
        if not caller.is_tasker:
            raise ServiceError("FORBIDDEN", "Only taskers have applications", 403, {})
        if status is not None and status not in _VALID_APPLICATION_STATUSES:
            raise ServiceError("INVALID_PAYLOAD", f"Invalid status filter: {status}", 400, {})
        return [
            _application_to_response(row)
            for row in self._store.get_applications_for_tasker(caller.subject_id, status)
        ]

    async def confirm_time(
        self,
        actor: Actor | None,
        task_id: str,
        application_id: str | None,
        confirmed_time: object,
        confirmed_payment: object,
    ) -> dict[str, Any]:
        """
        Record the tasker's binding time and payment for their application.

        When application_id is None the caller's own application on the task
        is used. On a targeted task the targeted tasker may confirm without
        having applied: a pending application is created on the fly.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. APPLICATION_NOT_FOUND / FORBIDDEN - not the application's tasker
        4. INVALID_STATE - task not active or application not pending
        5. INVALID_PAYLOAD / OUT_OF_RANGE - payment range, time window, past time
        6. ALREADY_CONFIRMED
        """
        caller = _require_actor(actor)
        task = self._load_task(task_id)

        if application_id is not None:
            application = self._store.get_application(application_id)
            if application is None or application["task_id"] != task_id:
                raise ServiceError("APPLICATION_NOT_FOUND", "Application not found", 404, {})
            if application["tasker_id"] != caller.subject_id:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the applicant can confirm this application",
                    403,
                    {},
                )
        else:
            application = self._store.get_application_for_tasker(task_id, caller.subject_id)

        direct_hire = (
            application is None
            and task["is_targeted"]
            and caller.subject_id == task["targeted_tasker_id"]
        )
        if application is None and not direct_hire:
            raise ServiceError("APPLICATION_NOT_FOUND", "Application not found", 404, {})

        if task["status"] != "active":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot confirm time for task in '{task['status']}' status, must be 'active'",
                409,
                {},
            )
        if application is not None and application["status"] != "pending":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot confirm an application in '{application['status']}' status",
                409,
                {},
            )

        payment = require_amount(confirmed_payment, "confirmed_payment")
        check_payment_range(payment, task, "confirmed_payment")
        moment = require_datetime(confirmed_time, "confirmed_time")
        check_time_window(moment, task, "confirmed_time")
        check_in_future(moment, now_utc(), "confirmed_time")

        if application is not None and application["confirmed_by_tasker"]:
            raise ServiceError(
                "ALREADY_CONFIRMED",
                "Time and payment were already confirmed for this application",
                409,
                {},
            )

        if application is None:
            application = await self._create_direct_hire_application(task_id, caller, payment)

        updated_rows = self._store.confirm_application_terms(
            application["application_id"],
            to_iso(moment),
            payment,
        )
        if updated_rows == 0:
            current = self._store.get_application(application["application_id"])
            if current is not None and current["confirmed_by_tasker"]:
                raise ServiceError(
                    "ALREADY_CONFIRMED",
                    "Time and payment were already confirmed for this application",
                    409,
                    {},
                )
            raise ServiceError("INVALID_STATE", "Application is no longer pending", 409, {})

        self._logger.info(
            "Application terms confirmed",
            extra={
                "task_id": task_id,
                "application_id": application["application_id"],
                "direct_hire": direct_hire,
            },
        )
        confirmed = self._store.get_application(application["application_id"])
        if confirmed is None:
            msg = f"Application {application['application_id']} not found after update"
            raise RuntimeError(msg)
        return _application_to_response(confirmed)

    async def _create_direct_hire_application(
        self,
        task_id: str,
        caller: Actor,
        payment: int,
    ) -> dict[str, Any]:
        application = self._new_application(task_id, caller.subject_id, payment)
        try:
            self._store.insert_application(application)
        except DuplicateApplicationError:
            # Lost a race with the tasker's own concurrent request
            existing = self._store.get_application_for_tasker(task_id, caller.subject_id)
            if existing is None:
                raise
            return existing
        return application

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_tasker(
        self,
        actor: Actor | None,
        task_id: str,
        tasker_id: str,
        agreed_time: object,
        agreed_payment: object,
    ) -> dict[str, Any]:
        """
        Select one tasker for the task.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - caller is not the customer
        4. INVALID_STATE - task not active, already assigned, or no pending
           application confirmed by the tasker
        5. MISMATCH - agreed_time differs from the confirmed time beyond tolerance
        6. OUT_OF_RANGE - agreed_time outside the task window
        7. OUT_OF_RANGE - agreed_payment outside the payment range
        8. MISMATCH - agreed_payment differs from the confirmed payment
        9. CONFLICT - a concurrent write won twice in a row
        """
        caller = _require_actor(actor)
        moment = require_datetime(agreed_time, "agreed_time")
        payment = require_amount(agreed_payment, "agreed_payment")

        rejected: list[dict[str, Any]] = []
        application: dict[str, Any] = {}
        for attempt in range(1, _SELECTION_ATTEMPTS + 1):
            application = self._check_selection(caller, task_id, tasker_id, moment, payment)
            try:
                rejected = self._store.select_application(
                    task_id,
                    application["application_id"],
                    {
                        "selected_tasker_id": tasker_id,
                        "agreed_payment": payment,
                        "agreed_time": to_iso(moment),
                        "selected_at": now_iso(),
                        "advance_payment_status": "pending",
                        "advance_payment": None,
                        "payment_id": None,
                    },
                )
                break
            except SelectionConflictError as exc:
                self._logger.warning(
                    "Selection hit a concurrent write",
                    extra={"task_id": task_id, "tasker_id": tasker_id, "attempt": attempt},
                )
                if attempt == _SELECTION_ATTEMPTS:
                    raise ServiceError(
                        "CONFLICT",
                        "The task was modified concurrently, please retry",
                        409,
                        {},
                    ) from exc

        self._logger.info(
            "Tasker selected",
            extra={
                "task_id": task_id,
                "tasker_id": tasker_id,
                "application_id": application["application_id"],
                "rejected_count": len(rejected),
            },
        )

        await self._notification_client.notify(
            tasker_id,
            "application_approved",
            task_id,
            "Your application was approved. The customer will pay the advance to schedule it.",
        )
        for sibling in rejected:
            await self._notification_client.notify(
                sibling["tasker_id"],
                "application_rejected",
                task_id,
                "Another tasker was selected for this task.",
            )

        return task_to_response(self._load_task(task_id))

    def _check_selection(
        self,
        caller: Actor,
        task_id: str,
        tasker_id: str,
        moment: datetime,
        payment: int,
    ) -> dict[str, Any]:
        """Validate a selection against current state and return the winning application."""
        task = self._load_task(task_id)
        if caller.subject_id != task["customer_id"]:
            raise ServiceError("FORBIDDEN", "Only the customer can select a tasker", 403, {})
        if task["status"] != "active" or task["selected_tasker_id"] is not None:
            raise ServiceError(
                "INVALID_STATE",
                "Task cannot be scheduled in its current state",
                409,
                {},
            )

        application = self._store.get_application_for_tasker(task_id, tasker_id)
        if (
            application is None
            or application["status"] != "pending"
            or not application["confirmed_by_tasker"]
        ):
            raise ServiceError(
                "INVALID_STATE",
                "No pending application confirmed by this tasker",
                409,
                {},
            )

        confirmed_time = parse_iso(application["confirmed_time"])
        if abs(moment - confirmed_time) > self._time_tolerance:
            raise ServiceError(
                "MISMATCH",
                "agreed_time does not match the time confirmed by the tasker",
                400,
                {"confirmed_time": application["confirmed_time"]},
            )
        check_time_window(moment, task, "agreed_time")
        check_payment_range(payment, task, "agreed_payment")
        if payment != application["confirmed_payment"]:
            raise ServiceError(
                "MISMATCH",
                "agreed_payment does not match the payment confirmed by the tasker",
                400,
                {"confirmed_payment": application["confirmed_payment"]},
            )
        return application
