"""Two-sided completion handshake for scheduled tasks."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.matching_engine import task_to_response
from task_market_service.services.task_store import TransitionConflictError
from task_market_service.services.validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_NOTE_LENGTH,
    now_iso,
    require_rating,
    require_text,
)

if TYPE_CHECKING:
    import logging

    from task_market_service.clients.reputation_client import ReputationClient
    from task_market_service.services.actors import Actor
    from task_market_service.services.task_store import TaskStore

TASKS_COMPLETED_STAT = "tasksCompleted"
MAX_COMPLETION_PHOTOS = 10


class CompletionCoordinator:
    """
    Coordinates the end of a task's life once it is scheduled.

    The selected tasker confirms the schedule, then tasker and customer each
    mark the task done in either order. Whichever call arrives second moves
    the task to completed and pushes ratings and completion counters to the
    reputation service. Those side effects are best effort: a failure is
    logged and the transition still stands.
    """

    def __init__(
        self,
        store: TaskStore,
        reputation_client: ReputationClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._reputation_client = reputation_client
        self._logger = logger if logger is not None else get_logger(__name__)

    def _load_task_for(self, actor: Actor | None, task_id: str) -> tuple[Actor, dict[str, Any]]:
        if actor is None:
            raise ServiceError("UNAUTHENTICATED", "Authentication required", 401, {})
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return actor, task

    @staticmethod
    def _require_scheduled(task: dict[str, Any], operation: str) -> None:
        if task["status"] != "scheduled":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot {operation} task in '{task['status']}' status, must be 'scheduled'",
                409,
                {},
            )

    async def confirm_schedule(self, actor: Actor | None, task_id: str) -> dict[str, Any]:
        """
        The selected tasker accepts the paid schedule.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - not the selected tasker
        4. INVALID_STATE - not scheduled
        5. ALREADY_CONFIRMED
        """
        caller, task = self._load_task_for(actor, task_id)
        if caller.subject_id != task["selected_tasker_id"]:
            raise ServiceError(
                "FORBIDDEN",
                "Only the selected tasker can confirm the schedule",
                403,
                {},
            )
        self._require_scheduled(task, "confirm schedule for")
        if task["tasker_confirmed"]:
            raise ServiceError("ALREADY_CONFIRMED", "Schedule already confirmed", 409, {})

        if self._store.confirm_schedule(task_id, caller.subject_id) == 0:
            current = self._store.get_task(task_id)
            if current is not None and current["tasker_confirmed"]:
                raise ServiceError("ALREADY_CONFIRMED", "Schedule already confirmed", 409, {})
            raise ServiceError("INVALID_STATE", "Task is no longer scheduled", 409, {})

        self._logger.info("Schedule confirmed", extra={"task_id": task_id})
        return task_to_response(self._reload(task_id))

    async def tasker_complete(
        self,
        actor: Actor | None,
        task_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        The selected tasker marks the work done.

        payload may carry completion_photos (list of URLs), completion_notes,
        and an optional rating/feedback for the customer.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - not the selected tasker
        4. INVALID_STATE - not scheduled, schedule not confirmed, or already marked
        5. INVALID_PAYLOAD
        """
        caller, task = self._load_task_for(actor, task_id)
        if caller.subject_id != task["selected_tasker_id"]:
            raise ServiceError(
                "FORBIDDEN",
                "Only the selected tasker can mark this task complete",
                403,
                {},
            )
        self._require_scheduled(task, "complete")
        if not task["tasker_confirmed"]:
            raise ServiceError(
                "INVALID_STATE",
                "The schedule must be confirmed before completing",
                409,
                {},
            )
        if task["tasker_completed_at"] is not None:
            raise ServiceError("INVALID_STATE", "Task already marked complete", 409, {})

        photos = payload.get("completion_photos", [])
        if (
            not isinstance(photos, list)
            or len(photos) > MAX_COMPLETION_PHOTOS
            or not all(isinstance(photo, str) and photo for photo in photos)
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"completion_photos must be a list of at most {MAX_COMPLETION_PHOTOS} URLs",
                400,
                {"field": "completion_photos"},
            )
        notes = require_text(
            payload.get("completion_notes"),
            "completion_notes",
            MAX_DESCRIPTION_LENGTH,
            required=False,
        )
        customer_rating = payload.get("customer_rating")
        if customer_rating is not None:
            customer_rating = require_rating(customer_rating, "customer_rating")
        feedback = require_text(
            payload.get("tasker_feedback"),
            "tasker_feedback",
            MAX_NOTE_LENGTH,
            required=False,
        )

        return await self._complete_side(
            task,
            "tasker",
            {
                "completion_photos": photos,
                "completion_notes": notes,
                "tasker_rating_for_customer": customer_rating,
                "tasker_feedback": feedback,
            },
        )

    async def customer_complete(
        self,
        actor: Actor | None,
        task_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        The customer marks the task done and rates the tasker.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - not the customer
        4. INVALID_STATE - not scheduled or already marked
        5. INVALID_PAYLOAD - rating missing or outside 1-5
        """
        caller, task = self._load_task_for(actor, task_id)
        if caller.subject_id != task["customer_id"]:
            raise ServiceError(
                "FORBIDDEN",
                "Only the customer can mark this task complete",
                403,
                {},
            )
        self._require_scheduled(task, "complete")
        if task["customer_completed_at"] is not None:
            raise ServiceError("INVALID_STATE", "Task already marked complete", 409, {})

        rating = require_rating(payload.get("rating"), "rating")
        review = require_text(payload.get("review"), "review", MAX_NOTE_LENGTH, required=False)

        return await self._complete_side(
            task,
            "customer",
            {"customer_rating": rating, "customer_review": review},
        )

    async def _complete_side(
        self,
        task: dict[str, Any],
        side: str,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        task_id = str(task["task_id"])
        try:
            transitioned = self._store.record_completion(task_id, side, updates, now_iso())
        except TransitionConflictError as exc:
            raise ServiceError(
                "INVALID_STATE",
                "Task can no longer be completed from this side",
                409,
                {},
            ) from exc

        self._logger.info(
            "Completion recorded",
            extra={"task_id": task_id, "side": side, "completed": transitioned},
        )

        updated = self._reload(task_id)
        if transitioned:
            await self._propagate_completion(updated)
        return task_to_response(updated)

    async def _propagate_completion(self, task: dict[str, Any]) -> None:
        """Push ratings and completion counters. Never raises ServiceError."""
        task_id = task["task_id"]
        tasker_id = task["selected_tasker_id"]
        customer_id = task["customer_id"]

        try:
            await self._reputation_client.record_rating(tasker_id, task["customer_rating"])
        except ServiceError:
            self._logger.warning(
                "Failed to record tasker rating",
                extra={"task_id": task_id, "user_id": tasker_id},
            )

        if task["tasker_rating_for_customer"] is not None:
            try:
                await self._reputation_client.record_rating(
                    customer_id,
                    task["tasker_rating_for_customer"],
                )
            except ServiceError:
                self._logger.warning(
                    "Failed to record customer rating",
                    extra={"task_id": task_id, "user_id": customer_id},
                )

        for user_id in (tasker_id, customer_id):
            try:
                await self._reputation_client.increment_stat(user_id, TASKS_COMPLETED_STAT)
            except ServiceError:
                self._logger.warning(
                    "Failed to increment completion counter",
                    extra={"task_id": task_id, "user_id": user_id},
                )

    async def cancel_schedule(
        self,
        actor: Actor | None,
        task_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """
        Revert a scheduled task to active so the customer can match again.

        Callable by the customer or the selected tasker. A paid advance is
        marked refunded. Applications keep their confirmed/rejected marks.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - neither customer nor selected tasker
        4. INVALID_STATE - not scheduled
        """
        caller, task = self._load_task_for(actor, task_id)
        if caller.subject_id not in (task["customer_id"], task["selected_tasker_id"]):
            raise ServiceError(
                "FORBIDDEN",
                "Only the customer or the selected tasker can cancel the schedule",
                403,
                {},
            )
        self._require_scheduled(task, "cancel the schedule of")
        cancellation_reason = require_text(reason, "reason", MAX_NOTE_LENGTH, required=False)

        updated_rows = self._store.cancel_schedule(
            task_id,
            caller.subject_id,
            cancellation_reason,
            now_iso(),
        )
        if updated_rows == 0:
            raise ServiceError("INVALID_STATE", "Task is no longer scheduled", 409, {})

        self._logger.info(
            "Schedule cancelled",
            extra={
                "task_id": task_id,
                "cancelled_by": caller.subject_id,
                "refunded": task["advance_payment_status"] == "paid",
            },
        )
        return task_to_response(self._reload(task_id))

    def _reload(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found after update"
            raise RuntimeError(msg)
        return task
