"""Whether two users may exchange messages about a task."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from task_market_service.logging import get_logger
from task_market_service.services.visibility import Relation, classify

if TYPE_CHECKING:
    import logging

    from task_market_service.services.task_store import TaskStore


def can_exchange(
    task: dict[str, Any],
    applications: list[dict[str, Any]],
    user_a: str,
    user_b: str,
) -> bool:
    """
    Decide chat access from task state.

    One side must be the customer. While the task is active the other side
    may be any tasker with a pending or confirmed application, the targeted
    tasker, or the selected tasker. Once scheduled or later only the
    selected tasker qualifies.
    """
    if user_a == user_b:
        return False

    if user_a == task["customer_id"]:
        other = user_b
    elif user_b == task["customer_id"]:
        other = user_a
    else:
        return False

    relation = classify(task, applications, other)
    if task["status"] == "active":
        return relation in (
            Relation.APPLICANT,
            Relation.TARGETED_TASKER,
            Relation.SELECTED_TASKER,
        )
    return relation is Relation.SELECTED_TASKER


class ChatAccessPolicy:
    """Evaluates can_exchange against freshly loaded task state on every call."""

    def __init__(self, store: TaskStore, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._logger = logger if logger is not None else get_logger(__name__)

    def can_exchange(self, task_id: str, user_a: str, user_b: str) -> bool:
        """Return False for unknown tasks."""
        task = self._store.get_task(task_id)
        if task is None:
            return False
        applications = self._store.get_applications_for_task(task_id)
        allowed = can_exchange(task, applications, user_a, user_b)
        if not allowed:
            self._logger.debug(
                "Chat access denied",
                extra={"task_id": task_id, "user_a": user_a, "user_b": user_b},
            )
        return allowed
