"""
Per-actor visibility of a task and its applications.

All functions are pure: they read the task/application dicts passed in
and never touch the store.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from task_market_service.services.actors import Actor

# Application statuses that make a tasker a participant of an active task
LIVE_APPLICATION_STATUSES = frozenset({"pending", "confirmed"})


class Access(StrEnum):
    """What a requester may do with a task."""

    NONE = "none"
    READ = "read"
    PARTICIPANT = "participant"


class Relation(StrEnum):
    """How a requester relates to a task."""

    CUSTOMER = "customer"
    SELECTED_TASKER = "selected_tasker"
    TARGETED_TASKER = "targeted_tasker"
    APPLICANT = "applicant"
    OUTSIDER = "outsider"
    ANONYMOUS = "anonymous"


def classify(
    task: dict[str, Any],
    applications: list[dict[str, Any]],
    subject_id: str | None,
) -> Relation:
    """
    Classify a subject against a task.

    The strongest relation wins: customer, then selected tasker, then
    targeted tasker, then any tasker holding a pending or confirmed
    application.
    """
    if subject_id is None:
        return Relation.ANONYMOUS
    if subject_id == task["customer_id"]:
        return Relation.CUSTOMER
    if task["selected_tasker_id"] is not None and subject_id == task["selected_tasker_id"]:
        return Relation.SELECTED_TASKER
    if task["is_targeted"] and subject_id == task["targeted_tasker_id"]:
        return Relation.TARGETED_TASKER
    for application in applications:
        if (
            application["tasker_id"] == subject_id
            and application["status"] in LIVE_APPLICATION_STATUSES
        ):
            return Relation.APPLICANT
    return Relation.OUTSIDER


def can_view(
    task: dict[str, Any],
    applications: list[dict[str, Any]],
    actor: Actor | None,
) -> Access:
    """Return the access level of actor (None for anonymous) on task."""
    relation = classify(task, applications, actor.subject_id if actor is not None else None)

    if task["status"] == "active":
        if task["is_targeted"]:
            if relation in (
                Relation.CUSTOMER,
                Relation.TARGETED_TASKER,
                Relation.SELECTED_TASKER,
            ):
                return Access.PARTICIPANT
            return Access.NONE
        if relation in (Relation.ANONYMOUS, Relation.OUTSIDER):
            return Access.READ
        return Access.PARTICIPANT

    if relation in (Relation.CUSTOMER, Relation.SELECTED_TASKER, Relation.TARGETED_TASKER):
        return Access.PARTICIPANT
    return Access.NONE


def require_view(
    task: dict[str, Any],
    applications: list[dict[str, Any]],
    actor: Actor | None,
) -> Access:
    """
    Like can_view, but raise when access is denied.

    Raises:
        ServiceError: UNAUTHENTICATED for anonymous callers on a task that is
            no longer active, FORBIDDEN otherwise
    """
    access = can_view(task, applications, actor)
    if access is not Access.NONE:
        return access
    if actor is None and task["status"] != "active":
        raise ServiceError(
            "UNAUTHENTICATED",
            "Authentication required to view this task",
            401,
            {},
        )
    raise ServiceError("FORBIDDEN", "You do not have access to this task", 403, {})


def can_list_applications(task: dict[str, Any], actor: Actor | None) -> bool:
    """Only the customer while active; afterwards also the selected tasker."""
    if actor is None:
        return False
    if actor.subject_id == task["customer_id"]:
        return True
    if task["status"] == "active":
        return False
    return task["selected_tasker_id"] is not None and actor.subject_id == task["selected_tasker_id"]


def require_application_list(task: dict[str, Any], actor: Actor | None) -> None:
    """
    Raise unless actor may list the task's applications.

    Raises:
        ServiceError: UNAUTHENTICATED (anonymous) or FORBIDDEN
    """
    if actor is None:
        raise ServiceError(
            "UNAUTHENTICATED",
            "Authentication required to list applications",
            401,
            {},
        )
    if not can_list_applications(task, actor):
        raise ServiceError(
            "FORBIDDEN",
            "Only the task participants can view applications",
            403,
            {},
        )
