"""
Explicit invariant checks run before any write.

Every check raises ServiceError with the error code the caller sees.
Nothing here touches the store.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, cast

from task_market_service.core.exceptions import ServiceError

TASK_CATEGORIES = frozenset(
    {
        "Home Maintenance",
        "Cleaning",
        "Moving",
        "Handyman",
        "Gardening",
        "Painting",
        "Plumbing",
        "Electrical",
        "Carpentry",
        "Assembly",
        "Delivery",
        "Personal Assistant",
        "Pet Care",
        "Tutoring",
        "Other",
    }
)

TASK_AREAS = frozenset(
    {
        "Colombo",
        "Gampaha",
        "Kalutara",
        "Kandy",
        "Matale",
        "Nuwara Eliya",
        "Galle",
        "Matara",
        "Hambantota",
        "Jaffna",
        "Kilinochchi",
        "Mannar",
        "Vavuniya",
        "Mullaitivu",
        "Batticaloa",
        "Ampara",
        "Trincomalee",
        "Kurunegala",
        "Puttalam",
        "Anuradhapura",
        "Polonnaruwa",
        "Badulla",
        "Moneragala",
        "Ratnapura",
        "Kegalle",
    }
)

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MAX_NOTE_LENGTH = 500


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------


def now_utc() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_iso(moment: datetime) -> str:
    """Render a datetime as ISO 8601 with Z suffix."""
    return as_utc(moment).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return to_iso(now_utc())


def parse_iso(value: str) -> datetime:
    """Parse a stored ISO 8601 timestamp back into an aware datetime."""
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def require_datetime(value: object, field_name: str) -> datetime:
    """Accept a datetime or ISO 8601 string, raising INVALID_PAYLOAD otherwise."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return parse_iso(value)
        except ValueError as exc:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"{field_name} is not a valid timestamp",
                400,
                {"field": field_name},
            ) from exc
    raise ServiceError(
        "INVALID_PAYLOAD",
        f"Missing or invalid field: {field_name}",
        400,
        {"field": field_name},
    )


# ----------------------------------------------------------------------
# Scalars
# ----------------------------------------------------------------------


def is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def require_amount(value: object, field_name: str) -> int:
    """Require a positive integer amount."""
    if not is_positive_int(value):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be a positive integer",
            400,
            {"field": field_name},
        )
    return cast("int", value)


def require_text(
    value: object,
    field_name: str,
    max_length: int,
    *,
    required: bool,
) -> str | None:
    """Validate an optional or required free-text field and return it stripped."""
    if value is None:
        if required:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Missing required field: {field_name}",
                400,
                {"field": field_name},
            )
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be a string",
            400,
            {"field": field_name},
        )
    text = value.strip()
    if required and not text:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must not be empty",
            400,
            {"field": field_name},
        )
    if len(text) > max_length:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must not exceed {max_length} characters",
            400,
            {"field": field_name},
        )
    return text


def require_rating(value: object, field_name: str) -> int:
    """Require an integer rating from 1 to 5."""
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be an integer between 1 and 5",
            400,
            {"field": field_name},
        )
    return value


# ----------------------------------------------------------------------
# Task-relative checks
# ----------------------------------------------------------------------


def check_payment_range(amount: int, task: dict[str, Any], field_name: str) -> None:
    """Amount must lie within the task's [min_payment, max_payment]."""
    if amount < task["min_payment"] or amount > task["max_payment"]:
        raise ServiceError(
            "OUT_OF_RANGE",
            (
                f"{field_name} must be between {task['min_payment']} "
                f"and {task['max_payment']}"
            ),
            400,
            {"field": field_name},
        )


def check_time_window(moment: datetime, task: dict[str, Any], field_name: str) -> None:
    """Moment must lie within the task's [start_date, end_date]."""
    if moment < parse_iso(task["start_date"]) or moment > parse_iso(task["end_date"]):
        raise ServiceError(
            "OUT_OF_RANGE",
            f"{field_name} must be between the task start date and end date",
            400,
            {"field": field_name},
        )


def check_in_future(moment: datetime, now: datetime, field_name: str) -> None:
    """Moment must be strictly after now."""
    if moment <= now:
        raise ServiceError(
            "OUT_OF_RANGE",
            f"{field_name} must be in the future",
            400,
            {"field": field_name},
        )


def validate_new_task(payload: dict[str, Any], customer_id: str, now: datetime) -> dict[str, Any]:
    """
    Validate a task creation payload and return normalized column values.

    Dates must be today or later (compared at UTC midnight) and
    end_date must not precede start_date.
    """
    title = require_text(payload.get("title"), "title", MAX_TITLE_LENGTH, required=True)
    description = require_text(
        payload.get("description"),
        "description",
        MAX_DESCRIPTION_LENGTH,
        required=True,
    )

    category = payload.get("category")
    if category not in TASK_CATEGORIES:
        raise ServiceError("INVALID_PAYLOAD", "Invalid category selected", 400, {})
    area = payload.get("area")
    if area not in TASK_AREAS:
        raise ServiceError("INVALID_PAYLOAD", "Invalid area selected", 400, {})

    min_payment = require_amount(payload.get("min_payment"), "min_payment")
    max_payment = require_amount(payload.get("max_payment"), "max_payment")
    if min_payment > max_payment:
        raise ServiceError(
            "OUT_OF_RANGE",
            "max_payment must be greater than or equal to min_payment",
            400,
            {},
        )

    start_date = require_datetime(payload.get("start_date"), "start_date")
    end_date = require_datetime(payload.get("end_date"), "end_date")
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if start_date < today:
        raise ServiceError("OUT_OF_RANGE", "start_date must be today or in the future", 400, {})
    if end_date < start_date:
        raise ServiceError("OUT_OF_RANGE", "end_date must not be before start_date", 400, {})

    targeted_tasker_id = payload.get("targeted_tasker_id")
    if targeted_tasker_id is not None:
        if not isinstance(targeted_tasker_id, str) or not targeted_tasker_id:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "targeted_tasker_id must be a non-empty string",
                400,
                {},
            )
        if targeted_tasker_id == customer_id:
            raise ServiceError("FORBIDDEN", "Cannot target your own task", 403, {})

    return {
        "title": title,
        "description": description,
        "category": category,
        "area": area,
        "min_payment": min_payment,
        "max_payment": max_payment,
        "start_date": to_iso(start_date),
        "end_date": to_iso(end_date),
        "is_targeted": 1 if targeted_tasker_id is not None else 0,
        "targeted_tasker_id": targeted_tasker_id,
    }
