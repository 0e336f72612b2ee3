"""Unit tests for MatchingEngine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from freezegun import freeze_time

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.task_store import SelectionConflictError
from tests.helpers import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    TASKER_1,
    TASKER_2,
    TASKER_3,
    at,
    iso,
    new_task_payload,
    open_task,
    selected_task,
    task_row,
)


async def _confirmed_task(engine, payment: int = 80):
    task_id = await open_task(engine)
    agreed_time = at(days=3)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    await engine.confirm_time(TASKER_1, task_id, None, iso(agreed_time), payment)
    return task_id, agreed_time


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_create_task(engine) -> None:
    task = await engine.create_task(CUSTOMER, new_task_payload())

    assert task["task_id"].startswith("task-")
    assert task["customer_id"] == CUSTOMER.subject_id
    assert task["status"] == "active"
    assert task["is_targeted"] is False
    assert task["selected_tasker_id"] is None


@pytest.mark.unit
async def test_create_task_requires_customer(engine) -> None:
    with pytest.raises(ServiceError) as exc_info:
        await engine.create_task(None, new_task_payload())
    assert exc_info.value.error == "UNAUTHENTICATED"

    with pytest.raises(ServiceError) as exc_info:
        await engine.create_task(TASKER_1, new_task_payload())
    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
async def test_create_task_validates_fields(engine) -> None:
    with pytest.raises(ServiceError) as exc_info:
        await engine.create_task(CUSTOMER, new_task_payload(category="Astrology"))
    assert exc_info.value.error == "INVALID_PAYLOAD"

    with pytest.raises(ServiceError) as exc_info:
        await engine.create_task(CUSTOMER, new_task_payload(min_payment=200, max_payment=100))
    assert exc_info.value.error == "OUT_OF_RANGE"

    with pytest.raises(ServiceError) as exc_info:
        await engine.create_task(
            CUSTOMER, new_task_payload(targeted_tasker_id=CUSTOMER.subject_id)
        )
    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
async def test_get_task_includes_application_count(engine) -> None:
    task_id = await open_task(engine)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    await engine.apply(TASKER_2, task_id, {"proposed_payment": 60})

    task = await engine.get_task(None, task_id)
    assert task["application_count"] == 2

    with pytest.raises(ServiceError) as exc_info:
        await engine.get_task(None, "task-missing")
    assert exc_info.value.error == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_list_tasks_hides_targeted_tasks_from_others(engine) -> None:
    open_id = await open_task(engine)
    targeted_id = await open_task(engine, targeted_tasker_id=TASKER_1.subject_id)

    anonymous = {task["task_id"] for task in await engine.list_tasks(None, *[None] * 6)}
    other = {task["task_id"] for task in await engine.list_tasks(TASKER_2, *[None] * 6)}
    target = {task["task_id"] for task in await engine.list_tasks(TASKER_1, *[None] * 6)}

    assert anonymous == {open_id}
    assert other == {open_id}
    assert target == {open_id, targeted_id}


@pytest.mark.unit
async def test_list_tasks_rejects_bad_filters(engine) -> None:
    with pytest.raises(ServiceError) as exc_info:
        await engine.list_tasks(None, "Astrology", None, None, None, None, None)
    assert exc_info.value.error == "INVALID_PAYLOAD"

    with pytest.raises(ServiceError) as exc_info:
        await engine.list_tasks(None, None, None, 100, 50, None, None)
    assert exc_info.value.error == "OUT_OF_RANGE"


@pytest.mark.unit
async def test_list_my_tasks_by_role(engine) -> None:
    task_id, _ = await selected_task(engine)
    await open_task(engine)

    assert len(await engine.list_my_tasks(CUSTOMER, None)) == 2
    assert [task["task_id"] for task in await engine.list_my_tasks(TASKER_1, None)] == [task_id]
    assert await engine.list_my_tasks(TASKER_2, None) == []

    with pytest.raises(ServiceError) as exc_info:
        await engine.list_my_tasks(ADMIN, None)
    assert exc_info.value.error == "FORBIDDEN"

    with pytest.raises(ServiceError) as exc_info:
        await engine.list_my_tasks(CUSTOMER, "archived")
    assert exc_info.value.error == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_cancel_task(engine) -> None:
    task_id = await open_task(engine)

    with pytest.raises(ServiceError) as exc_info:
        await engine.cancel_task(OTHER_CUSTOMER, task_id, None)
    assert exc_info.value.error == "FORBIDDEN"

    task = await engine.cancel_task(CUSTOMER, task_id, "No longer needed")
    assert task["status"] == "cancelled"
    assert task["cancellation_reason"] == "No longer needed"
    assert task["cancelled_by"] == CUSTOMER.subject_id

    with pytest.raises(ServiceError) as exc_info:
        await engine.cancel_task(CUSTOMER, task_id, None)
    assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
async def test_get_stats(engine) -> None:
    task_id = await open_task(engine)
    await open_task(engine)
    await engine.cancel_task(CUSTOMER, task_id, None)

    assert engine.get_stats() == {
        "total_tasks": 2,
        "tasks_by_status": {"active": 1, "cancelled": 1},
    }


# ----------------------------------------------------------------------
# Applications
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_duplicate_application_conflicts(engine) -> None:
    """A tasker applying twice to the same task gets CONFLICT."""
    task_id = await open_task(engine, min_payment=50, max_payment=100)

    application = await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    assert application["status"] == "pending"
    assert application["application_id"].startswith("app-")

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    assert exc_info.value.error == "CONFLICT"
    assert exc_info.value.status_code == 409


@pytest.mark.unit
async def test_apply_payment_out_of_range(engine, store) -> None:
    task_id = await open_task(engine)

    for amount in (49, 101):
        with pytest.raises(ServiceError) as exc_info:
            await engine.apply(TASKER_1, task_id, {"proposed_payment": amount})
        assert exc_info.value.error == "OUT_OF_RANGE"

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(TASKER_1, task_id, {"proposed_payment": 75.5})
    assert exc_info.value.error == "INVALID_PAYLOAD"

    assert store.count_applications(task_id) == 0


@pytest.mark.unit
async def test_apply_permission_checks(engine) -> None:
    task_id = await open_task(engine)

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(None, task_id, {"proposed_payment": 75})
    assert exc_info.value.error == "UNAUTHENTICATED"

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(CUSTOMER, task_id, {"proposed_payment": 75})
    assert exc_info.value.error == "FORBIDDEN"

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(TASKER_1, "task-missing", {"proposed_payment": 75})
    assert exc_info.value.error == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_apply_to_own_task_forbidden(engine, store) -> None:
    """A tasker id that owns the task cannot apply to it."""
    store.insert_task(task_row("task-own", customer_id=TASKER_1.subject_id))

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(TASKER_1, "task-own", {"proposed_payment": 75})
    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
async def test_targeted_task_forbids_other_taskers(engine) -> None:
    """Another tasker can neither see nor apply to a targeted task."""
    task_id = await open_task(engine, targeted_tasker_id=TASKER_1.subject_id)

    with pytest.raises(ServiceError) as exc_info:
        await engine.get_task(TASKER_2, task_id)
    assert exc_info.value.error == "FORBIDDEN"

    with pytest.raises(ServiceError) as exc_info:
        await engine.apply(TASKER_2, task_id, {"proposed_payment": 75})
    assert exc_info.value.error == "FORBIDDEN"

    application = await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    assert application["tasker_id"] == TASKER_1.subject_id


@pytest.mark.unit
async def test_apply_requires_active_future_task(engine, store) -> None:
    store.insert_task(task_row("task-started", start_date=iso(at(hours=-1))))
    store.insert_task(task_row("task-cancelled", status="cancelled"))

    for task_id in ("task-started", "task-cancelled"):
        with pytest.raises(ServiceError) as exc_info:
            await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
        assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
async def test_apply_closes_once_start_date_passes(engine) -> None:
    task_id = await open_task(engine)

    with freeze_time(at(days=3)):
        with pytest.raises(ServiceError) as exc_info:
            await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
async def test_list_applications_visibility(engine) -> None:
    task_id = await open_task(engine)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    await engine.apply(TASKER_2, task_id, {"proposed_payment": 60})

    listing = await engine.list_applications(CUSTOMER, task_id, None)
    assert listing["task_id"] == task_id
    assert len(listing["applications"]) == 2

    with pytest.raises(ServiceError) as exc_info:
        await engine.list_applications(TASKER_1, task_id, None)
    assert exc_info.value.error == "FORBIDDEN"

    mine = await engine.list_my_applications(TASKER_2, "pending")
    assert [row["proposed_payment"] for row in mine] == [60]


# ----------------------------------------------------------------------
# Confirmation
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_confirm_time_once(engine) -> None:
    task_id = await open_task(engine)
    application = await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    agreed = iso(at(days=3))

    confirmed = await engine.confirm_time(
        TASKER_1, task_id, application["application_id"], agreed, 80
    )
    assert confirmed["confirmed_by_tasker"] is True
    assert confirmed["confirmed_payment"] == 80
    assert confirmed["status"] == "pending"

    with pytest.raises(ServiceError) as exc_info:
        await engine.confirm_time(TASKER_1, task_id, application["application_id"], agreed, 80)
    assert exc_info.value.error == "ALREADY_CONFIRMED"


@pytest.mark.unit
async def test_confirm_time_only_by_applicant(engine) -> None:
    task_id = await open_task(engine)
    application = await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})

    with pytest.raises(ServiceError) as exc_info:
        await engine.confirm_time(
            TASKER_2, task_id, application["application_id"], iso(at(days=3)), 80
        )
    assert exc_info.value.error == "FORBIDDEN"

    with pytest.raises(ServiceError) as exc_info:
        await engine.confirm_time(TASKER_2, task_id, None, iso(at(days=3)), 80)
    assert exc_info.value.error == "APPLICATION_NOT_FOUND"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("days", "payment"),
    [
        (3, 101),
        (3, 49),
        (11, 80),
        (1, 80),
    ],
)
async def test_confirm_time_out_of_range(engine, days: int, payment: int) -> None:
    task_id = await open_task(engine)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})

    with pytest.raises(ServiceError) as exc_info:
        await engine.confirm_time(TASKER_1, task_id, None, iso(at(days=days)), payment)
    assert exc_info.value.error == "OUT_OF_RANGE"


@pytest.mark.unit
async def test_confirmed_time_must_still_be_ahead(engine) -> None:
    task_id = await open_task(engine)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    proposed = at(days=3)

    with freeze_time(proposed + timedelta(hours=1)):
        with pytest.raises(ServiceError) as exc_info:
            await engine.confirm_time(TASKER_1, task_id, None, iso(proposed), 80)
    assert exc_info.value.error == "OUT_OF_RANGE"


@pytest.mark.unit
async def test_direct_hire_creates_application(engine, store) -> None:
    """The targeted tasker may confirm terms without applying first."""
    task_id = await open_task(engine, targeted_tasker_id=TASKER_1.subject_id)
    agreed_time = at(days=3)

    confirmed = await engine.confirm_time(TASKER_1, task_id, None, iso(agreed_time), 80)

    assert confirmed["status"] == "pending"
    assert confirmed["confirmed_by_tasker"] is True
    assert confirmed["proposed_payment"] == 80
    assert store.count_applications(task_id) == 1

    task = await engine.select_tasker(
        CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80
    )
    assert task["selected_tasker_id"] == TASKER_1.subject_id


# ----------------------------------------------------------------------
# Selection
# ----------------------------------------------------------------------


@pytest.mark.unit
async def test_select_keeps_task_active_pending_advance(engine) -> None:
    """Selection assigns the tasker but scheduling waits for the advance payment."""
    task_id, agreed_time = await _confirmed_task(engine, payment=80)

    task = await engine.select_tasker(
        CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80
    )

    assert task["status"] == "active"
    assert task["advance_payment_status"] == "pending"
    assert task["selected_tasker_id"] == TASKER_1.subject_id
    assert task["agreed_payment"] == 80
    assert task["agreed_time"] == iso(agreed_time)


@pytest.mark.unit
async def test_select_rejects_every_sibling(engine, store, notifier) -> None:
    """Exactly one application ends up confirmed; the rest are rejected."""
    task_id, _ = await selected_task(engine, extra_applicants=(TASKER_2, TASKER_3))

    statuses = {
        row["tasker_id"]: row["status"] for row in store.get_applications_for_task(task_id)
    }
    assert statuses == {
        TASKER_1.subject_id: "confirmed",
        TASKER_2.subject_id: "rejected",
        TASKER_3.subject_id: "rejected",
    }

    kinds = {(c.args[0], c.args[1]) for c in notifier.notify.await_args_list}
    assert kinds == {
        (TASKER_1.subject_id, "application_approved"),
        (TASKER_2.subject_id, "application_rejected"),
        (TASKER_3.subject_id, "application_rejected"),
    }


@pytest.mark.unit
async def test_select_twice_is_invalid_state(engine) -> None:
    task_id, agreed_time = await selected_task(engine)

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80)
    assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
async def test_select_requires_confirmed_application(engine) -> None:
    task_id = await open_task(engine)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(at(days=3)), 75)
    assert exc_info.value.error == "INVALID_STATE"


@pytest.mark.unit
async def test_select_only_by_customer(engine) -> None:
    task_id, agreed_time = await _confirmed_task(engine)

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(
            OTHER_CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80
        )
    assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
async def test_select_time_tolerance(engine) -> None:
    """agreed_time within 60 seconds of the confirmed time is accepted."""
    task_id, agreed_time = await _confirmed_task(engine)

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(
            CUSTOMER,
            task_id,
            TASKER_1.subject_id,
            iso(agreed_time + timedelta(seconds=120)),
            80,
        )
    assert exc_info.value.error == "MISMATCH"

    task = await engine.select_tasker(
        CUSTOMER,
        task_id,
        TASKER_1.subject_id,
        iso(agreed_time + timedelta(seconds=30)),
        80,
    )
    assert task["selected_tasker_id"] == TASKER_1.subject_id


@pytest.mark.unit
async def test_select_payment_checks(engine) -> None:
    task_id, agreed_time = await _confirmed_task(engine, payment=80)

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 120)
    assert exc_info.value.error == "OUT_OF_RANGE"

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 90)
    assert exc_info.value.error == "MISMATCH"


@pytest.mark.unit
async def test_select_retries_once_after_conflict(engine, store, monkeypatch) -> None:
    task_id, agreed_time = await _confirmed_task(engine)
    real_select = store.select_application
    attempts: list[str] = []

    def flaky_select(*args, **kwargs):
        attempts.append(args[0])
        if len(attempts) == 1:
            raise SelectionConflictError("simulated concurrent write")
        return real_select(*args, **kwargs)

    monkeypatch.setattr(store, "select_application", flaky_select)

    task = await engine.select_tasker(
        CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80
    )

    assert attempts == [task_id, task_id]
    assert task["selected_tasker_id"] == TASKER_1.subject_id


@pytest.mark.unit
async def test_select_repeated_conflict_surfaces(engine, store, notifier, monkeypatch) -> None:
    task_id, agreed_time = await _confirmed_task(engine)
    attempts: list[str] = []

    def always_conflicts(*args, **kwargs):
        attempts.append(args[0])
        raise SelectionConflictError("simulated concurrent write")

    monkeypatch.setattr(store, "select_application", always_conflicts)

    with pytest.raises(ServiceError) as exc_info:
        await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), 80)

    assert exc_info.value.error == "CONFLICT"
    assert len(attempts) == 2
    assert notifier.notify.await_count == 0

    task = store.get_task(task_id)
    assert task is not None
    assert task["selected_tasker_id"] is None
