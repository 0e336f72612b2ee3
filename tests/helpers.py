"""Shared test helpers: actors, row builders, and signed payment notifications."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_market_service.config import PaymentsConfig
from task_market_service.services import payment_signature
from task_market_service.services.actors import Actor, Role

if TYPE_CHECKING:
    from task_market_service.services.matching_engine import MatchingEngine
    from task_market_service.services.payment_gate import PaymentGate

CUSTOMER = Actor("u-customer", Role.CUSTOMER)
OTHER_CUSTOMER = Actor("u-other-customer", Role.CUSTOMER)
TASKER_1 = Actor("u-tasker-1", Role.TASKER)
TASKER_2 = Actor("u-tasker-2", Role.TASKER)
TASKER_3 = Actor("u-tasker-3", Role.TASKER)
ADMIN = Actor("u-admin", Role.ADMIN)

MERCHANT_ID = "M-TEST"
MERCHANT_SECRET = "s3cret"


def at(days: float = 0, hours: float = 0) -> datetime:
    """Aware UTC datetime offset from now."""
    return datetime.now(UTC) + timedelta(days=days, hours=hours)


def iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def task_row(task_id: str = "task-1", **overrides: Any) -> dict[str, Any]:
    """A complete active task row, ready for TaskStore.insert_task."""
    row: dict[str, Any] = {
        "task_id": task_id,
        "customer_id": CUSTOMER.subject_id,
        "title": "Fix the kitchen sink",
        "description": "Leaking pipe under the sink",
        "category": "Plumbing",
        "area": "Colombo",
        "min_payment": 50,
        "max_payment": 100,
        "start_date": iso(at(days=2)),
        "end_date": iso(at(days=10)),
        "status": "active",
        "is_targeted": False,
        "targeted_tasker_id": None,
        "selected_tasker_id": None,
        "agreed_payment": None,
        "agreed_time": None,
        "selected_at": None,
        "advance_payment": None,
        "advance_payment_status": None,
        "advance_payment_date": None,
        "advance_payment_released_at": None,
        "payment_id": None,
        "tasker_confirmed": False,
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
        "created_at": iso(at()),
    }
    row.update(overrides)
    return row


def application_row(
    application_id: str,
    task_id: str = "task-1",
    tasker_id: str = TASKER_1.subject_id,
    **overrides: Any,
) -> dict[str, Any]:
    """A complete pending application row, ready for TaskStore.insert_application."""
    row: dict[str, Any] = {
        "application_id": application_id,
        "task_id": task_id,
        "tasker_id": tasker_id,
        "proposed_payment": 75,
        "note": None,
        "estimated_duration_hours": None,
        "available_start_date": None,
        "available_end_date": None,
        "status": "pending",
        "confirmed_by_tasker": False,
        "confirmed_time": None,
        "confirmed_payment": None,
        "created_at": iso(at()),
    }
    row.update(overrides)
    return row


def new_task_payload(**overrides: Any) -> dict[str, Any]:
    """A valid CreateTask payload."""
    payload: dict[str, Any] = {
        "title": "Fix the kitchen sink",
        "description": "Leaking pipe under the sink",
        "category": "Plumbing",
        "area": "Colombo",
        "min_payment": 50,
        "max_payment": 100,
        "start_date": iso(at(days=2)),
        "end_date": iso(at(days=10)),
    }
    payload.update(overrides)
    return payload


def payments_config(**overrides: Any) -> PaymentsConfig:
    values: dict[str, Any] = {
        "merchant_id": MERCHANT_ID,
        "merchant_secret": MERCHANT_SECRET,
        "currency": "LKR",
        "advance_ratio": 0.2,
        "success_status_code": "2",
        "cancelled_status_code": "-1",
        "checkout_url": "https://sandbox.example.test/pay/checkout",
        "notify_url": "http://localhost:8010/payments/notify",
        "return_url": "http://localhost:3000/payment/success",
        "cancel_url": "http://localhost:3000/payment/cancel",
    }
    values.update(overrides)
    return PaymentsConfig(**values)


def signed_notification(
    order_id: str,
    status_code: str,
    amount: int | str,
    *,
    secret: str = MERCHANT_SECRET,
    **extra: str,
) -> dict[str, str]:
    """Build a provider notification signed with the shared secret."""
    fields = {
        "merchant_id": MERCHANT_ID,
        "order_id": order_id,
        "payment_id": f"pay-{order_id}",
        "payhere_amount": f"{amount}.00" if isinstance(amount, int) else amount,
        "payhere_currency": "LKR",
        "status_code": status_code,
        "status_message": "Successfully completed" if status_code == "2" else "Payment declined",
        "method": "VISA",
    }
    fields.update(extra)
    fields[payment_signature.SIGNATURE_FIELD] = payment_signature.sign(fields, secret)
    return fields


async def open_task(engine: MatchingEngine, **overrides: Any) -> str:
    """Create a task as CUSTOMER and return its ID."""
    task = await engine.create_task(CUSTOMER, new_task_payload(**overrides))
    return str(task["task_id"])


async def selected_task(
    engine: MatchingEngine,
    *,
    payment: int = 80,
    extra_applicants: tuple[Any, ...] = (),
) -> tuple[str, datetime]:
    """Drive a task through apply, confirm and select for TASKER_1."""
    task_id = await open_task(engine)
    agreed_time = at(days=3)
    await engine.apply(TASKER_1, task_id, {"proposed_payment": 75})
    for applicant in extra_applicants:
        await engine.apply(applicant, task_id, {"proposed_payment": 90})
    await engine.confirm_time(TASKER_1, task_id, None, iso(agreed_time), payment)
    await engine.select_tasker(CUSTOMER, task_id, TASKER_1.subject_id, iso(agreed_time), payment)
    return task_id, agreed_time


async def scheduled_task(engine: MatchingEngine, gate: PaymentGate) -> str:
    """Drive a task all the way to scheduled via a successful advance payment."""
    task_id, _ = await selected_task(engine)
    checkout = await gate.initiate_advance_payment(CUSTOMER, task_id)
    await gate.handle_notification(
        signed_notification(checkout["order_id"], "2", checkout["amount"])
    )
    return task_id


def config_yaml(db_path: str = "data/task-market.db", log_directory: str = "data/logs") -> str:
    """A complete service config document."""
    return f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
reputation:
  base_url: "http://localhost:8004"
  timeout_seconds: 10
notifications:
  base_url: "http://localhost:8011"
  timeout_seconds: 5
payments:
  merchant_id: "{MERCHANT_ID}"
  merchant_secret: "{MERCHANT_SECRET}"
  currency: "LKR"
  advance_ratio: 0.2
  success_status_code: "2"
  cancelled_status_code: "-1"
  checkout_url: "https://sandbox.example.test/pay/checkout"
  notify_url: "http://localhost:8010/payments/notify"
  return_url: "http://localhost:3000/payment/success"
  cancel_url: "http://localhost:3000/payment/cancel"
matching:
  time_tolerance_seconds: 60
"""
