"""Advance payment lifecycle driven by payment provider notifications."""

from __future__ import annotations

import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services import payment_signature
from task_market_service.services.task_store import (
    DuplicatePaymentError,
    PaymentNotFoundError,
    TransitionConflictError,
)
from task_market_service.services.validation import now_iso

if TYPE_CHECKING:
    import logging

    from task_market_service.clients.notification_client import NotificationClient
    from task_market_service.config import PaymentsConfig
    from task_market_service.services.actors import Actor
    from task_market_service.services.task_store import TaskStore

_REQUIRED_NOTIFICATION_FIELDS = ("merchant_id", "order_id", "status_code")


def _payment_to_response(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "order_id": row["order_id"],
        "task_id": row["task_id"],
        "customer_id": row["customer_id"],
        "tasker_id": row["tasker_id"],
        "amount": row["amount"],
        "currency": row["currency"],
        "payment_type": row["payment_type"],
        "status": row["status"],
        "provider_payment_id": row["provider_payment_id"],
        "status_code": row["status_code"],
        "status_message": row["status_message"],
        "method": row["method"],
        "failure_reason": row["failure_reason"],
        "created_at": row["created_at"],
        "processed_at": row["processed_at"],
    }


class PaymentGate:
    """
    Moves a task between active and scheduled based on its advance payment.

    A verified success notification is the only way a task becomes
    scheduled. Failure or cancellation clears the advance fields while the
    selection is kept, so the customer can pay again. The payments table is
    the processing marker that makes replayed notifications no-ops.
    """

    def __init__(
        self,
        store: TaskStore,
        notification_client: NotificationClient,
        config: PaymentsConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._notification_client = notification_client
        self._config = config
        self._logger = logger if logger is not None else get_logger(__name__)

    def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return task

    def advance_amount(self, agreed_payment: int) -> int:
        """Advance due for an agreed payment, rounded half to even."""
        return round(agreed_payment * self._config.advance_ratio)

    async def initiate_advance_payment(self, actor: Actor | None, task_id: str) -> dict[str, Any]:
        """
        Issue a signed checkout payload for the task's advance payment.

        Error precedence:
        1. UNAUTHENTICATED
        2. TASK_NOT_FOUND
        3. FORBIDDEN - caller is not the customer
        4. INVALID_STATE - task not active, no selected tasker, or already paid
        """
        if actor is None:
            raise ServiceError("UNAUTHENTICATED", "Authentication required", 401, {})
        task = self._load_task(task_id)
        if actor.subject_id != task["customer_id"]:
            raise ServiceError("FORBIDDEN", "Only the customer can pay for this task", 403, {})
        if task["status"] != "active":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot pay for task in '{task['status']}' status, must be 'active'",
                409,
                {},
            )
        if task["selected_tasker_id"] is None or task["agreed_payment"] is None:
            raise ServiceError("INVALID_STATE", "No tasker has been selected", 409, {})
        if task["advance_payment_status"] == "paid":
            raise ServiceError("INVALID_STATE", "Advance payment already completed", 409, {})

        amount = self.advance_amount(task["agreed_payment"])
        order_id = f"TASK_{task_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

        try:
            self._store.start_advance_payment(
                {
                    "order_id": order_id,
                    "task_id": task_id,
                    "customer_id": task["customer_id"],
                    "tasker_id": task["selected_tasker_id"],
                    "amount": amount,
                    "currency": self._config.currency,
                    "payment_type": "advance",
                    "status": "pending",
                    "provider_payment_id": None,
                    "status_code": None,
                    "status_message": None,
                    "method": None,
                    "failure_reason": None,
                    "created_at": now_iso(),
                    "processed_at": None,
                }
            )
        except DuplicatePaymentError as exc:
            raise ServiceError("CONFLICT", "Payment order already exists", 409, {}) from exc
        except TransitionConflictError as exc:
            raise ServiceError(
                "INVALID_STATE",
                "Task no longer accepts an advance payment",
                409,
                {},
            ) from exc

        checkout: dict[str, str] = {
            "merchant_id": self._config.merchant_id,
            "return_url": self._config.return_url,
            "cancel_url": self._config.cancel_url,
            "notify_url": self._config.notify_url,
            "order_id": order_id,
            "items": f"Advance Payment - {task['title']}",
            "currency": self._config.currency,
            "amount": str(amount),
            "custom_1": task_id,
            "custom_2": task["selected_tasker_id"],
            "custom_3": "advance_payment",
        }
        checkout[payment_signature.SIGNATURE_FIELD] = payment_signature.sign(
            checkout,
            self._config.merchant_secret,
        )

        self._logger.info(
            "Advance payment initiated",
            extra={"task_id": task_id, "order_id": order_id, "amount": amount},
        )
        return {
            "payment_url": self._config.checkout_url,
            "payment_data": checkout,
            "order_id": order_id,
            "amount": amount,
        }

    async def handle_notification(self, fields: dict[str, str]) -> dict[str, Any]:
        """
        Apply a provider notification.

        Error precedence:
        1. INVALID_SIGNATURE - bad digest or foreign merchant
        2. INVALID_PAYLOAD - required fields missing
        3. PAYMENT_NOT_FOUND - unknown order_id
        4. MISMATCH - amount or currency disagree with the issued order

        Duplicate deliveries return normally without changing anything.
        """
        payment_signature.verify(fields, self._config.merchant_secret)
        if fields.get("merchant_id") != self._config.merchant_id:
            raise ServiceError("INVALID_SIGNATURE", "Unknown merchant", 400, {})
        for field_name in _REQUIRED_NOTIFICATION_FIELDS:
            if not fields.get(field_name):
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    f"Missing required field: {field_name}",
                    400,
                    {},
                )

        order_id = fields["order_id"]
        payment = self._store.get_payment(order_id)
        if payment is None:
            raise ServiceError("PAYMENT_NOT_FOUND", "Payment not found", 404, {})
        self._check_amount(fields, payment)

        status_code = fields["status_code"]
        status_message = fields.get("status_message")
        if status_code == self._config.success_status_code:
            payment_status = "completed"
        elif status_code == self._config.cancelled_status_code:
            payment_status = "cancelled"
        else:
            payment_status = "failed"

        return await self._record(
            order_id,
            payment_status,
            {
                "provider_payment_id": fields.get("payment_id"),
                "status_code": status_code,
                "status_message": status_message,
                "method": fields.get("method"),
                "failure_reason": status_message if payment_status == "failed" else None,
            },
        )

    async def cancel_payment(self, order_id: str) -> dict[str, Any]:
        """Handle the customer abandoning checkout for an order."""
        return await self._record(
            order_id,
            "cancelled",
            {"failure_reason": "Cancelled by customer"},
        )

    def _check_amount(self, fields: dict[str, str], payment: dict[str, Any]) -> None:
        raw_amount = fields.get("payhere_amount", fields.get("amount"))
        if raw_amount is not None:
            try:
                amount = Decimal(raw_amount)
            except InvalidOperation as exc:
                raise ServiceError("INVALID_PAYLOAD", "Invalid payment amount", 400, {}) from exc
            if not amount.is_finite():
                raise ServiceError("INVALID_PAYLOAD", "Invalid payment amount", 400, {})
            if amount != Decimal(payment["amount"]):
                raise ServiceError(
                    "MISMATCH",
                    "Notified amount does not match the payment order",
                    400,
                    {"expected": payment["amount"]},
                )
        currency = fields.get("payhere_currency", fields.get("currency"))
        if currency is not None and currency != payment["currency"]:
            raise ServiceError(
                "MISMATCH",
                "Notified currency does not match the payment order",
                400,
                {"expected": payment["currency"]},
            )

    async def _record(
        self,
        order_id: str,
        payment_status: str,
        payment_updates: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            outcome, payment = self._store.record_payment_result(
                order_id,
                payment_status=payment_status,
                payment_updates=payment_updates,
                processed_at=now_iso(),
            )
        except PaymentNotFoundError as exc:
            raise ServiceError("PAYMENT_NOT_FOUND", "Payment not found", 404, {}) from exc

        log_extra = {
            "order_id": order_id,
            "task_id": payment["task_id"],
            "payment_status": payment_status,
            "outcome": outcome,
        }
        if outcome == "duplicate":
            self._logger.info("Payment notification already processed", extra=log_extra)
        elif outcome == "orphaned":
            self._logger.warning(
                "Payment completed but task could not be scheduled",
                extra=log_extra,
            )
        else:
            self._logger.info("Payment notification processed", extra=log_extra)

        if outcome == "scheduled":
            message = "Advance payment received. The task is now scheduled."
        elif outcome == "reset":
            message = "Advance payment did not go through. You can retry the payment."
        else:
            message = None
        if message is not None:
            for recipient_id in (payment["customer_id"], payment["tasker_id"]):
                await self._notification_client.notify(
                    recipient_id,
                    "payment_update",
                    payment["task_id"],
                    message,
                )

        return {"status": "success", "outcome": outcome, "payment": _payment_to_response(payment)}

    async def get_payments(self, actor: Actor | None, task_id: str) -> list[dict[str, Any]]:
        """List a task's payment records for its customer, selected tasker, or an admin."""
        if actor is None:
            raise ServiceError("UNAUTHENTICATED", "Authentication required", 401, {})
        task = self._load_task(task_id)
        allowed = {task["customer_id"], task["selected_tasker_id"]}
        if not actor.is_admin and actor.subject_id not in allowed:
            raise ServiceError("FORBIDDEN", "You do not have access to these payments", 403, {})
        return [_payment_to_response(row) for row in self._store.get_payments_for_task(task_id)]

    async def release_advance_payment(self, actor: Actor | None, task_id: str) -> dict[str, Any]:
        """
        Release a paid advance to the tasker after completion. Admin only.

        Error precedence:
        1. UNAUTHENTICATED
        2. FORBIDDEN - caller is not an admin
        3. TASK_NOT_FOUND
        4. INVALID_STATE - task not completed or advance not paid
        """
        if actor is None:
            raise ServiceError("UNAUTHENTICATED", "Authentication required", 401, {})
        if not actor.is_admin:
            raise ServiceError("FORBIDDEN", "Only admins can release payments", 403, {})
        task = self._load_task(task_id)
        if task["status"] != "completed":
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot release payment for task in '{task['status']}' status",
                409,
                {},
            )
        if task["advance_payment_status"] != "paid":
            raise ServiceError(
                "INVALID_STATE",
                "Advance payment is not in 'paid' status",
                409,
                {},
            )

        released_at = now_iso()
        if self._store.release_advance_payment(task_id, released_at) == 0:
            raise ServiceError("INVALID_STATE", "Advance payment was already released", 409, {})

        self._logger.info("Advance payment released", extra={"task_id": task_id})
        updated = self._load_task(task_id)
        return {
            "task_id": task_id,
            "advance_payment": updated["advance_payment"],
            "advance_payment_status": updated["advance_payment_status"],
            "advance_payment_released_at": updated["advance_payment_released_at"],
        }
