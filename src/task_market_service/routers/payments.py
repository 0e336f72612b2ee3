"""Payment provider callback endpoints."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state
from task_market_service.schemas import ErrorResponse, PaymentResultResponse

if TYPE_CHECKING:
    from task_market_service.services.payment_gate import PaymentGate

router = APIRouter()


def _payment_gate() -> PaymentGate:
    state = get_app_state()
    if state.payment_gate is None:
        msg = "PaymentGate not initialized"
        raise RuntimeError(msg)
    return state.payment_gate


async def _read_fields(request: Request) -> dict[str, str]:
    """Read notification fields from a form post or a JSON object."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ServiceError("INVALID_PAYLOAD", "Request body is not valid JSON", 400, {}) from exc
        if not isinstance(data, dict):
            raise ServiceError("INVALID_PAYLOAD", "Request body must be a JSON object", 400, {})
        return {str(key): str(value) for key, value in data.items()}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# ---------------------------------------------------------------------------
# POST /payments/notify - provider server-to-server notification
# ---------------------------------------------------------------------------


@router.post(
    "/payments/notify",
    response_model=PaymentResultResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def payment_notification(request: Request) -> dict[str, Any]:
    """Verify and apply a payment provider notification."""
    fields = await _read_fields(request)
    return await _payment_gate().handle_notification(fields)


# ---------------------------------------------------------------------------
# POST /payments/{order_id}/cancel - customer abandoned checkout
# ---------------------------------------------------------------------------


@router.post(
    "/payments/{order_id}/cancel",
    response_model=PaymentResultResponse,
    responses={404: {"model": ErrorResponse}},
)
async def cancel_payment(order_id: str) -> dict[str, Any]:
    """Mark a pending payment order as cancelled."""
    return await _payment_gate().cancel_payment(order_id)
