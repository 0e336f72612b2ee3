"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class PaymentRecord(BaseModel):
    """A stored payment order."""

    model_config = ConfigDict(extra="forbid")
    order_id: str
    task_id: str
    customer_id: str
    tasker_id: str
    amount: int
    currency: str
    payment_type: str
    status: str
    provider_payment_id: str | None
    status_code: str | None
    status_message: str | None
    method: str | None
    failure_reason: str | None
    created_at: str
    processed_at: str | None


class PaymentResultResponse(BaseModel):
    """Response model for payment notifications and cancellations."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["success"]
    outcome: Literal["duplicate", "scheduled", "orphaned", "reset", "recorded"]
    payment: PaymentRecord
