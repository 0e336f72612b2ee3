"""API routers."""

from task_market_service.routers import health, payments

__all__ = ["health", "payments"]
