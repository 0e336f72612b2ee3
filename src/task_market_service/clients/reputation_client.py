"""Async HTTP client for the rating and statistics service."""

from __future__ import annotations

from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger


class ReputationClient:
    """
    Client for rating and statistics updates.

    Two operations:
    1. record_rating: POST /users/{user_id}/ratings
    2. increment_stat: POST /users/{user_id}/stats/{stat_name}/increment

    Any transport failure or non-2xx response is raised as
    ServiceError("REPUTATION_SERVICE_UNAVAILABLE", ..., 502).
    """

    def __init__(self, base_url: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _post(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        logger = get_logger(__name__)

        try:
            response = await self._client.post(path, json=body)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Reputation service connection failed",
                extra={"error": str(exc), "operation": operation, "base_url": self._base_url},
            )
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message="Cannot connect to reputation service",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Reputation service HTTP error",
                extra={"error": str(exc), "operation": operation, "base_url": self._base_url},
            )
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message="Reputation service request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code in (200, 201):
            if not response.content:
                return {}
            try:
                result: dict[str, Any] = response.json()
            except ValueError as exc:
                logger.warning(
                    "Reputation service returned invalid JSON",
                    extra={"operation": operation, "base_url": self._base_url},
                )
                raise ServiceError(
                    error="REPUTATION_SERVICE_UNAVAILABLE",
                    message="Reputation service returned an invalid response",
                    status_code=502,
                    details={},
                ) from exc
            return result

        logger.warning(
            "Reputation service unexpected status",
            extra={
                "status_code": response.status_code,
                "operation": operation,
                "base_url": self._base_url,
            },
        )
        raise ServiceError(
            error="REPUTATION_SERVICE_UNAVAILABLE",
            message="Reputation service returned unexpected status",
            status_code=502,
            details={},
        )

    async def record_rating(self, user_id: str, rating: int) -> dict[str, Any]:
        """Record a 1-5 rating against a user."""
        return await self._post(f"/users/{user_id}/ratings", {"rating": rating}, "record_rating")

    async def increment_stat(self, user_id: str, stat_name: str) -> dict[str, Any]:
        """Increment a named counter (e.g. tasksCompleted) for a user."""
        return await self._post(
            f"/users/{user_id}/stats/{stat_name}/increment",
            {},
            "increment_stat",
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
