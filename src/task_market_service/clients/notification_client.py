"""Best-effort notification delivery."""

from __future__ import annotations

import httpx

from task_market_service.logging import get_logger


class NotificationClient:
    """
    Sends user notifications to the notification service.

    Delivery is best effort: failures are logged and never raised, so a
    notification outage cannot undo a committed state transition.
    """

    def __init__(self, base_url: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(self, recipient_id: str, kind: str, task_id: str, message: str) -> bool:
        """Send one notification. Returns True when the service accepted it."""
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                "/notifications",
                json={
                    "recipient_id": recipient_id,
                    "kind": kind,
                    "task_id": task_id,
                    "message": message,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification delivery failed",
                extra={
                    "error": str(exc),
                    "kind": kind,
                    "task_id": task_id,
                    "base_url": self._base_url,
                },
            )
            return False

        if response.status_code not in (200, 201, 202):
            logger.warning(
                "Notification service unexpected status",
                extra={"status_code": response.status_code, "kind": kind, "task_id": task_id},
            )
            return False
        return True

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
