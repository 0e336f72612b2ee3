"""HTTP clients for the rating/statistics and notification services."""

from task_market_service.clients.notification_client import NotificationClient
from task_market_service.clients.reputation_client import ReputationClient

__all__ = ["NotificationClient", "ReputationClient"]
