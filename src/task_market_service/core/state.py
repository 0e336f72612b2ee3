"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_market_service.clients.notification_client import NotificationClient
    from task_market_service.clients.reputation_client import ReputationClient
    from task_market_service.services.chat_access import ChatAccessPolicy
    from task_market_service.services.completion_coordinator import CompletionCoordinator
    from task_market_service.services.matching_engine import MatchingEngine
    from task_market_service.services.payment_gate import PaymentGate
    from task_market_service.services.task_store import TaskStore


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: TaskStore | None = None
    matching_engine: MatchingEngine | None = None
    payment_gate: PaymentGate | None = None
    completion_coordinator: CompletionCoordinator | None = None
    chat_policy: ChatAccessPolicy | None = None
    reputation_client: ReputationClient | None = None
    notification_client: NotificationClient | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
