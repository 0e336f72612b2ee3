"""Service layer components."""

from task_market_service.services.chat_access import ChatAccessPolicy
from task_market_service.services.completion_coordinator import CompletionCoordinator
from task_market_service.services.matching_engine import MatchingEngine
from task_market_service.services.payment_gate import PaymentGate
from task_market_service.services.task_store import TaskStore

__all__ = [
    "ChatAccessPolicy",
    "CompletionCoordinator",
    "MatchingEngine",
    "PaymentGate",
    "TaskStore",
]
