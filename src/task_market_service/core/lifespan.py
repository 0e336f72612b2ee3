"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_market_service.clients.notification_client import NotificationClient
from task_market_service.clients.reputation_client import ReputationClient
from task_market_service.config import get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.chat_access import ChatAccessPolicy
from task_market_service.services.completion_coordinator import CompletionCoordinator
from task_market_service.services.matching_engine import MatchingEngine
from task_market_service.services.payment_gate import PaymentGate
from task_market_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    reputation_client = ReputationClient(
        base_url=settings.reputation.base_url,
        timeout_seconds=settings.reputation.timeout_seconds,
    )
    state.reputation_client = reputation_client

    notification_client = NotificationClient(
        base_url=settings.notifications.base_url,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notification_client = notification_client

    store = TaskStore(db_path=settings.database.path)
    state.store = store
    state.matching_engine = MatchingEngine(
        store=store,
        notification_client=notification_client,
        time_tolerance_seconds=settings.matching.time_tolerance_seconds,
    )
    state.payment_gate = PaymentGate(
        store=store,
        notification_client=notification_client,
        config=settings.payments,
    )
    state.completion_coordinator = CompletionCoordinator(
        store=store,
        reputation_client=reputation_client,
    )
    state.chat_policy = ChatAccessPolicy(store=store)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "reputation_base_url": settings.reputation.base_url,
            "notifications_base_url": settings.notifications.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()
    await reputation_client.close()
    await notification_client.close()
