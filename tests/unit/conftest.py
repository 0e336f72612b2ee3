"""Unit test fixtures: auto-clear caches and wire components over a temp database."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from task_market_service.config import clear_settings_cache
from task_market_service.core.state import reset_app_state
from task_market_service.services.chat_access import ChatAccessPolicy
from task_market_service.services.completion_coordinator import CompletionCoordinator
from task_market_service.services.matching_engine import MatchingEngine
from task_market_service.services.payment_gate import PaymentGate
from task_market_service.services.task_store import TaskStore
from tests.helpers import payments_config

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(db_path=str(tmp_path / "task-market.db"))
    yield task_store
    task_store.close()


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def reputation() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def engine(store: TaskStore, notifier: AsyncMock) -> MatchingEngine:
    return MatchingEngine(store=store, notification_client=notifier, time_tolerance_seconds=60)


@pytest.fixture
def gate(store: TaskStore, notifier: AsyncMock) -> PaymentGate:
    return PaymentGate(store=store, notification_client=notifier, config=payments_config())


@pytest.fixture
def coordinator(store: TaskStore, reputation: AsyncMock) -> CompletionCoordinator:
    return CompletionCoordinator(store=store, reputation_client=reputation)


@pytest.fixture
def chat_policy(store: TaskStore) -> ChatAccessPolicy:
    return ChatAccessPolicy(store=store)
