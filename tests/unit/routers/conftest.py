"""Router test fixtures with mocked reputation and notification services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.config import clear_settings_cache
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from tests.helpers import config_yaml

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        config_yaml(db_path=str(tmp_path / "test.db"), log_directory=str(tmp_path / "logs"))
    )

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Notification mock: delivery always succeeds
        mock_notifier = AsyncMock()
        mock_notifier.notify = AsyncMock(return_value=True)
        mock_notifier.close = AsyncMock()
        state.notification_client = mock_notifier

        # Reputation mock: ratings and counters succeed
        mock_reputation = AsyncMock()
        mock_reputation.close = AsyncMock()
        state.reputation_client = mock_reputation

        # Propagate mocks to the components built during startup
        if state.matching_engine is not None:
            state.matching_engine._notification_client = mock_notifier
        if state.payment_gate is not None:
            state.payment_gate._notification_client = mock_notifier
        if state.completion_coordinator is not None:
            state.completion_coordinator._reputation_client = mock_reputation

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
