"""Shared fixtures: in-memory persistence, a mocked httpx client, a recording sleep."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from deploygate.services.persistence import MemoryPersistence


def make_response(status_code: int = 200, text: str = "ok"):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


class RecordingSleep:
    """Stands in for asyncio.sleep: records the delay and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def mock_client():
    client = AsyncMock()
    client.post = AsyncMock(return_value=make_response(200))
    return client


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
