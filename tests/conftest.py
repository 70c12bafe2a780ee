"""
Pytest Configuration and Fixtures

Shared fixtures for all tests:
- a real SqliteStore in a temporary directory
- a scripted AI function and fetcher
- a controllable clock
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from core.entities import Source, SourceType
from core.schemas import RawItem
from ingestion.base import Fetcher
from services.config import PipelineTunables
from services.database import SqliteStore
from services.llm import AIFunction


FIXED_NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def run(coro):
    """Drive a coroutine to completion from a plain test function."""
    return asyncio.run(coro)


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeAIFunction(AIFunction):
    """
    Returns scripted outputs per task type. A scripted Exception is raised
    instead of returned; a list of outputs is consumed one call at a time.
    """

    def __init__(self, outputs: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.outputs = outputs or {}
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"type": task_type, "input": payload})
        if self.delay:
            await asyncio.sleep(self.delay)

        output = self.outputs.get(task_type, {})
        if isinstance(output, list):
            output = output.pop(0) if len(output) > 1 else output[0]
        if isinstance(output, Exception):
            raise output
        return output


class FakeFetcher(Fetcher):
    """
    Each fetch() returns the next scripted response; an Exception is raised.
    The last response repeats once the script runs out.
    """
    source_type = SourceType.MANUAL

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """A fresh SQLite store with all tables created."""
    sqlite_store = SqliteStore(str(tmp_path / "curation.db"))
    run(sqlite_store.init_tables())
    return sqlite_store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tunables():
    """Tunables with retries and backoff shrunk so tests never sleep."""
    return PipelineTunables(
        fetch_retry_attempts=1,
        fetch_retry_backoff_seconds=0,
        fetch_timeout_seconds=5,
        ai_backoff_seconds=0,
        ai_poll_interval_seconds=0.01,
        ai_wait_timeout_seconds=5,
    )


@pytest.fixture
def rss_source(store):
    """An ACTIVE RSS source stored in the database."""
    source = Source(name="Tech Feed", type=SourceType.RSS, url="https://example.com/feed.xml")
    return run(store.create(source))


@pytest.fixture
def manual_source(store):
    source = Source(name="Hand Picked", type=SourceType.MANUAL)
    return run(store.create(source))
