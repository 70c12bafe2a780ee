"""
End-to-end tests: fetch -> score -> review -> digest on one store.
"""

import asyncio
from datetime import date

import pytest

from conftest import FakeAIFunction, FakeFetcher, run
from core.entities import (
    AITask,
    Content,
    ContentStatus,
    DailyDigest,
    ReviewAction,
    Source,
    SourceType,
    SystemConfig,
    TaskStatus,
)
from core.errors import FetchTransportError
from core.schemas import RawItem
from ingestion.registry import FetcherRegistry
from workflows import ContentPipeline


def _items(*titles):
    return [
        RawItem(title=title, url=f"https://example.com/{i}", body=f"{title} body")
        for i, title in enumerate(titles)
    ]


@pytest.fixture
def fast_tunables(tunables):
    tunables.tick_interval_seconds = 0.01
    tunables.sweep_interval_seconds = 0.01
    return tunables


def _pipeline(store, clock, tunables, fetcher, source_type=SourceType.RSS, ai=None):
    registry = FetcherRegistry()
    registry.register(source_type, fetcher)
    return ContentPipeline(store, registry, ai, tunables, clock=clock)


class TestRunOnce:

    def test_fetch_score_and_digest(self, store, clock, tunables, rss_source):
        """
        GIVEN an RSS source returning two stories
        WHEN the pipeline runs once
        THEN both stories are PROCESSED and an (empty) digest exists for today
        """
        pipeline = _pipeline(store, clock, tunables, FakeFetcher(_items("Chip launch", "Funding round")))

        summary = run(pipeline.run_once())

        assert summary.tick.total_new_items == 2
        assert summary.processed == 2
        assert run(store.count(Content, {"status": ContentStatus.PROCESSED})) == 2
        assert summary.digests[0].date == clock.now.date()
        assert summary.digests[0].total_items == 0

    def test_approved_content_reaches_digest(self, store, clock, tunables, rss_source):
        pipeline = _pipeline(store, clock, tunables, FakeFetcher(_items("Chip launch", "Funding round")))
        run(pipeline.run_once())
        chip = run(store.find_one(Content, {"title": "Chip launch"}))

        run(pipeline.review.apply(chip.id, "editor", ReviewAction.APPROVE))
        digest = run(pipeline.digests.build(clock.now.date()))

        assert digest.content_ids == [chip.id]
        assert run(store.count(DailyDigest)) == 1

    def test_ai_enrichment_during_run_once(self, store, clock, tunables):
        """AI workers run alongside the scoring sweep inside run_once."""
        source = run(store.create(Source(name="Model picks", type=SourceType.AI_QUERY)))
        ai = FakeAIFunction({"classify": {"score": 0.95, "category": "ai", "priority": 2}})
        pipeline = _pipeline(
            store, clock, tunables, FakeFetcher(_items("Open model released")), SourceType.AI_QUERY, ai,
        )

        summary = run(pipeline.run_once(digest_day=date(2024, 5, 9)))

        content = run(store.find_one(Content, {"source_id": source.id}))
        assert content.status == ContentStatus.PROCESSED
        assert content.score == 0.95
        assert content.category == "ai"
        assert summary.digests[0].date == date(2024, 5, 9)

    def test_failing_source_does_not_stop_run(self, store, clock, tunables, rss_source):
        pipeline = _pipeline(store, clock, tunables, FakeFetcher(FetchTransportError("down")))

        summary = run(pipeline.run_once())

        assert summary.tick.success_count == 0
        assert len(summary.tick.errors) == 1
        assert len(summary.digests) == 1


class TestDigestSummaries:

    def test_ai_summary_enabled_at_runtime(self, store, clock, tunables, rss_source):
        """
        GIVEN a pipeline built with the AI summary off and a SystemConfig row turning it on
        WHEN the digest is built
        THEN the AI summary is used
        """
        run(store.create(Content(
            title="Chip launch", source_id=rss_source.id, status=ContentStatus.PUBLISHED,
            published_at=clock.now.replace(hour=9),
        )))
        ai = FakeAIFunction({"summarize": {"summary": "One big chip story."}})
        pipeline = _pipeline(store, clock, tunables, FakeFetcher([]), ai=ai)
        run(store.create(SystemConfig(key="digest_use_ai_summary", value=True)))

        digest = run(pipeline.build_digest(clock.now.date()))

        assert digest.summary == "One big chip story."
        assert [c["type"] for c in ai.calls] == ["summarize"]

    def test_build_digest_runs_ai_workers(self, store, clock, tunables, rss_source):
        """
        GIVEN the AI summary enabled and no long-running pipeline
        WHEN a single digest is built
        THEN the summarize task is executed rather than left queued
        """
        tunables.digest_use_ai_summary = True
        run(store.create(Content(
            title="Chip launch", source_id=rss_source.id, status=ContentStatus.PUBLISHED,
            published_at=clock.now.replace(hour=9),
        )))
        ai = FakeAIFunction({"summarize": {"summary": "Chips everywhere."}})
        pipeline = _pipeline(store, clock, tunables, FakeFetcher([]), ai=ai)

        digest = run(asyncio.wait_for(pipeline.build_digest(clock.now.date()), timeout=2))

        assert digest.summary == "Chips everywhere."
        assert run(store.count(AITask, {"status": TaskStatus.SUCCEEDED})) == 1
        assert run(store.count(AITask, {"status": TaskStatus.QUEUED})) == 0

    def test_headlines_without_ai_function(self, store, clock, tunables, rss_source):
        run(store.create(SystemConfig(key="digest_use_ai_summary", value=True)))
        run(store.create(Content(
            title="Chip launch", source_id=rss_source.id, status=ContentStatus.PUBLISHED,
            published_at=clock.now.replace(hour=9),
        )))
        pipeline = _pipeline(store, clock, tunables, FakeFetcher([]))

        digest = run(pipeline.build_digest(clock.now.date()))

        assert digest.summary == "1 items for 2024-05-10: Chip launch."


class TestRun:

    def test_stops_on_event(self, store, clock, fast_tunables, rss_source):
        pipeline = _pipeline(store, clock, fast_tunables, FakeFetcher(_items("Chip launch")))

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(pipeline.run(stop))
            await asyncio.sleep(0.2)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        run(scenario())

        assert run(store.count(Content, {"status": ContentStatus.PROCESSED})) == 1

    def test_driver_builds_previous_day_digest_after_cutoff(self, store, clock, fast_tunables, rss_source):
        """
        GIVEN the driver started at 12:00 with an 08:00 cutoff
        WHEN the clock passes 08:00 the next day
        THEN the digest for the previous day is built
        """
        pipeline = _pipeline(store, clock, fast_tunables, FakeFetcher([]))

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(pipeline.run(stop))
            await asyncio.sleep(0.05)
            clock.advance(hours=21)
            for _ in range(200):
                if await store.count(DailyDigest):
                    break
                await asyncio.sleep(0.01)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        run(scenario())

        digest = run(store.find_one(DailyDigest, {}))
        assert digest.date == date(2024, 5, 10)
