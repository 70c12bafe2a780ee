"""
Tests for the daily digest builder and the digest summarizers.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import FakeAIFunction, run
from core.entities import Content, ContentStatus, DailyDigest, SystemConfig
from core.errors import NoQualifyingContent
from processing.orchestrator import AITaskOrchestrator
from processing.summarizer import AITaskSummarizer, HeadlineSummarizer
from workflows.digest import DigestBuilder


DAY = date(2024, 5, 10)


def _at(hour, minute=0, day=DAY):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _published(store, source, title, published_at, priority=0, score=0.5, status=ContentStatus.PUBLISHED):
    return run(store.create(Content(
        title=title,
        source_id=source.id,
        status=status,
        priority=priority,
        score=score,
        published_at=published_at,
    )))


# =============================================================================
# Content selection and ordering
# =============================================================================

class TestQualifyingContent:

    def test_priority_orders_digest(self, store, rss_source):
        """
        GIVEN two PUBLISHED items on the same day with priority 5 and 1
        WHEN the digest is built
        THEN the priority 5 item is listed first
        """
        low = _published(store, rss_source, "Low", _at(9), priority=1)
        high = _published(store, rss_source, "High", _at(10), priority=5)

        digest = run(DigestBuilder(store).build(DAY))

        assert digest.content_ids == [high.id, low.id]
        assert digest.total_items == 2

    def test_ties_break_by_score_then_publish_time(self, store, rss_source):
        later = _published(store, rss_source, "Later", _at(15), priority=1, score=0.5)
        earlier = _published(store, rss_source, "Earlier", _at(8), priority=1, score=0.5)
        better = _published(store, rss_source, "Better", _at(20), priority=1, score=0.9)

        contents = run(DigestBuilder(store).qualifying_content(DAY))

        assert [c.id for c in contents] == [better.id, earlier.id, later.id]

    def test_only_published_items_on_the_day(self, store, rss_source):
        inside = _published(store, rss_source, "Inside", _at(0))
        _published(store, rss_source, "Last night", _at(23, 59, day=DAY - timedelta(days=1)))
        _published(store, rss_source, "Tomorrow", _at(0, day=DAY + timedelta(days=1)))
        _published(store, rss_source, "Rejected", _at(12), status=ContentStatus.REJECTED)
        _published(store, rss_source, "Pending", _at(12), status=ContentStatus.PROCESSED)

        contents = run(DigestBuilder(store).qualifying_content(DAY))

        assert [c.id for c in contents] == [inside.id]

    def test_empty_day_raises(self, store):
        with pytest.raises(NoQualifyingContent):
            run(DigestBuilder(store).qualifying_content(DAY))


# =============================================================================
# Building
# =============================================================================

class TestBuild:

    def test_rebuild_replaces_same_row(self, store, rss_source):
        """
        GIVEN a digest already built for a day
        WHEN it is rebuilt after another item is published
        THEN the same row is updated in place with the new item list
        """
        first_item = _published(store, rss_source, "First", _at(9))
        builder = DigestBuilder(store)
        first = run(builder.build(DAY))

        second_item = _published(store, rss_source, "Second", _at(10), priority=3)
        second = run(builder.build(DAY))

        assert second.id == first.id
        assert second.content_ids == [second_item.id, first_item.id]
        assert run(store.count(DailyDigest)) == 1

    def test_identical_rebuild_is_stable(self, store, rss_source):
        _published(store, rss_source, "Only", _at(9))
        builder = DigestBuilder(store)

        first = run(builder.build(DAY))
        second = run(builder.build(DAY))

        assert (second.id, second.content_ids, second.summary) == (first.id, first.content_ids, first.summary)

    def test_empty_day_writes_empty_digest(self, store):
        digest = run(DigestBuilder(store).build(DAY))

        assert digest.date == DAY
        assert digest.title == "Daily Digest 2024-05-10"
        assert digest.content_ids == []
        assert digest.total_items == 0
        assert digest.summary == "No published content for 2024-05-10."


# =============================================================================
# Summarizers
# =============================================================================

class TestSummarizers:

    def test_headline_summary(self, store, rss_source):
        contents = [
            Content(title=f"Story {i}", source_id=rss_source.id) for i in range(7)
        ]

        summary = run(HeadlineSummarizer(max_headlines=2).summarize(DAY, contents))

        assert summary == "7 items for 2024-05-10: Story 0; Story 1; and 5 more."

    def test_ai_summary(self, store, clock, tunables, rss_source):
        ai = FakeAIFunction({"summarize": {"summary": "  Chips and funding dominated.  "}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        summarizer = AITaskSummarizer(orchestrator)
        contents = [Content(title="Chip launch", source_id=rss_source.id)]

        async def scenario():
            stop = asyncio.Event()
            workers = asyncio.create_task(orchestrator.run(stop, workers=1))
            try:
                return await summarizer.summarize(DAY, contents)
            finally:
                stop.set()
                await workers

        assert run(scenario()) == "Chips and funding dominated."
        assert ai.calls[0]["input"] == {"date": "2024-05-10", "titles": ["Chip launch"]}

    def test_ai_summary_falls_back_to_headlines(self, store, clock, tunables, rss_source):
        """No workers are running, so the task never finishes and headlines are used."""
        orchestrator = AITaskOrchestrator(store, FakeAIFunction(), tunables, clock=clock)
        summarizer = AITaskSummarizer(orchestrator, timeout=0.05)
        contents = [Content(title="Chip launch", source_id=rss_source.id)]

        summary = run(summarizer.summarize(DAY, contents))

        assert summary == "1 items for 2024-05-10: Chip launch."

    def test_ai_digest_build(self, store, clock, tunables, rss_source):
        item = _published(store, rss_source, "Chip launch", _at(9))
        ai = FakeAIFunction({"summarize": {"summary": "One big chip story."}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        builder = DigestBuilder(store, AITaskSummarizer(orchestrator))

        async def scenario():
            stop = asyncio.Event()
            workers = asyncio.create_task(orchestrator.run(stop, workers=1))
            try:
                return await builder.build(DAY)
            finally:
                stop.set()
                await workers

        digest = run(scenario())

        assert digest.summary == "One big chip story."
        assert digest.content_ids == [item.id]

    def test_ai_summarizer_follows_runtime_tunable(self, store, clock, tunables, rss_source):
        """
        GIVEN a builder holding an AI summarizer and the AI summary off
        WHEN the tunable is switched on through SystemConfig between builds
        THEN the first build uses headlines and the second asks the AI
        """
        _published(store, rss_source, "Chip launch", _at(9))
        ai = FakeAIFunction({"summarize": {"summary": "One big chip story."}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        builder = DigestBuilder(store, HeadlineSummarizer(), ai_summarizer=AITaskSummarizer(orchestrator), tunables=tunables)

        async def scenario():
            stop = asyncio.Event()
            workers = asyncio.create_task(orchestrator.run(stop, workers=1))
            try:
                first = await builder.build(DAY)
                await store.create(SystemConfig(key="digest_use_ai_summary", value=True))
                second = await builder.build(DAY)
                return first, second
            finally:
                stop.set()
                await workers

        first, second = run(scenario())

        assert first.summary == "1 items for 2024-05-10: Chip launch."
        assert second.summary == "One big chip story."
        assert [c["type"] for c in ai.calls] == ["summarize"]
