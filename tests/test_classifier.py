"""
Tests for the content scorer/classifier.

Covers baseline heuristics, the RAW -> PROCESSING -> PROCESSED guard,
AI enrichment through the task orchestrator and sweep isolation.
"""

import asyncio

import pytest

from conftest import FakeAIFunction, run
from core.entities import Content, ContentStatus, ContentTag, Source, SourceType
from core.errors import AIInvocationError
from processing.classifier import ContentScorer
from processing.orchestrator import AITaskOrchestrator


def _raw(store, source, clock, **kwargs):
    values = {
        "title": "New GPU chip ships with faster battery",
        "source_id": source.id,
        "url": "https://example.com/gpu",
        "published_at": clock.now,
    }
    values.update(kwargs)
    return run(store.create(Content(**values)))


def _with_workers(orchestrator, coro):
    """Run coro while orchestrator workers drain AI tasks in the background."""
    async def scenario():
        stop = asyncio.Event()
        workers = asyncio.create_task(orchestrator.run(stop, workers=2))
        try:
            return await coro
        finally:
            stop.set()
            await workers
    return run(scenario())


@pytest.fixture
def ai_source(store):
    return run(store.create(Source(name="Ask the model", type=SourceType.AI_QUERY)))


# =============================================================================
# Baseline scoring
# =============================================================================

class TestBaseline:

    def test_raw_content_becomes_processed(self, store, clock, tunables, rss_source):
        """
        GIVEN a fresh RAW hardware story from an RSS source
        WHEN it is processed without AI
        THEN it is PROCESSED with a baseline score, category and tags
        """
        content = _raw(store, rss_source, clock, metadata={"original_categories": ["Hardware"]})
        scorer = ContentScorer(store, None, tunables, clock=clock)

        processed = run(scorer.process(content))

        assert processed.status == ContentStatus.PROCESSED
        assert processed.score == pytest.approx(0.75, abs=1e-3)
        assert processed.priority == 2
        assert processed.category == "hardware"
        assert processed.tags == ["chip", "battery", "hardware"]
        assert processed.metadata["filter"]["filtered"] is False
        assert run(store.count(ContentTag, {"content_id": content.id})) == 3

    def test_filtered_item_is_penalized(self, store, clock, tunables, rss_source):
        content = _raw(store, rss_source, clock, title="Step by step tutorial for a beginner")
        scorer = ContentScorer(store, None, tunables, clock=clock)

        processed = run(scorer.process(content.id))

        assert processed.metadata["filter"]["filtered"] is True
        assert processed.score < 0.5
        assert processed.category == tunables.default_category

    def test_source_trust_override(self, store, clock, tunables, rss_source):
        tunables.source_trust = {rss_source.name: 1.0}
        content = _raw(store, rss_source, clock)
        scorer = ContentScorer(store, None, tunables, clock=clock)

        processed = run(scorer.process(content))

        assert processed.metadata["baseline"]["trust"] == 1.0
        assert processed.score > 0.75


# =============================================================================
# Idempotence
# =============================================================================

class TestIdempotence:

    def test_second_process_is_noop(self, store, clock, tunables, rss_source):
        content = _raw(store, rss_source, clock)
        scorer = ContentScorer(store, None, tunables, clock=clock)

        first = run(scorer.process(content))
        second = run(scorer.process(content))

        assert second is None
        after = run(store.get_by_id(Content, content.id))
        assert after.status == ContentStatus.PROCESSED
        assert after.score == first.score
        assert after.updated_at == first.updated_at

    @pytest.mark.parametrize("status", [
        ContentStatus.PROCESSING,
        ContentStatus.PROCESSED,
        ContentStatus.REVIEWED,
        ContentStatus.PUBLISHED,
        ContentStatus.REJECTED,
    ])
    def test_non_raw_content_untouched(self, store, clock, tunables, rss_source, status):
        content = _raw(store, rss_source, clock, status=status, score=0.1)
        scorer = ContentScorer(store, None, tunables, clock=clock)

        assert run(scorer.process(content)) is None
        after = run(store.get_by_id(Content, content.id))
        assert after.status == status
        assert after.score == 0.1

    def test_concurrent_process_calls_score_once(self, store, clock, tunables, rss_source):
        content = _raw(store, rss_source, clock)
        scorer = ContentScorer(store, None, tunables, clock=clock)

        async def race():
            return await asyncio.gather(*(scorer.process(content.id) for _ in range(4)))

        results = run(race())

        assert sum(1 for r in results if r is not None) == 1


# =============================================================================
# AI enrichment
# =============================================================================

class TestAIEnrichment:

    def test_ai_classification_merged(self, store, clock, tunables, ai_source):
        """
        GIVEN content from an AI_QUERY source (configured for deeper analysis)
        WHEN it is processed while AI workers run
        THEN the classify task's score, category, priority and tags win
        """
        ai = FakeAIFunction({"classify": {"score": 0.9, "category": "AI", "tags": ["LLM", "chip"], "priority": 2}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        scorer = ContentScorer(store, orchestrator, tunables, clock=clock)
        content = _raw(store, ai_source, clock)

        processed = _with_workers(orchestrator, scorer.process(content))

        assert processed.status == ContentStatus.PROCESSED
        assert processed.score == 0.9
        assert processed.category == "ai"
        assert processed.priority == 2
        assert "llm" in processed.tags
        assert processed.tags.count("chip") == 1
        assert processed.metadata["ai_enrichment"]["status"] == "succeeded"
        assert ai.calls[0]["input"]["title"] == content.title

    def test_configured_category_triggers_ai(self, store, clock, tunables, rss_source):
        tunables.ai_categories = ["hardware"]
        ai = FakeAIFunction({"classify": {"score": 0.2}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        scorer = ContentScorer(store, orchestrator, tunables, clock=clock)
        content = _raw(store, rss_source, clock)

        processed = _with_workers(orchestrator, scorer.process(content))

        assert processed.score == 0.2
        assert processed.priority == 0

    def test_plain_rss_content_skips_ai(self, store, clock, tunables, rss_source):
        ai = FakeAIFunction({"classify": {"score": 0.2}})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        scorer = ContentScorer(store, orchestrator, tunables, clock=clock)
        content = _raw(store, rss_source, clock)

        run(scorer.process(content))

        assert ai.calls == []

    def test_ai_failure_keeps_baseline(self, store, clock, tunables, ai_source):
        """
        GIVEN an AI function that always fails
        WHEN content needing AI is processed
        THEN it still reaches PROCESSED with the baseline and the failure recorded
        """
        ai = FakeAIFunction({"classify": AIInvocationError("model offline")})
        orchestrator = AITaskOrchestrator(store, ai, tunables, clock=clock)
        scorer = ContentScorer(store, orchestrator, tunables, clock=clock)
        content = _raw(store, ai_source, clock)

        processed = _with_workers(orchestrator, scorer.process(content))

        assert processed.status == ContentStatus.PROCESSED
        assert processed.category == "hardware"
        enrichment = processed.metadata["ai_enrichment"]
        assert enrichment["status"] == "failed"
        assert "model offline" in enrichment["error"]
        assert enrichment["task_id"]

    def test_ai_wait_timeout_keeps_baseline(self, store, clock, tunables, ai_source):
        """No workers running: waiting for the task times out and the baseline is kept."""
        tunables.ai_wait_timeout_seconds = 0.05
        orchestrator = AITaskOrchestrator(store, FakeAIFunction(), tunables, clock=clock)
        scorer = ContentScorer(store, orchestrator, tunables, clock=clock)
        content = _raw(store, ai_source, clock)

        processed = run(scorer.process(content))

        assert processed.status == ContentStatus.PROCESSED
        assert processed.metadata["ai_enrichment"]["status"] == "failed"


# =============================================================================
# Sweep
# =============================================================================

class TestSweep:

    def test_sweep_processes_all_raw(self, store, clock, tunables, rss_source):
        for i in range(3):
            _raw(store, rss_source, clock, title=f"Chip story {i}", url=f"https://example.com/{i}")
        _raw(store, rss_source, clock, title="Already done", url="https://example.com/done",
             status=ContentStatus.PROCESSED)
        scorer = ContentScorer(store, None, tunables, clock=clock)

        assert run(scorer.sweep()) == 3
        assert run(store.count(Content, {"status": ContentStatus.PROCESSED})) == 4
        assert run(scorer.sweep()) == 0

    def test_sweep_isolates_failures(self, store, clock, tunables, rss_source, monkeypatch):
        good = _raw(store, rss_source, clock, title="Good chip story", url="https://example.com/good")
        bad = _raw(store, rss_source, clock, title="Bad story", url="https://example.com/bad")
        scorer = ContentScorer(store, None, tunables, clock=clock)
        original = scorer.baseline

        def flaky_baseline(content, source, tunables):
            if content.id == bad.id:
                raise RuntimeError("broken row")
            return original(content, source, tunables)

        monkeypatch.setattr(scorer, "baseline", flaky_baseline)

        assert run(scorer.sweep()) == 1
        assert run(store.get_by_id(Content, good.id)).status == ContentStatus.PROCESSED
        assert run(store.get_by_id(Content, bad.id)).status == ContentStatus.RAW
