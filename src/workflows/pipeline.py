"""
Wires the pipeline pools together on one event loop: source fetching,
AI task workers, and the driver for scoring sweeps and daily digests.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional

from core.entities import DailyDigest, utcnow
from ingestion.registry import FetcherRegistry
from ingestion.scheduler import IngestionScheduler, TickResult
from processing.classifier import ContentScorer
from processing.orchestrator import AITaskOrchestrator
from processing.summarizer import AITaskSummarizer, HeadlineSummarizer
from services.config import PipelineTunables, load_tunables
from services.llm import AIFunction
from services.scheduler import next_run_time, sleep_or_stop
from services.store import Store
from workflows.digest import DigestBuilder
from workflows.review import ReviewWorkflow

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    tick: Optional[TickResult] = None
    processed: int = 0
    recovered_tasks: int = 0
    digests: List[DailyDigest] = field(default_factory=list)


class ContentPipeline:
    """
    The long-running curation process. Every pool coordinates through the
    store only, so several ContentPipeline instances may share one database.
    """

    def __init__(
        self,
        store: Store,
        registry: FetcherRegistry,
        ai_function: Optional[AIFunction] = None,
        tunables: Optional[PipelineTunables] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.base_tunables = tunables or PipelineTunables()
        self.clock = clock

        self.scheduler = IngestionScheduler(store, registry, self.base_tunables, clock)
        self.orchestrator = (
            AITaskOrchestrator(store, ai_function, self.base_tunables, clock) if ai_function else None
        )
        self.scorer = ContentScorer(store, self.orchestrator, self.base_tunables, clock)
        self.digests = DigestBuilder(
            store,
            HeadlineSummarizer(),
            ai_summarizer=AITaskSummarizer(self.orchestrator) if self.orchestrator else None,
            tunables=self.base_tunables,
        )
        self.review = ReviewWorkflow(store, self.base_tunables, clock)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run every pool until stop_event is set."""
        logger.info("Starting content pipeline")
        loops = [self._ingestion_loop(stop_event), self._driver_loop(stop_event)]
        if self.orchestrator:
            loops.append(self.orchestrator.run(stop_event))
        else:
            logger.warning("No AI function configured, AI tasks will not run")

        await asyncio.gather(*loops)
        logger.info("Content pipeline stopped")

    async def run_once(self, digest_day: Optional[date] = None) -> RunSummary:
        """
        One pass of everything: a fetch tick, scoring until nothing RAW is
        left, stale task recovery and a digest build for `digest_day`
        (today, UTC, by default).
        """
        summary = RunSummary()
        summary.tick = await self.scheduler.tick()

        async with self._ai_workers():
            while True:
                processed = await self.scorer.sweep()
                if not processed:
                    break
                summary.processed += processed

            if self.orchestrator:
                summary.recovered_tasks = await self.orchestrator.recover_stale()

            summary.digests.append(await self.digests.build(digest_day or self.clock().date()))
        return summary

    async def build_digest(self, day: date) -> DailyDigest:
        """Build one day's digest with AI workers running for the summary task."""
        async with self._ai_workers():
            return await self.digests.build(day)

    @asynccontextmanager
    async def _ai_workers(self) -> AsyncIterator[None]:
        """AI workers for one-shot calls; the long-running loop starts its own."""
        if self.orchestrator is None:
            yield
            return
        stop = asyncio.Event()
        workers = asyncio.create_task(self.orchestrator.run(stop))
        try:
            yield
        finally:
            stop.set()
            await workers

    async def _ingestion_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.scheduler.tick()
            except Exception as e:
                logger.exception(f"Ingestion tick failed: {e}")

            interval = (await self._tunables()).tick_interval_seconds
            if await sleep_or_stop(stop_event, interval):
                break

    async def _driver_loop(self, stop_event: asyncio.Event) -> None:
        tunables = await self._tunables()
        next_digest = next_run_time(tunables.digest_cutoff_hour, self.clock())
        logger.info(f"Next digest build at {next_digest.isoformat()}")

        while not stop_event.is_set():
            try:
                await self.scorer.sweep()
                if self.orchestrator:
                    await self.orchestrator.recover_stale()
            except Exception as e:
                logger.exception(f"Scoring sweep failed: {e}")

            tunables = await self._tunables()
            now = self.clock()
            if now >= next_digest:
                # The cutoff closes the previous UTC day
                day = (now - timedelta(days=1)).date()
                try:
                    await self.digests.build(day)
                except Exception as e:
                    logger.exception(f"Digest build failed: {e}", extra={"digest_date": day.isoformat()})
                next_digest = next_run_time(tunables.digest_cutoff_hour, now)
                logger.info(f"Next digest build at {next_digest.isoformat()}")

            if await sleep_or_stop(stop_event, tunables.sweep_interval_seconds):
                break

    async def _tunables(self) -> PipelineTunables:
        return await load_tunables(self.store, self.base_tunables)
