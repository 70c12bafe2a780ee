"""
Ingestion Scheduler - decides which sources are due and fetches them safely.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.entities import Content, Source, SourceStatus, SourceType, utcnow
from core.errors import (
    DuplicateRowError,
    FetchError,
    FetchRateLimited,
    FetchTimeout,
    FetchTransportError,
)
from core.schemas import RawItem
from ingestion.base import Fetcher
from ingestion.registry import FetcherRegistry
from processing.prefilter import extract_summary, filter_duplicates, item_hash
from services.config import PipelineTunables, load_tunables
from services.scheduler import is_due
from services.store import Increment, Store

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY = "rate_limited_until"
_INTERNAL_CONFIG_KEYS = (RATE_LIMIT_KEY,)


@dataclass
class FetchResult:
    source_id: str
    success: bool = False
    new_items: int = 0
    error: Optional[str] = None
    rate_limited: bool = False
    skipped: bool = False


@dataclass
class TickResult:
    total_sources: int = 0
    success_count: int = 0
    total_new_items: int = 0
    skipped: int = 0
    rate_limited: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


def _resume_time(source: Source) -> Optional[datetime]:
    value = (source.config or {}).get(RATE_LIMIT_KEY)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def _without_internal_keys(config: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (config or {}).items() if k not in _INTERNAL_CONFIG_KEYS}


class IngestionScheduler:
    """
    Pulls content from due sources into the store as RAW Content.

    Holds no scheduling state of its own: due sources are a store query and
    single-flight is a lease column claimed by conditional update, so any
    number of scheduler instances can share one store.
    """

    def __init__(
        self,
        store: Store,
        registry: FetcherRegistry,
        tunables: Optional[PipelineTunables] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.base_tunables = tunables or PipelineTunables()
        self.clock = clock

    async def due_sources(self, tunables: PipelineTunables) -> List[Source]:
        now = self.clock()
        active = await self.store.find_many(
            Source,
            {"status": SourceStatus.ACTIVE},
            order_by=["last_fetch_at"],
        )
        due = [
            source for source in active
            if is_due(
                source.last_fetch_at,
                timedelta(minutes=tunables.fetch_interval_for(source.type.value)),
                now,
            )
        ]

        for source in await self.store.find_many(Source, {"status": SourceStatus.RATE_LIMITED}):
            resume = _resume_time(source)
            if resume is not None and resume > now:
                continue
            promoted = await self.store.update(
                Source,
                source.id,
                {"status": SourceStatus.ACTIVE, "config": _without_internal_keys(source.config)},
                expected={"status": SourceStatus.RATE_LIMITED},
            )
            if promoted:
                logger.info(f"Source {source.name} cool-down elapsed, back to ACTIVE", extra={"source_id": source.id})
                due.append(promoted)

        return due

    async def tick(self) -> TickResult:
        tunables = await load_tunables(self.store, self.base_tunables)
        sources = await self.due_sources(tunables)
        result = TickResult(total_sources=len(sources))
        if not sources:
            return result

        logger.info(f"Fetching {len(sources)} due sources (concurrency {tunables.fetch_concurrency})")
        semaphore = asyncio.Semaphore(tunables.fetch_concurrency)

        async def guarded(source: Source) -> FetchResult:
            async with semaphore:
                return await self.fetch_one(source, tunables=tunables)

        outcomes = await asyncio.gather(*(guarded(s) for s in sources), return_exceptions=True)

        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error fetching {source.name}: {outcome}", extra={"source_id": source.id})
                result.errors.append({"source_id": source.id, "error": str(outcome)})
            elif outcome.skipped:
                result.skipped += 1
            elif outcome.rate_limited:
                result.rate_limited += 1
            elif outcome.success:
                result.success_count += 1
                result.total_new_items += outcome.new_items
            elif outcome.error:
                result.errors.append({"source_id": source.id, "error": outcome.error})

        logger.info(
            f"Tick complete: {result.success_count}/{result.total_sources} sources ok, "
            f"{result.total_new_items} new items, {result.rate_limited} rate limited, {len(result.errors)} errors"
        )
        return result

    async def fetch_one(self, source: Source, tunables: Optional[PipelineTunables] = None) -> FetchResult:
        tunables = tunables or await load_tunables(self.store, self.base_tunables)
        result = FetchResult(source_id=source.id)

        if not await self._claim(source, tunables):
            logger.info(f"Source {source.name} is already being fetched, skipping", extra={"source_id": source.id})
            result.skipped = True
            return result

        try:
            fetcher = self.registry.resolve(source.type)
            items = await self._fetch_with_retry(fetcher, self._fetch_config(source), tunables)
        except FetchRateLimited as e:
            await self._mark_rate_limited(source, e, tunables)
            result.rate_limited = True
            result.error = str(e)
        except FetchError as e:
            await self._record_failure(source, e, tunables)
            result.error = str(e)
        else:
            # Retirement may land while the fetch is in flight; store nothing for a source that left ACTIVE
            async with self.store.transaction() as store:
                current = await store.get_by_id(Source, source.id)
                if current is not None and current.status == SourceStatus.ACTIVE:
                    result.new_items = await self._store_items(source, items)
                    await self._record_success(source)
                    result.success = True

            if result.success:
                logger.info(
                    f"Fetched {source.name}: {len(items)} candidates, {result.new_items} new",
                    extra={"source_id": source.id},
                )
            else:
                result.skipped = True
                logger.info(
                    f"Source {source.name} left ACTIVE during the fetch, discarding {len(items)} items",
                    extra={"source_id": source.id},
                )
        finally:
            await self.store.update(Source, source.id, {"fetch_lease_until": None})

        return result

    async def reactivate_source(self, source_id: str) -> Optional[Source]:
        """
        Operator action: put an ERROR/INACTIVE/RATE_LIMITED source back in rotation.
        """
        source = await self.store.get_by_id(Source, source_id)
        if source is None:
            return None
        return await self.store.update(
            Source,
            source_id,
            {
                "status": SourceStatus.ACTIVE,
                "error_count": 0,
                "last_error": None,
                "config": _without_internal_keys(source.config),
            },
            expected={"status__in": [SourceStatus.ERROR, SourceStatus.INACTIVE, SourceStatus.RATE_LIMITED]},
        )

    async def source_stats(self) -> Dict[str, Any]:
        return {
            "total": await self.store.count(Source),
            "by_status": {
                status.value: await self.store.count(Source, {"status": status})
                for status in SourceStatus
            },
            "by_type": {
                source_type.value: await self.store.count(Source, {"type": source_type})
                for source_type in SourceType
            },
        }

    # ----------------------------
    # Internals
    # ----------------------------
    async def _claim(self, source: Source, tunables: PipelineTunables) -> bool:
        now = self.clock()
        lease = tunables.fetch_timeout_seconds * tunables.fetch_retry_attempts + 60
        claimed = await self.store.update(
            Source,
            source.id,
            {"fetch_lease_until": now + timedelta(seconds=lease)},
            expected={
                "$or": [
                    {"fetch_lease_until__isnull": True},
                    {"fetch_lease_until__lt": now},
                ],
            },
        )
        return claimed is not None

    @staticmethod
    def _fetch_config(source: Source) -> Dict[str, Any]:
        config = _without_internal_keys(source.config)
        if source.url:
            config.setdefault("url", source.url)
        return config

    async def _fetch_with_retry(
        self,
        fetcher: Fetcher,
        config: Dict[str, Any],
        tunables: PipelineTunables,
    ) -> List[RawItem]:
        last_error: Optional[FetchError] = None

        for attempt in range(1, tunables.fetch_retry_attempts + 1):
            try:
                return await asyncio.wait_for(fetcher.fetch(config), timeout=tunables.fetch_timeout_seconds)
            except asyncio.TimeoutError:
                last_error = FetchTimeout(f"Fetch timed out after {tunables.fetch_timeout_seconds}s")
            except (FetchTimeout, FetchTransportError) as e:
                last_error = e
            except FetchError:
                raise
            except Exception as e:
                # Plugged-in fetchers may leak library errors; they count as transport failures.
                last_error = FetchTransportError(f"{type(e).__name__}: {e}")

            if attempt < tunables.fetch_retry_attempts:
                delay = tunables.fetch_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Fetch attempt {attempt}/{tunables.fetch_retry_attempts} failed: {last_error}, retrying in {delay}s")
                await asyncio.sleep(delay)

        raise last_error

    async def _store_items(self, source: Source, items: List[RawItem]) -> int:
        if not items:
            return 0

        urls = [item.url for item in items if item.url]
        hashes = [item_hash(item) for item in items]
        existing_urls = {
            c.url for c in await self.store.find_many(Content, {"source_id": source.id, "url__in": urls})
        } if urls else set()
        existing_hashes = {
            c.content_hash for c in await self.store.find_many(Content, {"source_id": source.id, "content_hash__in": hashes})
        }

        unique_items = filter_duplicates(items, existing_urls=existing_urls, existing_hashes=existing_hashes)
        now = self.clock()
        created = 0

        for item in unique_items:
            description = item.description
            if not description and item.body:
                description = extract_summary(item.body)

            content = Content(
                title=item.title,
                description=description,
                content=item.body,
                url=item.url,
                image_url=item.image_url,
                source_id=source.id,
                source_url=item.url,
                published_at=item.published_at,
                metadata={**item.metadata, "fetched_at": now.isoformat()},
                content_hash=item_hash(item),
            )
            try:
                await self.store.create(content)
                created += 1
            except DuplicateRowError:
                logger.debug(f"Content already stored concurrently: {item.title}", extra={"source_id": source.id})

        return created

    async def _record_success(self, source: Source) -> None:
        await self.store.update(
            Source,
            source.id,
            {
                "fetch_count": Increment(1),
                "last_fetch_at": self.clock(),
                "status": SourceStatus.ACTIVE,
                "error_count": 0,
                "last_error": None,
            },
            expected={"status": SourceStatus.ACTIVE},
        )

    async def _record_failure(self, source: Source, error: FetchError, tunables: PipelineTunables) -> None:
        logger.warning(f"Fetch failed for {source.name}: {error}", extra={"source_id": source.id})
        updated = await self.store.update(
            Source,
            source.id,
            {
                "error_count": Increment(1),
                "last_error": str(error)[:1000],
                "last_fetch_at": self.clock(),
            },
            expected={"status": SourceStatus.ACTIVE},
        )
        if updated and updated.error_count >= tunables.fetch_error_threshold:
            await self.store.update(
                Source,
                source.id,
                {"status": SourceStatus.ERROR},
                expected={"status": SourceStatus.ACTIVE},
            )
            logger.error(
                f"Source {source.name} moved to ERROR after {updated.error_count} consecutive failures",
                extra={"source_id": source.id},
            )

    async def _mark_rate_limited(self, source: Source, error: FetchRateLimited, tunables: PipelineTunables) -> None:
        now = self.clock()
        wait = error.retry_after if error.retry_after is not None else tunables.rate_limit_cooldown_seconds
        resume = now + timedelta(seconds=wait)
        config = dict(source.config or {})
        config[RATE_LIMIT_KEY] = resume.isoformat()

        await self.store.update(
            Source,
            source.id,
            {
                "status": SourceStatus.RATE_LIMITED,
                "config": config,
                "last_error": str(error)[:1000],
                "last_fetch_at": now,
            },
            expected={"status": SourceStatus.ACTIVE},
        )
        logger.warning(f"Source {source.name} rate limited until {resume.isoformat()}", extra={"source_id": source.id})
