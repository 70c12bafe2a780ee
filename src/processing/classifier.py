"""
Content Scorer/Classifier - turns RAW content into scored, categorized,
tagged PROCESSED content.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from core.entities import Content, ContentStatus, ContentTag, Source, TaskStatus, utcnow
from core.errors import AIError
from core.scoring import (
    categorize,
    combine_scores,
    filter_verdict,
    keyword_score,
    matched_keywords,
    priority_for_score,
    recency_score,
)
from processing.evaluator import parse_classification
from processing.orchestrator import AITaskOrchestrator
from services.config import PipelineTunables, load_tunables
from services.store import Store

logger = logging.getLogger(__name__)

MAX_TAGS = 10


@dataclass
class Assessment:
    score: float
    priority: int
    category: str
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _merge_tags(*groups: List[str]) -> List[str]:
    seen: List[str] = []
    for group in groups:
        for tag in group or []:
            tag = str(tag).strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
    return seen[:MAX_TAGS]


class ContentScorer:
    """
    Scores RAW content with cheap heuristics and, for configured categories
    or source types, an AI classify task.

    Only content this scorer moved RAW -> PROCESSING is touched, so running
    process() twice (or from two sweeps at once) changes nothing the second
    time.
    """

    def __init__(
        self,
        store: Store,
        orchestrator: Optional[AITaskOrchestrator] = None,
        tunables: Optional[PipelineTunables] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.base_tunables = tunables or PipelineTunables()
        self.clock = clock

    async def process(
        self,
        content: Union[Content, str],
        tunables: Optional[PipelineTunables] = None,
    ) -> Optional[Content]:
        """
        Score one content row.

        Returns:
            The PROCESSED content, or None if it was not RAW (already
            handled, or handled elsewhere).
        """
        content_id = content if isinstance(content, str) else content.id
        claimed = await self.store.update(
            Content,
            content_id,
            {"status": ContentStatus.PROCESSING},
            expected={"status": ContentStatus.RAW},
        )
        if claimed is None:
            logger.debug("Content not RAW, skipping", extra={"content_id": content_id})
            return None

        try:
            tunables = tunables or await load_tunables(self.store, self.base_tunables)
            source = await self.store.get_by_id(Source, claimed.source_id)
            assessment = self.baseline(claimed, source, tunables)

            if self._needs_ai(assessment, source, tunables):
                await self._enrich(claimed, assessment, tunables)

            return await self._finalize(claimed, assessment)
        except Exception:
            # Hand the row back so the next sweep retries it
            await self.store.update(
                Content,
                content_id,
                {"status": ContentStatus.RAW},
                expected={"status": ContentStatus.PROCESSING},
            )
            raise

    def baseline(self, content: Content, source: Optional[Source], tunables: PipelineTunables) -> Assessment:
        text = " ".join(filter(None, [content.title, content.description, content.content]))

        recency = recency_score(content.published_at, tunables.recency_half_life_hours, self.clock())
        trust = self._trust(source, tunables)
        relevance = keyword_score(text, tunables.include_keywords)
        score = combine_scores(
            recency=recency,
            trust=trust,
            relevance=relevance,
            weights=tunables.score_weights,
        )

        verdict = filter_verdict(
            text,
            include_keywords=tunables.include_keywords,
            exclude_keywords=tunables.exclude_keywords,
            min_include_score=tunables.min_include_score,
            max_exclude_score=tunables.max_exclude_score,
        )
        if verdict.filtered:
            score = round(score * tunables.filtered_score_penalty, 4)

        metadata = {
            "filter": {"filtered": verdict.filtered, "reason": verdict.reason},
            "baseline": {"recency": round(recency, 4), "trust": trust, "relevance": round(relevance, 4)},
        }

        original_categories = (content.metadata or {}).get("original_categories") or []
        tags = _merge_tags(
            content.tags,
            matched_keywords(text, tunables.include_keywords),
            original_categories,
        )

        return Assessment(
            score=score,
            priority=priority_for_score(score, tunables.high_priority_threshold, tunables.medium_priority_threshold),
            category=categorize(text, tunables.category_keywords, tunables.default_category),
            tags=tags,
            metadata=metadata,
        )

    async def sweep(self, limit: Optional[int] = None) -> int:
        """
        Process RAW content oldest first. One bad item never stops the sweep.
        """
        tunables = await load_tunables(self.store, self.base_tunables)
        pending = await self.store.find_many(
            Content,
            {"status": ContentStatus.RAW},
            order_by=["created_at"],
            limit=limit or tunables.scorer_batch_size,
        )
        if not pending:
            return 0

        semaphore = asyncio.Semaphore(tunables.scorer_concurrency)

        async def guarded(content: Content) -> Optional[Content]:
            async with semaphore:
                return await self.process(content, tunables)

        outcomes = await asyncio.gather(*(guarded(c) for c in pending), return_exceptions=True)

        processed = 0
        for content, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Scoring failed for {content.title}: {outcome}", extra={"content_id": content.id})
            elif outcome is not None:
                processed += 1

        logger.info(f"Scored {processed}/{len(pending)} RAW items")
        return processed

    # ----------------------------
    # Internals
    # ----------------------------
    @staticmethod
    def _trust(source: Optional[Source], tunables: PipelineTunables) -> float:
        if source is None:
            return tunables.default_source_trust
        for key in (source.id, source.name, source.type.value):
            if key in tunables.source_trust:
                return tunables.source_trust[key]
        return tunables.default_source_trust

    def _needs_ai(self, assessment: Assessment, source: Optional[Source], tunables: PipelineTunables) -> bool:
        if self.orchestrator is None:
            return False
        if assessment.category in tunables.ai_categories:
            return True
        return source is not None and source.type.value in tunables.ai_source_types

    async def _enrich(self, content: Content, assessment: Assessment, tunables: PipelineTunables) -> None:
        """
        Merge an AI classification into the assessment. Failures keep the
        baseline and are recorded under metadata.ai_enrichment.
        """
        task_id = None
        try:
            task_id = await self.orchestrator.submit(
                "classify",
                {"title": content.title, "body": content.content or content.description or ""},
                dedup_key=f"classify:{content.id}",
            )
            task = await self.orchestrator.wait_for(task_id, timeout=tunables.ai_wait_timeout_seconds)
            if task.status != TaskStatus.SUCCEEDED:
                raise AIError(task.error or "classify task failed")
            result = parse_classification(task.output or {})
        except AIError as e:
            logger.warning(f"AI enrichment failed for {content.title}: {e}", extra={"content_id": content.id})
            assessment.metadata["ai_enrichment"] = {"status": "failed", "error": str(e), "task_id": task_id}
            return

        if result.score is not None:
            assessment.score = round(result.score, 4)
            assessment.priority = priority_for_score(
                assessment.score, tunables.high_priority_threshold, tunables.medium_priority_threshold
            )
        if result.priority is not None:
            assessment.priority = max(0, result.priority)
        if result.category:
            assessment.category = result.category.strip().lower()
        assessment.tags = _merge_tags(assessment.tags, result.tags)
        enrichment: Dict[str, Any] = {"status": "succeeded", "task_id": task_id}
        if result.summary:
            enrichment["summary"] = result.summary
        assessment.metadata["ai_enrichment"] = enrichment

    async def _finalize(self, content: Content, assessment: Assessment) -> Optional[Content]:
        async with self.store.transaction() as store:
            updated = await store.update(
                Content,
                content.id,
                {
                    "status": ContentStatus.PROCESSED,
                    "score": assessment.score,
                    "priority": assessment.priority,
                    "category": assessment.category,
                    "tags": assessment.tags,
                    "metadata": {**(content.metadata or {}), **assessment.metadata},
                },
                expected={"status": ContentStatus.PROCESSING},
            )
            if updated is None:
                logger.warning("Content left PROCESSING before scoring finished", extra={"content_id": content.id})
                return None
            for tag in assessment.tags:
                await store.upsert(ContentTag, {"content_id": content.id, "tag": tag}, {})

        logger.info(
            f"Processed {content.title}: score={assessment.score} priority={assessment.priority} "
            f"category={assessment.category}",
            extra={"content_id": content.id},
        )
        return updated
