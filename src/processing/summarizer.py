import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional

from core.entities import Content, TaskStatus
from core.errors import AIError
from processing.evaluator import parse_summary
from processing.orchestrator import AITaskOrchestrator

logger = logging.getLogger(__name__)


def _fingerprint(contents: List[Content]) -> str:
    return hashlib.sha256(",".join(c.id for c in contents).encode()).hexdigest()[:16]


class Summarizer(ABC):
    """
    Writes the summary paragraph of a daily digest.
    """

    @abstractmethod
    async def summarize(self, day: date, contents: List[Content]) -> str:
        raise NotImplementedError


class HeadlineSummarizer(Summarizer):
    def __init__(self, max_headlines: int = 5):
        self.max_headlines = max_headlines

    async def summarize(self, day: date, contents: List[Content]) -> str:
        if not contents:
            return f"No published content for {day.isoformat()}."

        headlines = "; ".join(c.title.strip() for c in contents[:self.max_headlines])
        remaining = len(contents) - self.max_headlines
        summary = f"{len(contents)} items for {day.isoformat()}: {headlines}"
        if remaining > 0:
            summary += f"; and {remaining} more"
        return summary + "."


class AITaskSummarizer(Summarizer):
    """
    Summary from a "summarize" AITask. Falls back to headlines when the task
    fails or times out, so a digest always gets written.
    """

    def __init__(
        self,
        orchestrator: AITaskOrchestrator,
        fallback: Optional[Summarizer] = None,
        timeout: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.fallback = fallback or HeadlineSummarizer()
        self.timeout = timeout

    async def summarize(self, day: date, contents: List[Content]) -> str:
        if not contents:
            return await self.fallback.summarize(day, contents)

        titles = [c.title for c in contents]
        try:
            # Keyed by the item set so a rebuild with new content asks again
            task_id = await self.orchestrator.submit(
                "summarize",
                {"date": day.isoformat(), "titles": titles},
                dedup_key=f"summarize:{day.isoformat()}:{_fingerprint(contents)}",
            )
            task = await self.orchestrator.wait_for(task_id, timeout=self.timeout)
            if task.status != TaskStatus.SUCCEEDED:
                raise AIError(task.error or "summarize task failed")
            return parse_summary(task.output or {})
        except AIError as e:
            logger.warning(f"AI summary failed, using headlines: {e}", extra={"digest_date": day.isoformat()})
            return await self.fallback.summarize(day, contents)
