"""
Digest Builder - one DailyDigest row per calendar day of published content.
"""
import logging
from datetime import date
from typing import List, Optional

from core.entities import Content, ContentStatus, DailyDigest
from core.errors import NoQualifyingContent
from processing.summarizer import HeadlineSummarizer, Summarizer
from services.config import PipelineTunables, load_tunables
from services.scheduler import day_window
from services.store import Store

logger = logging.getLogger(__name__)

DIGEST_ORDER = ["-priority", "-score", "published_at"]


class DigestBuilder:
    """
    Builds daily digests. When an AI summarizer is given it is used only
    while the digest_use_ai_summary tunable is on, read at every build.
    """

    def __init__(
        self,
        store: Store,
        summarizer: Optional[Summarizer] = None,
        ai_summarizer: Optional[Summarizer] = None,
        tunables: Optional[PipelineTunables] = None,
    ):
        self.store = store
        self.summarizer = summarizer or HeadlineSummarizer()
        self.ai_summarizer = ai_summarizer
        self.base_tunables = tunables or PipelineTunables()

    async def summarizer_for_build(self) -> Summarizer:
        if self.ai_summarizer is None:
            return self.summarizer
        tunables = await load_tunables(self.store, self.base_tunables)
        return self.ai_summarizer if tunables.digest_use_ai_summary else self.summarizer

    async def qualifying_content(self, day: date) -> List[Content]:
        """
        PUBLISHED content whose published_at falls on `day` (UTC), best first.

        Raises:
            NoQualifyingContent: nothing was published that day.
        """
        start, end = day_window(day)
        contents = await self.store.find_many(
            Content,
            {
                "status": ContentStatus.PUBLISHED,
                "published_at__gte": start,
                "published_at__lt": end,
            },
            order_by=DIGEST_ORDER,
        )
        if not contents:
            raise NoQualifyingContent(f"No published content for {day.isoformat()}")
        return contents

    async def build(self, day: date) -> DailyDigest:
        """
        Create or fully replace the digest for `day`. A day with no
        published content still gets an (empty) digest row.
        """
        extra = {"digest_date": day.isoformat()}
        try:
            contents = await self.qualifying_content(day)
        except NoQualifyingContent as e:
            logger.info(f"{e}, writing empty digest", extra=extra)
            contents = []

        summarizer = await self.summarizer_for_build()
        summary = await summarizer.summarize(day, contents)
        digest = await self.store.upsert(
            DailyDigest,
            {"date": day},
            {
                "title": f"Daily Digest {day.isoformat()}",
                "summary": summary,
                "content_ids": [c.id for c in contents],
                "total_items": len(contents),
            },
        )
        logger.info(f"Built digest with {digest.total_items} items", extra=extra)
        return digest
