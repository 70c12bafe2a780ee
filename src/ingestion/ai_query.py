"""
Ingestion by asking the AI function for items matching a query
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from core.entities import SourceType
from core.errors import AIInvocationError, AITimeout, FetchTimeout, FetchTransportError
from core.schemas import AIQueryFetcherConfig, RawItem
from ingestion.base import Fetcher
from services.llm import AIFunction

logger = logging.getLogger(__name__)


class AIQueryFetcher(Fetcher):
    source_type = SourceType.AI_QUERY

    def __init__(self, ai_function: AIFunction):
        self.ai_function = ai_function

    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        cfg = self.parse_config(AIQueryFetcherConfig, config)
        try:
            output = await self.ai_function.invoke(
                "query",
                {"query": cfg.query, "max_items": cfg.max_items, "language": cfg.language},
            )
        except AITimeout as e:
            raise FetchTimeout(str(e)) from e
        except AIInvocationError as e:
            raise FetchTransportError(str(e)) from e

        items: List[RawItem] = []
        for record in (output.get("items") or [])[: cfg.max_items]:
            try:
                items.append(RawItem.model_validate(record))
            except ValidationError:
                logger.warning(f"Skipping malformed AI query item: {record!r:.200}")

        logger.info(f"AI query '{cfg.query}' returned {len(items)} items")
        return items
