"""
Fetcher Registry - Maps source types to fetch strategies.
"""
import logging
from typing import Dict, Optional

from core.entities import SourceType
from core.errors import UnknownSourceType
from ingestion.ai_query import AIQueryFetcher
from ingestion.api import APIFetcher
from ingestion.base import Fetcher
from ingestion.manual import ManualFetcher
from ingestion.rss import RSSFetcher
from services.llm import AIFunction

logger = logging.getLogger(__name__)


class FetcherRegistry:
    def __init__(self):
        self._fetchers: Dict[SourceType, Fetcher] = {}

    def register(self, source_type: SourceType | str, fetcher: Fetcher) -> None:
        source_type = SourceType(source_type)
        if source_type in self._fetchers:
            logger.info(f"Replacing fetcher for {source_type.value}")
        self._fetchers[source_type] = fetcher

    def resolve(self, source_type: SourceType | str) -> Fetcher:
        """
        Raises:
            UnknownSourceType: If no fetcher is registered for the type
        """
        try:
            return self._fetchers[SourceType(source_type)]
        except (KeyError, ValueError):
            value = getattr(source_type, "value", source_type)
            raise UnknownSourceType(f"No fetcher registered for source type: {value}")

    def __contains__(self, source_type: object) -> bool:
        try:
            return SourceType(source_type) in self._fetchers
        except ValueError:
            return False


def create_default_registry(ai_function: Optional[AIFunction] = None) -> FetcherRegistry:
    """
    Registry with the built-in fetchers. EMAIL has no built-in fetcher;
    hosts register their own mailbox reader.
    """
    registry = FetcherRegistry()
    registry.register(SourceType.RSS, RSSFetcher())
    registry.register(SourceType.API, APIFetcher())
    registry.register(SourceType.MANUAL, ManualFetcher())

    if ai_function is not None:
        registry.register(SourceType.AI_QUERY, AIQueryFetcher(ai_function))
    else:
        logger.warning("No AI function configured, AI_QUERY sources will fail")

    return registry
