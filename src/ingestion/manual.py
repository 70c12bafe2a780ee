from typing import Any, Dict, List

from core.entities import SourceType
from core.schemas import ManualFetcherConfig, RawItem
from ingestion.base import Fetcher


class ManualFetcher(Fetcher):
    """
    Items entered by hand live in the source config; duplicate detection
    keeps them from being ingested twice.
    """
    source_type = SourceType.MANUAL

    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        return list(self.parse_config(ManualFetcherConfig, config).items)
