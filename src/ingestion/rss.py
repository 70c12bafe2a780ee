"""
Ingestion from RSS sources
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
import httpx

from core.entities import SourceType
from core.errors import FetchError, FetchTransportError
from core.schemas import RawItem, RSSFetcherConfig
from ingestion.base import Fetcher
from ingestion.http import http_get
from processing.prefilter import extract_summary

logger = logging.getLogger(__name__)


def _published(entry: Any) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
    return None


def _image_url(entry: Any) -> Optional[str]:
    for enclosure in entry.get("enclosures", []):
        if str(enclosure.get("type", "")).startswith("image/"):
            return enclosure.get("href") or enclosure.get("url")
    thumbnails = entry.get("media_thumbnail") or []
    if thumbnails:
        return thumbnails[0].get("url")
    return None


def entry_to_item(entry: Any) -> RawItem:
    """
    Convert one feedparser entry into a candidate item.
    """
    body = None
    if entry.get("content"):
        body = entry["content"][0].get("value")
    body = body or entry.get("summary")

    description = entry.get("summary")
    if description:
        description = extract_summary(description)
    elif body:
        description = extract_summary(body)

    categories = [t.get("term") for t in entry.get("tags", []) if t.get("term")]

    return RawItem(
        title=(entry.get("title") or "").strip() or "Untitled",
        url=entry.get("link"),
        body=body,
        description=description,
        published_at=_published(entry),
        image_url=_image_url(entry),
        metadata={
            "guid": entry.get("id"),
            "creator": entry.get("author"),
            "original_categories": categories,
        },
    )


class RSSFetcher(Fetcher):
    source_type = SourceType.RSS

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def _parse(self, cfg: RSSFetcherConfig) -> Any:
        resp = await http_get(
            cfg.url,
            headers={"User-Agent": cfg.user_agent},
            timeout=self.timeout,
            transport=self.transport,
        )
        feed = feedparser.parse(resp.content)
        if feed.bozo and not feed.entries:
            raise FetchTransportError(f"Failed to parse RSS feed {cfg.url}: {feed.get('bozo_exception')}")
        return feed

    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        cfg = self.parse_config(RSSFetcherConfig, config)
        feed = await self._parse(cfg)

        items = [entry_to_item(entry) for entry in feed.entries[: cfg.max_items]]
        logger.info(f"Parsed RSS feed {cfg.url}: {len(items)} items")
        return items

    async def validate(self, url: str) -> Dict[str, Any]:
        """
        Check that a URL serves a parsable feed before a source is created.
        """
        try:
            feed = await self._parse(RSSFetcherConfig(url=url))
        except FetchError as e:
            return {"valid": False, "error": str(e)}

        return {
            "valid": True,
            "title": feed.feed.get("title"),
            "description": feed.feed.get("description"),
            "item_count": len(feed.entries),
        }
