"""
Ingestion from generic JSON APIs
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from core.entities import SourceType
from core.errors import FetchTransportError
from core.schemas import APIFetcherConfig, RawItem
from ingestion.base import Fetcher
from ingestion.http import http_get

logger = logging.getLogger(__name__)


def _dig(data: Any, path: str) -> Any:
    for part in [p for p in path.split(".") if p]:
        if isinstance(data, dict):
            data = data.get(part)
        else:
            return None
    return data


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class APIFetcher(Fetcher):
    source_type = SourceType.API

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, config: Dict[str, Any]) -> List[RawItem]:
        cfg = self.parse_config(APIFetcherConfig, config)
        resp = await http_get(
            cfg.url,
            headers=cfg.headers,
            params=cfg.params,
            timeout=self.timeout,
            transport=self.transport,
        )

        try:
            data = resp.json()
        except ValueError as e:
            raise FetchTransportError(f"API {cfg.url} returned invalid JSON") from e

        records = data if isinstance(data, list) else _dig(data, cfg.items_path)
        if not isinstance(records, list):
            raise FetchTransportError(f"API {cfg.url}: no list at '{cfg.items_path}'")

        items: List[RawItem] = []
        for record in records[: cfg.max_items]:
            if not isinstance(record, dict):
                continue
            title = _dig(record, cfg.title_field)
            if not title:
                continue
            try:
                items.append(
                    RawItem(
                        title=str(title).strip(),
                        url=_dig(record, cfg.url_field),
                        body=_dig(record, cfg.body_field),
                        published_at=_parse_timestamp(_dig(record, cfg.published_at_field)),
                        image_url=_dig(record, cfg.image_url_field),
                    )
                )
            except ValidationError:
                logger.warning(f"Skipping malformed API record from {cfg.url}: {record!r:.200}")

        logger.info(f"Fetched {len(items)} items from API {cfg.url}")
        return items
