import hashlib
import html
import logging
import re
from typing import Iterable, List, Optional, Set

from core.schemas import RawItem

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")


def strip_html(text: str) -> str:
    return _SPACE_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", text))).strip()


def extract_summary(content: str, max_length: int = 200) -> str:
    """
    Plain-text summary of an HTML body, cut at a word boundary when one
    falls in the last fifth of the allowed length.
    """
    text = strip_html(content)
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


def content_hash(title: str, body: Optional[str] = None) -> str:
    """
    Duplicate-detection key for items whose url is missing or unstable.
    """
    normalized = _SPACE_RE.sub(" ", f"{title} {strip_html(body or '')}".lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def item_hash(item: RawItem) -> str:
    return content_hash(item.title, item.body or item.description)


def filter_duplicates(
    items: Iterable[RawItem],
    *,
    existing_urls: Set[str],
    existing_hashes: Set[str],
) -> List[RawItem]:
    """
    Drop items whose url or content hash is already known, including
    repeats inside the batch itself.

    Returns:
        List of items that are NOT duplicates
    """
    seen_urls = set(existing_urls)
    seen_hashes = set(existing_hashes)
    unique_items = []

    for item in items:
        digest = item_hash(item)
        if item.url and item.url in seen_urls:
            logger.debug(f"Skipping duplicate url: {item.url}")
            continue
        if digest in seen_hashes:
            logger.debug(f"Skipping duplicate content: {item.title}")
            continue

        unique_items.append(item)
        seen_hashes.add(digest)
        if item.url:
            seen_urls.add(item.url)

    return unique_items
