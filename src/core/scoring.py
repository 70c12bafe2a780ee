"""
Deterministic baseline scoring used before (or instead of) AI enrichment.
"""
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from core.entities import utcnow


@dataclass(frozen=True)
class FilterVerdict:
    """
    Result of the include/exclude keyword filter.
    """
    filtered: bool
    reason: str
    include_score: float
    exclude_score: float


def matched_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    """
    Keywords found in text as whole words (a trailing plural "s" is allowed),
    so "ai" does not match "raises".
    """
    text = text.lower()
    return [k for k in keywords if k and re.search(rf"\b{re.escape(k.lower())}s?\b", text)]


def keyword_score(text: str, keywords: Iterable[str], saturation: int = 3) -> float:
    """
    Fraction of the saturation count of keywords found in text, capped at 1.0.
    """
    if saturation <= 0:
        return 0.0
    return min(1.0, len(matched_keywords(text, keywords)) / saturation)


def filter_verdict(
    text: str,
    *,
    include_keywords: Iterable[str],
    exclude_keywords: Iterable[str],
    min_include_score: float,
    max_exclude_score: float,
) -> FilterVerdict:
    """
    Decides whether text looks off-topic. An exclude score above the cap,
    an include score under the floor, or exclude outweighing include all
    mark the item as filtered.
    """
    include = keyword_score(text, include_keywords)
    exclude = keyword_score(text, exclude_keywords)

    if exclude > max_exclude_score:
        return FilterVerdict(True, f"exclude score {exclude:.2f} above {max_exclude_score:.2f}", include, exclude)
    if include < min_include_score:
        return FilterVerdict(True, f"include score {include:.2f} below {min_include_score:.2f}", include, exclude)
    if exclude > include:
        return FilterVerdict(True, f"exclude score {exclude:.2f} outweighs include {include:.2f}", include, exclude)
    return FilterVerdict(False, f"include {include:.2f}, exclude {exclude:.2f}", include, exclude)


def recency_score(
    published_at: Optional[datetime],
    half_life_hours: float,
    now: Optional[datetime] = None,
) -> float:
    """
    Exponential decay on item age. Undated items get a neutral 0.5.
    """
    if published_at is None:
        return 0.5
    now = now or utcnow()
    age_hours = max(0.0, (now - published_at).total_seconds() / 3600)
    if half_life_hours <= 0:
        return 0.0
    return math.pow(0.5, age_hours / half_life_hours)


def categorize(text: str, category_keywords: Dict[str, List[str]], default: str) -> str:
    """
    Picks the category whose keywords match most often; ties keep config order.
    """
    best, best_hits = default, 0
    for category, keywords in category_keywords.items():
        hits = len(matched_keywords(text, keywords))
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def priority_for_score(score: float, high_threshold: float, medium_threshold: float) -> int:
    if score >= high_threshold:
        return 2
    if score >= medium_threshold:
        return 1
    return 0


def combine_scores(
    *,
    recency: float,
    trust: float,
    relevance: float,
    weights: Dict[str, float],
) -> float:
    """
    Weighted mean of the baseline components, clamped to [0, 1].
    """
    w_recency = weights.get("recency", 0.0)
    w_trust = weights.get("trust", 0.0)
    w_relevance = weights.get("relevance", 0.0)
    total = w_recency + w_trust + w_relevance
    if total <= 0:
        return 0.0
    score = (recency * w_recency + trust * w_trust + relevance * w_relevance) / total
    return round(max(0.0, min(1.0, score)), 4)
