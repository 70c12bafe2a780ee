"""
Typed views over the opaque JSON documents (Source.config, AITask output).
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class RawItem(BaseModel):
    """
    Candidate item produced by a fetcher, before it becomes a Content row.
    """
    title: str
    url: Optional[str] = None
    body: Optional[str] = None
    description: Optional[str] = None
    published_at: Optional[datetime] = None
    image_url: Optional[str] = None
    metadata: Dict[str, object] = Field(default_factory=dict)


class RSSFetcherConfig(BaseModel):
    url: str
    user_agent: str = "curation-pipeline/1.0 (RSS Reader)"
    max_items: int = Field(50, ge=1)


class APIFetcherConfig(BaseModel):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, str] = Field(default_factory=dict)
    items_path: str = "items"  # dotted path to the item list in the JSON reply
    title_field: str = "title"
    url_field: str = "url"
    body_field: str = "body"
    published_at_field: str = "published_at"
    image_url_field: str = "image_url"
    max_items: int = Field(50, ge=1)


class AIQueryFetcherConfig(BaseModel):
    query: str
    max_items: int = Field(10, ge=1)
    language: Optional[str] = None


class ManualFetcherConfig(BaseModel):
    items: List[RawItem] = Field(default_factory=list)


class ClassifyResult(BaseModel):
    """
    Pydantic schema for the output of a "classify" AITask
    """
    score: Optional[float] = Field(None, ge=0.0, le=1.0)
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    priority: Optional[int] = None
    summary: Optional[str] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value


class SummaryResult(BaseModel):
    """
    Pydantic schema for the output of a "summarize" AITask
    """
    summary: str
