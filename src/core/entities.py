from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any

from core.errors import UnknownStatusError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class SourceType(str, Enum):
    RSS = "RSS"
    API = "API"
    AI_QUERY = "AI_QUERY"
    EMAIL = "EMAIL"
    MANUAL = "MANUAL"


class SourceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"
    RATE_LIMITED = "RATE_LIMITED"


class ContentStatus(str, Enum):
    RAW = "RAW"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    REVIEWED = "REVIEWED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class ReviewAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    EDIT = "EDIT"
    FLAG = "FLAG"
    PRIORITY_BOOST = "PRIORITY_BOOST"
    PRIORITY_LOWER = "PRIORITY_LOWER"


class TaskStatus(str, Enum):
    """
    Closed set of AITask states. Persisted as a free string, so legacy
    spellings are normalized when rows are read back.
    """
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str) -> "TaskStatus":
        normalized = str(value).strip().lower()
        normalized = _TASK_STATUS_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise UnknownStatusError(f"Unknown AITask status: {value!r}")

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


_TASK_STATUS_ALIASES = {
    "pending": "queued",
    "waiting": "queued",
    "in_progress": "running",
    "processing": "running",
    "completed": "succeeded",
    "success": "succeeded",
    "done": "succeeded",
    "error": "failed",
    "errored": "failed",
}


@dataclass
class Source:
    """
    A configured origin of content.
    """
    name: str
    type: SourceType
    url: Optional[str] = None
    status: SourceStatus = SourceStatus.ACTIVE
    config: Dict[str, Any] = field(default_factory=dict)
    last_fetch_at: Optional[datetime] = None
    fetch_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    fetch_lease_until: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Content:
    """
    A single ingested item moving through the curation pipeline.
    """
    title: str
    source_id: str
    url: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: ContentStatus = ContentStatus.RAW
    score: Optional[float] = None
    priority: int = 0
    source_url: Optional[str] = None
    published_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_hash: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ContentTag:
    content_id: str
    tag: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ContentReview:
    """
    Append-only audit record of one accepted review action.
    """
    content_id: str
    user_id: str
    action: ReviewAction
    comment: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DailyDigest:
    date: date
    title: str
    summary: str = ""
    content_ids: List[str] = field(default_factory=list)
    total_items: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AITask:
    """
    An asynchronous unit of AI-assisted work with its own lifecycle.
    """
    type: str
    input: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.QUEUED
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    available_at: datetime = field(default_factory=utcnow)
    dedup_key: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserActivity:
    user_id: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SystemConfig:
    key: str
    value: Any = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
