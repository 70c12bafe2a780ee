"""
Loads and handles config from config.yml
DATABASE_PATH and OLLAMA_BASE_URL may be overridden from .env
Runtime tunables can be overridden per key through SystemConfig rows.
"""
import logging
import os
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from core.entities import SystemConfig

logger = logging.getLogger(__name__)


DEFAULT_INCLUDE_KEYWORDS = [
    "breakthrough", "launch", "release", "funding", "investment", "ipo",
    "acquisition", "merger", "earnings", "revenue", "market", "fintech",
    "cryptocurrency", "blockchain", "smartphone", "electric vehicle",
    "autonomous driving", "generative ai", "llm", "foundation model",
    "robotics", "semiconductor", "chip", "quantum computing",
    "renewable energy", "battery", "cybersecurity", "cloud",
]

DEFAULT_EXCLUDE_KEYWORDS = [
    "tutorial", "how to", "best practices", "step by step", "beginner",
    "pull request", "changelog", "deprecated", "sponsored", "advertisement",
]

DEFAULT_CATEGORY_KEYWORDS = {
    "ai": ["ai", "llm", "model", "machine learning", "neural", "gpt", "agent"],
    "finance": ["funding", "ipo", "earnings", "revenue", "investment", "fintech", "crypto"],
    "hardware": ["chip", "semiconductor", "gpu", "smartphone", "device", "battery"],
    "security": ["security", "breach", "ransomware", "vulnerability", "privacy"],
    "energy": ["energy", "solar", "wind", "hydrogen", "electric vehicle"],
}


class PipelineTunables(BaseModel):
    """
    Every knob the pipeline reads at runtime. Defaults come from here,
    then config.yml, then SystemConfig rows (highest precedence).
    """
    # Ingestion
    fetch_interval_minutes: Dict[str, int] = Field(default_factory=lambda: {
        "RSS": 15, "API": 30, "AI_QUERY": 360, "EMAIL": 10, "MANUAL": 60,
    })
    fetch_timeout_seconds: float = 30.0
    fetch_concurrency: int = Field(3, ge=1)
    fetch_retry_attempts: int = Field(2, ge=1)
    fetch_retry_backoff_seconds: float = 1.0
    fetch_error_threshold: int = Field(3, ge=1)
    rate_limit_cooldown_seconds: float = 900.0

    # AI tasks
    ai_timeout_seconds: Dict[str, float] = Field(default_factory=lambda: {
        "default": 120.0, "classify": 60.0, "summarize": 120.0,
    })
    ai_max_attempts: int = Field(3, ge=1)
    ai_backoff_seconds: float = 2.0
    ai_workers: int = Field(2, ge=1)
    ai_poll_interval_seconds: float = 1.0
    ai_wait_timeout_seconds: float = 300.0

    # Scoring
    score_weights: Dict[str, float] = Field(default_factory=lambda: {
        "recency": 0.4, "trust": 0.3, "relevance": 0.3,
    })
    recency_half_life_hours: float = 24.0
    source_trust: Dict[str, float] = Field(default_factory=dict)
    default_source_trust: float = 0.5
    high_priority_threshold: float = 0.75
    medium_priority_threshold: float = 0.5
    include_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_KEYWORDS))
    exclude_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_KEYWORDS))
    min_include_score: float = 0.0
    max_exclude_score: float = 0.66
    filtered_score_penalty: float = 0.5
    category_keywords: Dict[str, List[str]] = Field(default_factory=lambda: dict(DEFAULT_CATEGORY_KEYWORDS))
    default_category: str = "tech"
    ai_categories: List[str] = Field(default_factory=list)
    ai_source_types: List[str] = Field(default_factory=lambda: ["AI_QUERY"])
    scorer_concurrency: int = Field(4, ge=1)
    scorer_batch_size: int = Field(50, ge=1)

    # Review
    review_priority_step: int = Field(1, ge=1)
    review_priority_floor: int = 0

    # Digest / driver
    digest_cutoff_hour: int = Field(8, ge=0, le=23)
    digest_use_ai_summary: bool = False
    tick_interval_seconds: float = 60.0
    sweep_interval_seconds: float = 30.0

    def fetch_interval_for(self, source_type: str) -> int:
        return self.fetch_interval_minutes.get(source_type, 60)

    def ai_timeout_for(self, task_type: str) -> float:
        return self.ai_timeout_seconds.get(task_type, self.ai_timeout_seconds.get("default", 120.0))


class Config(BaseModel):
    # Core
    DATABASE_PATH: str

    # Ollama
    OLLAMA_BASE_URL: str
    OLLAMA_MODEL: str

    LOG_LEVEL: str = "INFO"

    tunables: PipelineTunables = PipelineTunables()


def _get_config_path() -> Optional[str]:
    """Get the path to config.yml, handling different working directories."""
    override = os.getenv("CURATION_CONFIG")
    if override:
        if not os.path.exists(override):
            raise FileNotFoundError(f"Cannot find {override}")
        return override

    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    return None


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml and secrets from .env."""
    load_dotenv()

    config_path = path or _get_config_path()
    config: Dict[str, Any] = {}
    if config_path:
        with open(config_path, 'r') as file:
            config = yaml.safe_load(file) or {}
    else:
        logger.warning("No config.yml found, using defaults")

    return Config(
        DATABASE_PATH=os.getenv("DATABASE_PATH", config.get("DATABASE_PATH", "data/curation.db")),
        OLLAMA_BASE_URL=os.getenv("OLLAMA_BASE_URL", config.get("OLLAMA_BASE_URL", "http://localhost:11434")),
        OLLAMA_MODEL=config.get("OLLAMA_MODEL", "llama3.1:8b"),
        LOG_LEVEL=str(config.get("LOG_LEVEL", "INFO")).upper(),
        tunables=PipelineTunables(**(config.get("tunables") or {})),
    )


def merge_tunables(base: PipelineTunables, overrides: Dict[str, Any]) -> PipelineTunables:
    """
    Apply SystemConfig overrides on top of base tunables.
    Unknown keys and values that fail validation are logged and skipped,
    so one bad row never stops the pipeline.
    """
    merged = base.model_dump()
    for key, value in overrides.items():
        if key not in PipelineTunables.model_fields:
            logger.warning(f"Ignoring unknown SystemConfig key: {key}")
            continue
        candidate = dict(merged)
        candidate[key] = value
        try:
            PipelineTunables.model_validate(candidate)
        except ValidationError as e:
            logger.error(f"Invalid SystemConfig value for {key}: {e.errors()[0]['msg']}")
            continue
        merged = candidate
    return PipelineTunables.model_validate(merged)


async def load_tunables(store, base: PipelineTunables) -> PipelineTunables:
    """Read SystemConfig rows and merge them over the configured tunables."""
    rows = await store.find_many(SystemConfig)
    if not rows:
        return base
    return merge_tunables(base, {row.key: row.value for row in rows})
