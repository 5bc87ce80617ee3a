"""
Data models for the opportunity scraping pipeline
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class ContentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"


class DiscoverySource(str, Enum):
    RSS = "rss"
    SITEMAP = "sitemap"
    LINKS = "links"


@dataclass
class Source:
    """A site the pipeline discovers opportunity pages on"""
    name: str
    root_domain: str
    id: str = field(default_factory=new_id)
    is_active: bool = True
    keywords: List[str] = field(default_factory=list)
    scraping_config: Dict[str, Any] = field(default_factory=dict)
    last_scraped_at: Optional[datetime] = None
    success_rate: float = 0.0
    total_attempts: int = 0
    successful_attempts: int = 0

    @property
    def root_url(self) -> str:
        domain = self.root_domain.strip().rstrip('/')
        if domain.startswith(('http://', 'https://')):
            return domain
        return f"https://{domain}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_scraped_at"] = _iso(self.last_scraped_at)
        return data


@dataclass
class CampaignFilters:
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    required_words: List[str] = field(default_factory=list)
    banned_words: List[str] = field(default_factory=list)
    skip_duplicates: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CampaignFilters":
        data = data or {}
        return cls(
            min_length=data.get("min_length"),
            max_length=data.get("max_length"),
            required_words=list(data.get("required_words") or []),
            banned_words=list(data.get("banned_words") or []),
            skip_duplicates=bool(data.get("skip_duplicates", False)),
        )


@dataclass
class AISettings:
    rewrite: bool = False
    quality_check: bool = False
    seo_optimize: bool = False
    translate_to: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AISettings":
        data = data or {}
        return cls(
            rewrite=bool(data.get("rewrite", False)),
            quality_check=bool(data.get("quality_check", False)),
            seo_optimize=bool(data.get("seo_optimize", False)),
            translate_to=data.get("translate_to"),
        )


@dataclass
class Campaign:
    """Operator-defined scraping campaign over a set of sources"""
    name: str
    source_ids: List[str]
    id: str = field(default_factory=new_id)
    keywords: List[str] = field(default_factory=list)
    frequency: int = 6
    frequency_unit: str = "hours"
    is_active: bool = True
    max_posts: int = 0
    current_posts: int = 0
    filters: CampaignFilters = field(default_factory=CampaignFilters)
    ai_settings: AISettings = field(default_factory=AISettings)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_run_at"] = _iso(self.last_run_at)
        data["next_run_at"] = _iso(self.next_run_at)
        return data


@dataclass
class CampaignRun:
    campaign_id: str
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    sources_processed: int = 0
    items_found: int = 0
    items_created: int = 0
    errors_count: int = 0
    error_details: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "sources_processed": self.sources_processed,
            "items_found": self.items_found,
            "items_created": self.items_created,
            "errors_count": self.errors_count,
            "error_details": self.error_details,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class ScrapingQueueItem:
    campaign_id: str
    source_id: str
    url: str
    id: str = field(default_factory=new_id)
    priority: int = 0
    status: QueueStatus = QueueStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def campaign_run_id(self) -> Optional[str]:
        return self.metadata.get("campaign_run_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "source_id": self.source_id,
            "url": self.url,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": _iso(self.scheduled_for),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class ScrapedMetadata:
    scraped_at: datetime
    source_url: str
    organization: Optional[str] = None
    deadline: Optional[str] = None
    location: Optional[str] = None
    amount: Optional[str] = None
    description: Optional[str] = None
    requirements: Optional[str] = None
    apply_info: Optional[str] = None
    raw_html: Optional[str] = None


@dataclass
class ScrapedContent:
    """Represents a single scraped page before AI extraction"""
    title: str
    url: str
    content: str
    metadata: ScrapedMetadata

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        meta = asdict(self.metadata)
        meta["scraped_at"] = _iso(self.metadata.scraped_at)
        meta.pop("raw_html", None)
        return {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "metadata": meta,
        }


@dataclass
class ContentItem:
    title: str
    content: str
    source_name: str
    source_url: str
    id: str = field(default_factory=new_id)
    campaign_id: Optional[str] = None
    status: ContentStatus = ContentStatus.PENDING
    ai_processed: bool = False
    extraction_confidence: Optional[float] = None
    ai_model_version: Optional[str] = None
    opportunity_id: Optional[str] = None
    category: str = "Misc"
    raw_html: str = ""
    error_message: Optional[str] = None
    extraction_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "source_name": self.source_name,
            "source_url": self.source_url,
            "campaign_id": self.campaign_id,
            "status": self.status.value,
            "ai_processed": self.ai_processed,
            "extraction_confidence": self.extraction_confidence,
            "ai_model_version": self.ai_model_version,
            "opportunity_id": self.opportunity_id,
            "category": self.category,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ScrapingLog:
    """Append-only audit row for a single fetch attempt"""
    campaign_run_id: Optional[str]
    source_id: str
    url: str
    status: str
    response_time_ms: int
    id: str = field(default_factory=new_id)
    content_length: Optional[int] = None
    http_status_code: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DiscoveryResult:
    success: bool
    urls: List[str]
    source: DiscoverySource
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "urls": list(self.urls),
            "source": self.source.value,
            "error": self.error,
        }
