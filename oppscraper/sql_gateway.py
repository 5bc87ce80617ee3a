"""
SQLAlchemy-backed persistence gateway (SQLite or Postgres)
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, Index, Integer, String, Text,
    TypeDecorator, create_engine, select, update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .ai import OpportunityRecord
from .errors import PersistenceError
from .models import (
    AISettings, Campaign, CampaignFilters, CampaignRun, ContentItem, ContentStatus,
    QueueStatus, RunStatus, ScrapingLog, ScrapingQueueItem, Source, new_id, utcnow,
)
from .persistence import (
    CLAIMABLE_STATUSES, RUN_COUNTERS, PersistenceGateway, opportunity_row,
)


logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite drops tzinfo)"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SourceRow(TimestampMixin, Base):
    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    root_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    scraping_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CampaignRow(TimestampMixin, Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    frequency_unit: Mapped[str] = mapped_column(String(16), nullable=False, default="hours")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    filters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    ai_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class CampaignRunRow(TimestampMixin, Base):
    __tablename__ = "campaign_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RunStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sources_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class QueueItemRow(TimestampMixin, Base):
    __tablename__ = "scraping_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_id: Mapped[str] = mapped_column(String(36), nullable=False)
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    campaign_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=QueueStatus.QUEUED.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    item_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_scraping_queue_status_scheduled", "status", "scheduled_for"),
        Index("ix_scraping_queue_run", "campaign_run_id"),
    )


class ScrapingLogRow(Base):
    __tablename__ = "scraping_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    campaign_run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    source_id: Mapped[str] = mapped_column(String(36), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    http_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    log_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ContentItemRow(TimestampMixin, Base):
    __tablename__ = "content_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ContentStatus.PENDING.value)
    ai_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_model_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    opportunity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="Misc")
    raw_html: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


class OpportunityRow(TimestampMixin, Base):
    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    title: Mapped[str] = mapped_column(Text, nullable=False)
    organization: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="Misc")
    location: Mapped[str] = mapped_column(Text, nullable=False, default="Global")
    deadline: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(Text, nullable=False)
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    about_opportunity: Mapped[str] = mapped_column(Text, nullable=False, default="")
    requirements: Mapped[str] = mapped_column(Text, nullable=False, default="")
    how_to_apply: Mapped[str] = mapped_column(Text, nullable=False, default="")
    what_you_get: Mapped[str] = mapped_column(Text, nullable=False, default="")
    program_start_date: Mapped[str] = mapped_column(Text, nullable=False, default="")
    program_end_date: Mapped[str] = mapped_column(Text, nullable=False, default="")
    contact_email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    eligibility_age: Mapped[str] = mapped_column(Text, nullable=False, default="")
    language_requirements: Mapped[str] = mapped_column(Text, nullable=False, default="")
    funding_type: Mapped[str] = mapped_column(String(64), nullable=False, default="Variable Amount")
    eligible_countries: Mapped[str] = mapped_column(Text, nullable=False, default="Global")
    min_amount: Mapped[str] = mapped_column(Text, nullable=False, default="")
    max_amount: Mapped[str] = mapped_column(Text, nullable=False, default="")


# Row <-> record conversion

def _source(row: SourceRow) -> Source:
    return Source(
        id=row.id, name=row.name, root_domain=row.root_domain, is_active=row.is_active,
        keywords=list(row.keywords or []), scraping_config=dict(row.scraping_config or {}),
        last_scraped_at=row.last_scraped_at, success_rate=row.success_rate,
        total_attempts=row.total_attempts, successful_attempts=row.successful_attempts,
    )


def _campaign(row: CampaignRow) -> Campaign:
    return Campaign(
        id=row.id, name=row.name, source_ids=list(row.source_ids or []),
        keywords=list(row.keywords or []), frequency=row.frequency,
        frequency_unit=row.frequency_unit, is_active=row.is_active,
        max_posts=row.max_posts, current_posts=row.current_posts,
        filters=CampaignFilters.from_dict(row.filters),
        ai_settings=AISettings.from_dict(row.ai_settings),
        last_run_at=row.last_run_at, next_run_at=row.next_run_at,
    )


def _run(row: CampaignRunRow) -> CampaignRun:
    return CampaignRun(
        id=row.id, campaign_id=row.campaign_id, status=RunStatus(row.status),
        started_at=row.started_at, completed_at=row.completed_at,
        sources_processed=row.sources_processed, items_found=row.items_found,
        items_created=row.items_created, errors_count=row.errors_count,
        error_details=dict(row.error_details or {}), execution_time_ms=row.execution_time_ms,
    )


def _queue_item(row: QueueItemRow) -> ScrapingQueueItem:
    return ScrapingQueueItem(
        id=row.id, campaign_id=row.campaign_id, source_id=row.source_id, url=row.url,
        priority=row.priority, status=QueueStatus(row.status), attempts=row.attempts,
        max_attempts=row.max_attempts, scheduled_for=row.scheduled_for,
        created_at=row.created_at, started_at=row.started_at,
        completed_at=row.completed_at, error_message=row.error_message,
        metadata=dict(row.item_metadata or {}),
    )


def _log(row: ScrapingLogRow) -> ScrapingLog:
    return ScrapingLog(
        id=row.id, campaign_run_id=row.campaign_run_id, source_id=row.source_id,
        url=row.url, status=row.status, response_time_ms=row.response_time_ms,
        content_length=row.content_length, http_status_code=row.http_status_code,
        error_message=row.error_message, metadata=dict(row.log_metadata or {}),
        created_at=row.created_at,
    )


def _content_item(row: ContentItemRow) -> ContentItem:
    return ContentItem(
        id=row.id, title=row.title, content=row.content, source_name=row.source_name,
        source_url=row.source_url, campaign_id=row.campaign_id,
        status=ContentStatus(row.status), ai_processed=row.ai_processed,
        extraction_confidence=row.extraction_confidence,
        ai_model_version=row.ai_model_version, opportunity_id=row.opportunity_id,
        category=row.category, raw_html=row.raw_html, error_message=row.error_message,
        extraction_metadata=dict(row.extraction_metadata or {}), created_at=row.created_at,
    )


def _plain(value: Any) -> Any:
    """Enums are stored by value"""
    return getattr(value, 'value', value)


def create_db_engine(database_url: str):
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every thread sees the same in-memory database
        return create_engine(database_url, connect_args={"check_same_thread": False},
                             poolclass=StaticPool)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class SQLGateway(PersistenceGateway):
    """Durable gateway; claims and counters are single UPDATE statements"""

    def __init__(self, database_url: str, engine=None, create_tables: bool = True):
        self.engine = engine or create_db_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Database operation failed: {exc}")
            raise PersistenceError(str(exc)) from exc
        finally:
            session.close()

    # Sources
    def save_source(self, source: Source) -> Source:
        with self.session() as session:
            session.merge(SourceRow(
                id=source.id, name=source.name, root_domain=source.root_domain,
                is_active=source.is_active, keywords=list(source.keywords),
                scraping_config=dict(source.scraping_config),
                last_scraped_at=source.last_scraped_at, success_rate=source.success_rate,
                total_attempts=source.total_attempts,
                successful_attempts=source.successful_attempts,
            ))
        return source

    def get_source(self, source_id: str) -> Optional[Source]:
        with self.session() as session:
            row = session.get(SourceRow, source_id)
            return _source(row) if row else None

    def list_sources(self, ids: Optional[Sequence[str]] = None, active_only: bool = False) -> List[Source]:
        stmt = select(SourceRow)
        if ids is not None:
            stmt = stmt.where(SourceRow.id.in_(list(ids)))
        if active_only:
            stmt = stmt.where(SourceRow.is_active.is_(True))
        with self.session() as session:
            return [_source(row) for row in session.scalars(stmt)]

    def record_source_attempt(self, source_id: str, success: bool, at: datetime) -> None:
        total = SourceRow.total_attempts + 1
        successful = SourceRow.successful_attempts + (1 if success else 0)
        with self.session() as session:
            session.execute(
                update(SourceRow).where(SourceRow.id == source_id)
                .values(total_attempts=total, successful_attempts=successful,
                        success_rate=successful * 100.0 / total,
                        last_scraped_at=at, updated_at=utcnow())
            )

    # Campaigns
    def save_campaign(self, campaign: Campaign) -> Campaign:
        with self.session() as session:
            session.merge(CampaignRow(
                id=campaign.id, name=campaign.name, source_ids=list(campaign.source_ids),
                keywords=list(campaign.keywords), frequency=campaign.frequency,
                frequency_unit=campaign.frequency_unit, is_active=campaign.is_active,
                max_posts=campaign.max_posts, current_posts=campaign.current_posts,
                filters={
                    'min_length': campaign.filters.min_length,
                    'max_length': campaign.filters.max_length,
                    'required_words': list(campaign.filters.required_words),
                    'banned_words': list(campaign.filters.banned_words),
                    'skip_duplicates': campaign.filters.skip_duplicates,
                },
                ai_settings={
                    'rewrite': campaign.ai_settings.rewrite,
                    'quality_check': campaign.ai_settings.quality_check,
                    'seo_optimize': campaign.ai_settings.seo_optimize,
                    'translate_to': campaign.ai_settings.translate_to,
                },
                last_run_at=campaign.last_run_at, next_run_at=campaign.next_run_at,
            ))
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self.session() as session:
            row = session.get(CampaignRow, campaign_id)
            return _campaign(row) if row else None

    def list_campaigns(self, active_only: bool = False) -> List[Campaign]:
        stmt = select(CampaignRow)
        if active_only:
            stmt = stmt.where(CampaignRow.is_active.is_(True))
        with self.session() as session:
            return [_campaign(row) for row in session.scalars(stmt)]

    def increment_campaign_posts(self, campaign_id: str, delta: int = 1) -> None:
        with self.session() as session:
            session.execute(
                update(CampaignRow).where(CampaignRow.id == campaign_id)
                .values(current_posts=CampaignRow.current_posts + delta, updated_at=utcnow())
            )

    def update_campaign_schedule(self, campaign_id: str, last_run_at: Optional[datetime],
                                 next_run_at: Optional[datetime]) -> None:
        with self.session() as session:
            session.execute(
                update(CampaignRow).where(CampaignRow.id == campaign_id)
                .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=utcnow())
            )

    # Campaign runs
    def create_run(self, run: CampaignRun) -> CampaignRun:
        with self.session() as session:
            session.add(CampaignRunRow(
                id=run.id, campaign_id=run.campaign_id, status=run.status.value,
                started_at=run.started_at, completed_at=run.completed_at,
                sources_processed=run.sources_processed, items_found=run.items_found,
                items_created=run.items_created, errors_count=run.errors_count,
                error_details=dict(run.error_details), execution_time_ms=run.execution_time_ms,
            ))
        return run

    def get_run(self, run_id: str) -> Optional[CampaignRun]:
        with self.session() as session:
            row = session.get(CampaignRunRow, run_id)
            return _run(row) if row else None

    def list_runs(self, campaign_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  since: Optional[datetime] = None, limit: int = 50) -> List[CampaignRun]:
        stmt = select(CampaignRunRow).order_by(CampaignRunRow.started_at.desc()).limit(limit)
        if campaign_id is not None:
            stmt = stmt.where(CampaignRunRow.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(CampaignRunRow.status == status.value)
        if since is not None:
            stmt = stmt.where(CampaignRunRow.started_at >= since)
        with self.session() as session:
            return [_run(row) for row in session.scalars(stmt)]

    def increment_run_stats(self, run_id: str, **deltas: int) -> None:
        unknown = set(deltas) - set(RUN_COUNTERS)
        if unknown:
            raise PersistenceError(f"Unknown run counter(s): {', '.join(sorted(unknown))}")
        values = {name: getattr(CampaignRunRow, name) + delta for name, delta in deltas.items()}
        values['updated_at'] = utcnow()
        with self.session() as session:
            session.execute(update(CampaignRunRow).where(CampaignRunRow.id == run_id).values(**values))

    def add_run_error(self, run_id: str, key: str, message: str) -> None:
        with self.session() as session:
            row = session.get(CampaignRunRow, run_id, with_for_update=True)
            if row is not None:
                details = dict(row.error_details or {})
                details[key] = message
                row.error_details = details

    def finish_run(self, run_id: str, status: RunStatus, completed_at: datetime,
                   execution_time_ms: int, reason: Optional[str] = None) -> bool:
        with self.session() as session:
            result = session.execute(
                update(CampaignRunRow)
                .where(CampaignRunRow.id == run_id, CampaignRunRow.status == RunStatus.RUNNING.value)
                .values(status=status.value, completed_at=completed_at,
                        execution_time_ms=execution_time_ms, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return False
            if reason:
                row = session.get(CampaignRunRow, run_id, populate_existing=True)
                details = dict(row.error_details or {})
                details['reason'] = reason
                row.error_details = details
            return True

    # Scraping queue
    def enqueue_items(self, items: Iterable[ScrapingQueueItem]) -> int:
        rows = [
            QueueItemRow(
                id=item.id, campaign_id=item.campaign_id, source_id=item.source_id,
                campaign_run_id=item.campaign_run_id, url=item.url, priority=item.priority,
                status=item.status.value, attempts=item.attempts, max_attempts=item.max_attempts,
                scheduled_for=item.scheduled_for, created_at=item.created_at,
                started_at=item.started_at, completed_at=item.completed_at,
                error_message=item.error_message, item_metadata=dict(item.metadata),
            )
            for item in items
        ]
        with self.session() as session:
            session.add_all(rows)
        return len(rows)

    def get_queue_item(self, item_id: str) -> Optional[ScrapingQueueItem]:
        with self.session() as session:
            row = session.get(QueueItemRow, item_id)
            return _queue_item(row) if row else None

    def select_due_items(self, now: datetime, limit: int,
                         campaign_run_id: Optional[str] = None) -> List[ScrapingQueueItem]:
        stmt = (
            select(QueueItemRow)
            .where(QueueItemRow.status.in_([s.value for s in CLAIMABLE_STATUSES]),
                   QueueItemRow.scheduled_for <= now)
            .order_by(QueueItemRow.priority.desc(), QueueItemRow.created_at.asc())
            .limit(limit)
        )
        if campaign_run_id is not None:
            stmt = stmt.where(QueueItemRow.campaign_run_id == campaign_run_id)
        with self.session() as session:
            return [_queue_item(row) for row in session.scalars(stmt)]

    def claim_queue_item(self, item_id: str, now: datetime) -> Optional[ScrapingQueueItem]:
        with self.session() as session:
            result = session.execute(
                update(QueueItemRow)
                .where(QueueItemRow.id == item_id,
                       QueueItemRow.status.in_([s.value for s in CLAIMABLE_STATUSES]),
                       QueueItemRow.attempts < QueueItemRow.max_attempts)
                .values(status=QueueStatus.PROCESSING.value, attempts=QueueItemRow.attempts + 1,
                        started_at=now, updated_at=utcnow())
            )
            if result.rowcount != 1:
                return None
            row = session.get(QueueItemRow, item_id, populate_existing=True)
            return _queue_item(row)

    def update_queue_item(self, item_id: str, **changes: Any) -> None:
        values = {}
        for name, value in changes.items():
            column = 'item_metadata' if name == 'metadata' else name
            if not hasattr(QueueItemRow, column):
                raise PersistenceError(f"Unknown field {name!r} for ScrapingQueueItem")
            values[column] = _plain(value)
        values['updated_at'] = utcnow()
        with self.session() as session:
            result = session.execute(update(QueueItemRow).where(QueueItemRow.id == item_id).values(**values))
            if result.rowcount != 1:
                raise PersistenceError(f"Queue item not found: {item_id}")

    def list_queue_items(self, campaign_run_id: Optional[str] = None,
                         status: Optional[QueueStatus] = None) -> List[ScrapingQueueItem]:
        stmt = select(QueueItemRow).order_by(QueueItemRow.created_at.asc())
        if campaign_run_id is not None:
            stmt = stmt.where(QueueItemRow.campaign_run_id == campaign_run_id)
        if status is not None:
            stmt = stmt.where(QueueItemRow.status == status.value)
        with self.session() as session:
            return [_queue_item(row) for row in session.scalars(stmt)]

    # Logs
    def append_log(self, log: ScrapingLog) -> None:
        with self.session() as session:
            session.add(ScrapingLogRow(
                id=log.id, campaign_run_id=log.campaign_run_id, source_id=log.source_id,
                url=log.url, status=log.status, response_time_ms=log.response_time_ms,
                content_length=log.content_length, http_status_code=log.http_status_code,
                error_message=log.error_message, log_metadata=dict(log.metadata),
                created_at=log.created_at,
            ))

    def list_logs(self, since: Optional[datetime] = None, campaign_run_id: Optional[str] = None) -> List[ScrapingLog]:
        stmt = select(ScrapingLogRow).order_by(ScrapingLogRow.created_at.asc())
        if since is not None:
            stmt = stmt.where(ScrapingLogRow.created_at >= since)
        if campaign_run_id is not None:
            stmt = stmt.where(ScrapingLogRow.campaign_run_id == campaign_run_id)
        with self.session() as session:
            return [_log(row) for row in session.scalars(stmt)]

    # Content items
    def create_content_item(self, item: ContentItem) -> ContentItem:
        with self.session() as session:
            session.add(ContentItemRow(
                id=item.id, title=item.title, content=item.content,
                source_name=item.source_name, source_url=item.source_url,
                campaign_id=item.campaign_id, status=item.status.value,
                ai_processed=item.ai_processed, extraction_confidence=item.extraction_confidence,
                ai_model_version=item.ai_model_version, opportunity_id=item.opportunity_id,
                category=item.category, raw_html=item.raw_html, error_message=item.error_message,
                extraction_metadata=dict(item.extraction_metadata), created_at=item.created_at,
            ))
        return item

    def get_content_item(self, item_id: str) -> Optional[ContentItem]:
        with self.session() as session:
            row = session.get(ContentItemRow, item_id)
            return _content_item(row) if row else None

    def update_content_item(self, item_id: str, **changes: Any) -> None:
        values = {}
        for name, value in changes.items():
            if not hasattr(ContentItemRow, name):
                raise PersistenceError(f"Unknown field {name!r} for ContentItem")
            values[name] = _plain(value)
        values['updated_at'] = utcnow()
        with self.session() as session:
            result = session.execute(update(ContentItemRow).where(ContentItemRow.id == item_id).values(**values))
            if result.rowcount != 1:
                raise PersistenceError(f"Content item not found: {item_id}")

    def find_content_by_url(self, source_url: str) -> Optional[ContentItem]:
        stmt = select(ContentItemRow).where(ContentItemRow.source_url == source_url).limit(1)
        with self.session() as session:
            row = session.scalars(stmt).first()
            return _content_item(row) if row else None

    def list_content_items(self, since: Optional[datetime] = None,
                           campaign_id: Optional[str] = None) -> List[ContentItem]:
        stmt = select(ContentItemRow).order_by(ContentItemRow.created_at.asc())
        if since is not None:
            stmt = stmt.where(ContentItemRow.created_at >= since)
        if campaign_id is not None:
            stmt = stmt.where(ContentItemRow.campaign_id == campaign_id)
        with self.session() as session:
            return [_content_item(row) for row in session.scalars(stmt)]

    # Opportunities
    def create_opportunity(self, record: OpportunityRecord) -> str:
        opportunity_id = new_id()
        with self.session() as session:
            session.add(OpportunityRow(id=opportunity_id, **opportunity_row(record)))
        return opportunity_id

    def list_opportunities(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        stmt = select(OpportunityRow).order_by(OpportunityRow.created_at.asc())
        if since is not None:
            stmt = stmt.where(OpportunityRow.created_at >= since)
        with self.session() as session:
            return [
                {prop.key: getattr(row, prop.key) for prop in OpportunityRow.__mapper__.column_attrs}
                for row in session.scalars(stmt)
            ]
