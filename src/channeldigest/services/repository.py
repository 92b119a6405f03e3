"""SQLAlchemy implementation of the repository used by the digest engine."""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from channeldigest.errors import RepositoryError
from channeldigest.models import db
from channeldigest.models.domain import (
    Channel,
    Cluster,
    ClusterSummaryCacheEntry,
    DigestEntry,
    DigestRecord,
    Evidence,
    FactCheck,
    Item,
    RatingSample,
    RatingStatsRecord,
    RollingStats,
    ThresholdTuningLogEntry,
    ensure_utc,
)
from channeldigest.services.database import SessionFactory, session_scope

log = structlog.get_logger(__name__)

DEFAULT_LOCK_TTL = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _utc(value: datetime) -> datetime:
    return ensure_utc(value)


def _uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise RepositoryError(f"invalid identifier: {value!r}") from exc


def _uuids(values: Sequence[str]) -> list[uuid.UUID]:
    return [_uuid(value) for value in values if value]


def _to_item(row: db.Item, channel: db.Channel) -> Item:
    return Item(
        id=str(row.id),
        importance_score=row.importance_score,
        relevance_score=row.relevance_score,
        published_at=row.published_at,
        first_seen_at=row.first_seen_at,
        source_channel=channel.username,
        source_channel_id=channel.peer_id,
        source_channel_title=channel.title,
        source_msg_id=row.source_msg_id,
        summary=row.summary,
        topic=row.topic,
        embedding=row.embedding or [],
        channel_relevance_delta=channel.relevance_threshold_delta,
    )


class SqlRepository:
    """
    Repository backed by SQLAlchemy sessions.

    Every public method runs in its own transaction; SQLAlchemy failures are
    raised as :class:`RepositoryError`. Leader election uses a lease row in
    ``scheduler_locks`` so it works behind connection poolers.
    """

    def __init__(self, session_factory: SessionFactory, lock_ttl: timedelta = DEFAULT_LOCK_TTL) -> None:
        self.session_factory = session_factory
        self.lock_ttl = lock_ttl
        self.holder = str(uuid.uuid4())

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise RepositoryError(str(exc)) from exc

    # Settings

    def get_setting(self, key: str) -> Any | None:
        with self._session() as session:
            row = session.get(db.Setting, key)
            return row.value if row is not None else None

    def save_setting(self, key: str, value: Any) -> None:
        with self._session() as session:
            row = session.get(db.Setting, key)
            if row is None:
                session.add(db.Setting(key=key, value=value, updated_at=_utcnow()))
            else:
                row.value = value
                row.updated_at = _utcnow()

    # Scheduler lock

    def try_advisory_lock(self, lock_id: int) -> bool:
        now = _utcnow()
        try:
            with session_scope(self.session_factory) as session:
                row = session.get(db.SchedulerLock, lock_id, with_for_update=True)
                if row is None:
                    session.add(db.SchedulerLock(lock_id=lock_id, holder=self.holder, expires_at=now + self.lock_ttl))
                    return True
                if row.holder != self.holder and ensure_utc(row.expires_at) > now:
                    return False
                row.holder = self.holder
                row.expires_at = now + self.lock_ttl
                return True
        except IntegrityError:
            log.debug("repository.lock_race_lost", lock_id=lock_id)
            return False
        except SQLAlchemyError as exc:
            raise RepositoryError(str(exc)) from exc

    def release_advisory_lock(self, lock_id: int) -> None:
        with self._session() as session:
            session.execute(
                delete(db.SchedulerLock).where(
                    db.SchedulerLock.lock_id == lock_id,
                    db.SchedulerLock.holder == self.holder,
                )
            )

    # Digests

    def digest_exists(self, start: datetime, end: datetime) -> bool:
        with self._session() as session:
            stmt = select(db.Digest.id).where(
                db.Digest.window_start == _utc(start),
                db.Digest.window_end == _utc(end),
            )
            return session.execute(stmt.limit(1)).first() is not None

    def save_digest(self, record: DigestRecord) -> str:
        with self._session() as session:
            session.add(
                db.Digest(
                    id=_uuid(record.id),
                    window_start=_utc(record.window_start),
                    window_end=_utc(record.window_end),
                    chat_id=record.chat_id,
                    message_id=record.message_id,
                    posted_at=_utcnow(),
                )
            )
        return record.id

    def save_digest_error(self, start: datetime, end: datetime, chat_id: int, error: str) -> None:
        with self._session() as session:
            session.add(
                db.DigestError(
                    window_start=_utc(start),
                    window_end=_utc(end),
                    chat_id=chat_id,
                    error=error,
                    created_at=_utcnow(),
                )
            )

    def save_digest_entries(self, digest_id: str, entries: Sequence[DigestEntry]) -> None:
        with self._session() as session:
            for position, entry in enumerate(entries):
                session.add(
                    db.DigestEntry(
                        digest_id=_uuid(digest_id),
                        position=position,
                        title=entry.title,
                        body=entry.body,
                        sources=[source.model_dump() for source in entry.sources],
                    )
                )

    def get_digest_cover_image(self, start: datetime, end: datetime, threshold: float) -> bytes | None:
        with self._session() as session:
            stmt = (
                select(db.Item.image_data)
                .where(
                    db.Item.published_at >= _utc(start),
                    db.Item.published_at < _utc(end),
                    db.Item.importance_score >= threshold,
                    db.Item.image_data.is_not(None),
                )
                .order_by(db.Item.importance_score.desc())
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none()

    # Items

    def get_items_for_window(self, start: datetime, end: datetime, threshold: float, limit: int) -> list[Item]:
        with self._session() as session:
            stmt = (
                select(db.Item, db.Channel)
                .join(db.Channel, db.Channel.id == db.Item.channel_id)
                .where(
                    db.Item.status == db.ITEM_STATUS_READY,
                    db.Item.digested_at.is_(None),
                    db.Item.published_at >= _utc(start),
                    db.Item.published_at < _utc(end),
                    db.Item.importance_score >= threshold,
                )
                .order_by(db.Item.importance_score.desc(), db.Item.relevance_score.desc(), db.Item.published_at)
                .limit(limit)
            )
            return [_to_item(row, channel) for row, channel in session.execute(stmt)]

    def count_items_in_window(self, start: datetime, end: datetime) -> int:
        with self._session() as session:
            stmt = select(func.count(db.Item.id)).where(
                db.Item.published_at >= _utc(start),
                db.Item.published_at < _utc(end),
            )
            return int(session.execute(stmt).scalar_one())

    def count_ready_items_in_window(self, start: datetime, end: datetime) -> int:
        with self._session() as session:
            stmt = select(func.count(db.Item.id)).where(
                db.Item.status == db.ITEM_STATUS_READY,
                db.Item.published_at >= _utc(start),
                db.Item.published_at < _utc(end),
            )
            return int(session.execute(stmt).scalar_one())

    def mark_items_as_digested(self, item_ids: Sequence[str]) -> None:
        ids = _uuids(item_ids)
        if not ids:
            return
        with self._session() as session:
            session.execute(
                update(db.Item)
                .where(db.Item.id.in_(ids))
                .values(status=db.ITEM_STATUS_DIGESTED, digested_at=_utcnow())
            )

    def get_backlog_count(self) -> int:
        with self._session() as session:
            stmt = select(func.count(db.Item.id)).where(db.Item.status == db.ITEM_STATUS_PENDING)
            return int(session.execute(stmt).scalar_one())

    def get_items_evidence(self, item_ids: Sequence[str]) -> dict[str, list[Evidence]]:
        ids = _uuids(item_ids)
        if not ids:
            return {}
        result: dict[str, list[Evidence]] = defaultdict(list)
        with self._session() as session:
            stmt = select(db.ItemEvidence).where(db.ItemEvidence.item_id.in_(ids))
            for row in session.scalars(stmt):
                result[str(row.item_id)].append(
                    Evidence(
                        url=row.url,
                        title=row.title,
                        domain=row.domain,
                        agreement_score=row.agreement_score,
                        is_contradiction=row.is_contradiction,
                    )
                )
        return dict(result)

    def get_fact_checks(self, item_ids: Sequence[str]) -> dict[str, list[FactCheck]]:
        ids = _uuids(item_ids)
        if not ids:
            return {}
        result: dict[str, list[FactCheck]] = defaultdict(list)
        with self._session() as session:
            stmt = select(db.FactCheck).where(db.FactCheck.item_id.in_(ids))
            for row in session.scalars(stmt):
                result[str(row.item_id)].append(
                    FactCheck(
                        item_id=str(row.item_id),
                        claim=row.claim,
                        rating=row.rating,
                        url=row.url,
                        publisher=row.publisher,
                    )
                )
        return dict(result)

    # Clusters

    def get_clusters_for_window(self, start: datetime, end: datetime) -> list[Cluster]:
        with self._session() as session:
            clusters = session.scalars(
                select(db.Cluster)
                .where(db.Cluster.window_start == _utc(start), db.Cluster.window_end == _utc(end))
                .order_by(db.Cluster.created_at, db.Cluster.id)
            ).all()
            if not clusters:
                return []

            members: dict[uuid.UUID, list[Item]] = defaultdict(list)
            stmt = (
                select(db.ClusterItem.cluster_id, db.Item, db.Channel)
                .join(db.Item, db.Item.id == db.ClusterItem.item_id)
                .join(db.Channel, db.Channel.id == db.Item.channel_id)
                .where(db.ClusterItem.cluster_id.in_([cluster.id for cluster in clusters]))
                .order_by(db.ClusterItem.cluster_id, db.ClusterItem.position)
            )
            for cluster_id, row, channel in session.execute(stmt):
                members[cluster_id].append(_to_item(row, channel))

            return [
                Cluster(
                    id=str(cluster.id),
                    topic=cluster.topic,
                    items=members.get(cluster.id, []),
                    window_start=cluster.window_start,
                    window_end=cluster.window_end,
                )
                for cluster in clusters
            ]

    def delete_clusters_for_window(self, start: datetime, end: datetime) -> None:
        with self._session() as session:
            cluster_ids = select(db.Cluster.id).where(
                db.Cluster.window_start == _utc(start),
                db.Cluster.window_end == _utc(end),
            )
            session.execute(delete(db.ClusterItem).where(db.ClusterItem.cluster_id.in_(cluster_ids)))
            session.execute(
                delete(db.Cluster).where(
                    db.Cluster.window_start == _utc(start),
                    db.Cluster.window_end == _utc(end),
                )
            )

    def create_cluster(self, start: datetime, end: datetime, topic: str) -> str:
        cluster_id = uuid.uuid4()
        with self._session() as session:
            session.add(
                db.Cluster(
                    id=cluster_id,
                    window_start=_utc(start),
                    window_end=_utc(end),
                    topic=topic,
                    created_at=_utcnow(),
                )
            )
        return str(cluster_id)

    def add_to_cluster(self, cluster_id: str, item_id: str) -> None:
        with self._session() as session:
            position = session.execute(
                select(func.count()).select_from(db.ClusterItem).where(db.ClusterItem.cluster_id == _uuid(cluster_id))
            ).scalar_one()
            session.add(db.ClusterItem(cluster_id=_uuid(cluster_id), item_id=_uuid(item_id), position=int(position)))

    # Ratings and channel statistics

    def get_rating_samples(self, since: datetime) -> list[RatingSample]:
        with self._session() as session:
            stmt = (
                select(db.ItemRating, db.Item.channel_id)
                .join(db.Item, db.Item.id == db.ItemRating.item_id)
                .where(db.ItemRating.created_at >= _utc(since))
                .order_by(db.ItemRating.created_at)
            )
            return [
                RatingSample(
                    item_id=str(rating.item_id),
                    rating=rating.rating,
                    created_at=rating.created_at,
                    channel_id=str(channel_id) if channel_id else "",
                )
                for rating, channel_id in session.execute(stmt)
            ]

    def get_channel_rolling_stats(self, channel_id: str, since: datetime) -> RollingStats:
        with self._session() as session:
            stmt = select(
                func.coalesce(func.sum(db.ChannelStats.messages_received), 0),
                func.coalesce(func.sum(db.ChannelStats.items_created), 0),
                func.coalesce(func.sum(db.ChannelStats.items_digested), 0),
                func.coalesce(func.sum(db.ChannelStats.avg_importance * db.ChannelStats.items_digested), 0.0),
            ).where(
                db.ChannelStats.channel_id == _uuid(channel_id),
                db.ChannelStats.period_start >= _utc(since),
            )
            messages, created, digested, importance_sum = session.execute(stmt).one()

        digested = int(digested)
        return RollingStats(
            total_messages=int(messages),
            total_items_created=int(created),
            total_items_digested=digested,
            avg_importance=float(importance_sum) / digested if digested else 0.0,
        )

    def collect_and_save_channel_stats(self, start: datetime, end: datetime) -> None:
        start, end = _utc(start), _utc(end)
        with self._session() as session:
            rows = session.scalars(
                select(db.Item).where(db.Item.published_at >= start, db.Item.published_at < end)
            ).all()

            by_channel: dict[uuid.UUID, list[db.Item]] = defaultdict(list)
            for row in rows:
                by_channel[row.channel_id].append(row)

            for channel_id, items in by_channel.items():
                created = [item for item in items if item.status in (db.ITEM_STATUS_READY, db.ITEM_STATUS_DIGESTED)]
                digested = [item for item in items if item.digested_at is not None]
                values = {
                    "messages_received": len(items),
                    "items_created": len(created),
                    "items_digested": len(digested),
                    "avg_importance": (
                        sum(item.importance_score for item in digested) / len(digested) if digested else 0.0
                    ),
                    "avg_relevance": (
                        sum(item.relevance_score for item in created) / len(created) if created else 0.0
                    ),
                }
                existing = session.scalars(
                    select(db.ChannelStats).where(
                        db.ChannelStats.channel_id == channel_id,
                        db.ChannelStats.period_start == start,
                        db.ChannelStats.period_end == end,
                    )
                ).first()
                if existing is None:
                    session.add(db.ChannelStats(channel_id=channel_id, period_start=start, period_end=end, **values))
                else:
                    for name, value in values.items():
                        setattr(existing, name, value)

        log.debug("repository.channel_stats_saved", channels=len(by_channel))

    def upsert_rating_stats(self, records: Sequence[RatingStatsRecord]) -> None:
        with self._session() as session:
            for record in records:
                channel_id = _uuid(record.channel_id) if record.channel_id else None
                channel_filter = (
                    db.RatingStats.channel_id.is_(None) if channel_id is None else db.RatingStats.channel_id == channel_id
                )
                existing = session.scalars(
                    select(db.RatingStats).where(
                        channel_filter,
                        db.RatingStats.period_start == _utc(record.period_start),
                        db.RatingStats.period_end == _utc(record.period_end),
                    )
                ).first()
                values = record.model_dump(exclude={"channel_id", "period_start", "period_end"})
                if existing is None:
                    session.add(
                        db.RatingStats(
                            channel_id=channel_id,
                            period_start=_utc(record.period_start),
                            period_end=_utc(record.period_end),
                            updated_at=_utcnow(),
                            **values,
                        )
                    )
                else:
                    for name, value in values.items():
                        setattr(existing, name, value)
                    existing.updated_at = _utcnow()

    def insert_threshold_tuning_log(self, entry: ThresholdTuningLogEntry) -> None:
        with self._session() as session:
            session.add(
                db.ThresholdTuningLog(
                    tuned_at=_utc(entry.tuned_at),
                    net_score=entry.net_score,
                    delta=entry.delta,
                    importance_threshold=entry.importance_threshold,
                    relevance_threshold=entry.relevance_threshold,
                )
            )

    # Channels

    def list_active_channels(self) -> list[Channel]:
        with self._session() as session:
            rows = session.scalars(
                select(db.Channel).where(db.Channel.is_active.is_(True)).order_by(db.Channel.created_at)
            ).all()
            return [
                Channel(
                    id=str(row.id),
                    username=row.username,
                    title=row.title,
                    peer_id=row.peer_id,
                    importance_weight=row.importance_weight,
                    auto_weight_enabled=row.auto_weight_enabled,
                    relevance_delta=row.relevance_threshold_delta,
                    auto_relevance_enabled=row.auto_relevance_enabled,
                )
                for row in rows
            ]

    def update_channel_importance_weight(self, channel_id: str, weight: float) -> None:
        with self._session() as session:
            session.execute(
                update(db.Channel).where(db.Channel.id == _uuid(channel_id)).values(importance_weight=weight)
            )

    def update_channel_relevance_delta(self, channel_id: str, delta: float) -> None:
        with self._session() as session:
            session.execute(
                update(db.Channel).where(db.Channel.id == _uuid(channel_id)).values(relevance_threshold_delta=delta)
            )

    # Cluster summary cache

    def get_cluster_summary(self, language: str, fingerprint: str) -> ClusterSummaryCacheEntry | None:
        with self._session() as session:
            row = session.get(db.ClusterSummaryCache, (language, fingerprint))
            if row is None:
                return None
            return ClusterSummaryCacheEntry(
                digest_language=row.digest_language,
                fingerprint=row.fingerprint,
                item_ids=list(row.item_ids or []),
                summary=row.summary,
                created_at=row.created_at,
            )

    def get_cluster_summaries_since(self, language: str, since: datetime) -> list[ClusterSummaryCacheEntry]:
        with self._session() as session:
            rows = session.scalars(
                select(db.ClusterSummaryCache)
                .where(
                    db.ClusterSummaryCache.digest_language == language,
                    db.ClusterSummaryCache.updated_at >= _utc(since),
                )
                .order_by(db.ClusterSummaryCache.updated_at.desc())
            ).all()
            return [
                ClusterSummaryCacheEntry(
                    digest_language=row.digest_language,
                    fingerprint=row.fingerprint,
                    item_ids=list(row.item_ids or []),
                    summary=row.summary,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def upsert_cluster_summary(self, entry: ClusterSummaryCacheEntry) -> None:
        now = _utcnow()
        with self._session() as session:
            row = session.get(db.ClusterSummaryCache, (entry.digest_language, entry.fingerprint))
            if row is None:
                session.add(
                    db.ClusterSummaryCache(
                        digest_language=entry.digest_language,
                        fingerprint=entry.fingerprint,
                        item_ids=list(entry.item_ids),
                        summary=entry.summary,
                        created_at=_utc(entry.created_at) if entry.created_at else now,
                        updated_at=now,
                    )
                )
            else:
                row.item_ids = list(entry.item_ids)
                row.summary = entry.summary
                row.updated_at = now
