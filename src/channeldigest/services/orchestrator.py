"""Scheduled digest composition: lock, windows, pipeline, delivery and bookkeeping."""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field

from channeldigest.config import AppConfig, parse_duration
from channeldigest.errors import DigestError, InvalidScheduleError, PosterError, RepositoryError
from channeldigest.models.domain import (
    Anomaly,
    Cluster,
    DigestEntry,
    DigestRecord,
    DigestSource,
    Item,
    Window,
    ensure_utc,
)
from channeldigest.services.autorelevance import AutoRelevanceTask
from channeldigest.services.autoweight import AutoWeightTask
from channeldigest.services.clustering import ClusteringConfig, TopicClusterer
from channeldigest.services.corroboration import apply_corroboration
from channeldigest.services.dedup import deduplicate_items
from channeldigest.services.ports import LLMGateway, Poster, Repository
from channeldigest.services.ratings import RatingStatsTask
from channeldigest.services.render import DigestRenderer, format_anomaly_report
from channeldigest.services.schedule import (
    SETTING_DIGEST_SCHEDULE,
    SETTING_DIGEST_SCHEDULE_ANCHOR,
    Schedule,
    parse_schedule,
)
from channeldigest.services.selection import (
    apply_relevance_gate,
    apply_smart_selection,
    balance_and_limit,
    fetch_candidate_pool,
)
from channeldigest.services.settings import DigestSettings
from channeldigest.services.summary_cache import ClusterSummaryCache
from channeldigest.services.tasks import PeriodicTask, TaskScheduler
from channeldigest.services.threshold_tuning import ThresholdTuningTask
from channeldigest.services.windows import build_windows

log = structlog.get_logger(__name__)

LOCK_HASH_MULTIPLIER = 31
LOCK_HASH_MODULUS = 2**63

DEFAULT_TICK_INTERVAL = timedelta(minutes=10)
DEFAULT_CATCHUP_WINDOW = timedelta(hours=24)
DEFAULT_TUNER_INTERVAL = timedelta(hours=1)

LOW_ITEM_COUNT = 2


def lock_id(name: str) -> int:
    """Stable 63-bit lock id for a lease name."""
    value = 0
    for char in name:
        value = (LOCK_HASH_MULTIPLIER * value + ord(char)) % LOCK_HASH_MODULUS
    return value


def duration_or_default(value: str, default: timedelta, name: str) -> timedelta:
    try:
        parsed = parse_duration(value)
    except ValueError:
        log.warning("scheduler.invalid_duration", setting=name, value=value, fallback=str(default))
        return default
    if parsed <= timedelta(0):
        log.warning("scheduler.invalid_duration", setting=name, value=value, fallback=str(default))
        return default
    return parsed


def load_schedule(repo: Repository) -> Schedule | None:
    """Stored schedule, or ``None`` when it is missing, empty or invalid (logged)."""
    raw = repo.get_setting(SETTING_DIGEST_SCHEDULE)
    if not raw:
        return None
    try:
        schedule = parse_schedule(raw)
    except InvalidScheduleError as exc:
        log.warning("digest.invalid_schedule", error=str(exc))
        return None
    return None if schedule.is_empty() else schedule


def load_anchor(repo: Repository) -> datetime | None:
    raw = repo.get_setting(SETTING_DIGEST_SCHEDULE_ANCHOR)
    if not raw:
        return None
    try:
        return ensure_utc(raw)
    except (TypeError, ValueError):
        log.warning("digest.invalid_anchor", value=raw)
        return None


def default_tasks(repo: Repository, config: AppConfig) -> list[PeriodicTask]:
    return [
        RatingStatsTask(repo),
        AutoWeightTask(repo, config),
        AutoRelevanceTask(repo, config),
        ThresholdTuningTask(repo, config),
    ]


class WindowStatus(StrEnum):
    POSTED = "posted"
    SKIPPED = "skipped"
    EMPTY = "empty"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WindowResult(BaseModel):
    window: Window
    status: WindowStatus
    digest_id: str | None = None
    message_id: int | None = None
    anomaly: Anomaly | None = None
    error: str | None = None


class DigestBuild(BaseModel):
    """Rendered text plus the content it was rendered from."""

    text: str = ""
    items: list[Item] = Field(default_factory=list)
    clusters: list[Cluster] = Field(default_factory=list)
    anomaly: Anomaly | None = None


def build_digest_entries(items: Sequence[Item], clusters: Sequence[Cluster]) -> list[DigestEntry]:
    """One entry per cluster, or one per item when the window has no clusters."""
    entries: list[DigestEntry] = []
    if clusters:
        for cluster in clusters:
            if not cluster.items:
                continue
            entries.append(
                DigestEntry(
                    title=cluster.topic,
                    body="".join(f"• {item.summary}\n" for item in cluster.items),
                    sources=[DigestSource(channel=item.source_channel, msg_id=item.source_msg_id) for item in cluster.items],
                )
            )
        return entries

    for item in items:
        entries.append(
            DigestEntry(
                title=item.topic,
                body=f"• {item.summary}",
                sources=[DigestSource(channel=item.source_channel, msg_id=item.source_msg_id)],
            )
        )
    return entries


class SchedulerLease:
    """
    Cross-replica exclusion for scheduler work.

    The repository lock is a lease with a TTL, so long runs call
    :meth:`renew` between units of work and stop once the lease has passed to
    another replica. With leader election disabled every call succeeds.
    """

    def __init__(self, repo: Repository, config: AppConfig) -> None:
        self.repo = repo
        self.enabled = config.leader_election_enabled
        self.lock_id = lock_id(config.leader_election_lease_name)

    def renew(self) -> bool:
        """Extend the lease held by this replica; ``False`` once another holder owns it."""
        if not self.enabled:
            return True
        try:
            renewed = self.repo.try_advisory_lock(self.lock_id)
        except RepositoryError as exc:
            log.error("scheduler.lock_renew_failed", lock_id=self.lock_id, error=str(exc))
            return False
        if not renewed:
            log.warning("scheduler.lock_lost", lock_id=self.lock_id)
        return renewed

    def run(self, action: Callable[[], None]) -> bool:
        """Run ``action`` holding the lease; returns ``False`` when it was not acquired."""
        with structlog.contextvars.bound_contextvars(correlation_id=str(uuid.uuid4())):
            if not self.enabled:
                action()
                return True

            try:
                acquired = self.repo.try_advisory_lock(self.lock_id)
            except RepositoryError as exc:
                log.error("scheduler.lock_failed", error=str(exc))
                return False
            if not acquired:
                log.debug("scheduler.lock_not_acquired", lock_id=self.lock_id)
                return False

            try:
                action()
            finally:
                try:
                    self.repo.release_advisory_lock(self.lock_id)
                except RepositoryError as exc:
                    log.error("scheduler.lock_release_failed", error=str(exc))
            return True


class DigestOrchestrator:
    """
    Drives scheduled digests for one replica.

    Each tick takes the scheduler lock (when leader election is enabled),
    builds the pending windows from the stored schedule and anchor, and runs
    every window through select, dedup, balance, cluster, corroborate,
    render, post and finalize. The weekly tuners run under the same lock on
    their own, slower tick.
    """

    def __init__(
        self,
        repo: Repository,
        poster: Poster,
        config: AppConfig,
        llm: LLMGateway | None = None,
        tasks: Sequence[PeriodicTask] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repo = repo
        self.poster = poster
        self.config = config
        self.llm = llm
        self.scheduler = TaskScheduler(repo, default_tasks(repo, config) if tasks is None else tasks)
        self.lease = SchedulerLease(repo, config)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def now(self) -> datetime:
        return self._clock().astimezone(UTC)

    # Loop

    def run(self, stop_event: threading.Event) -> None:
        """Tick until ``stop_event`` is set; the first digest and tuner ticks run immediately."""
        tick = duration_or_default(self.config.scheduler_tick_interval, DEFAULT_TICK_INTERVAL, "scheduler_tick_interval")
        tuner_tick = duration_or_default(self.config.tuner_tick_interval, DEFAULT_TUNER_INTERVAL, "tuner_tick_interval")
        log.info("scheduler.started", tick_interval=str(tick), tuner_interval=str(tuner_tick))

        next_digest = next_tuner = time.monotonic()
        while not stop_event.is_set():
            current = time.monotonic()
            if current >= next_digest:
                self.run_once(stop_event)
                next_digest = current + tick.total_seconds()
            if current >= next_tuner and not stop_event.is_set():
                self.run_tuners()
                next_tuner = current + tuner_tick.total_seconds()
            stop_event.wait(max(0.0, min(next_digest, next_tuner) - time.monotonic()))

        log.info("scheduler.stopped")

    def run_once(self, stop_event: threading.Event | None = None) -> list[WindowResult]:
        """Process every pending window once, under the scheduler lock."""
        results: list[WindowResult] = []
        self.lease.run(lambda: results.extend(self.process_digest(stop_event)))
        return results

    def run_tuners(self, force: bool = False) -> list[str] | None:
        """
        Run due (or, with ``force``, all enabled) tuners under the scheduler lock.

        Returns:
            Names of the completed tuners, or ``None`` when the lock is held elsewhere
        """
        completed: list[str] = []

        def tick() -> None:
            completed.extend(self.scheduler.tick(self.now(), force=force, keep_running=self.lease.renew))

        if not self.lease.run(tick):
            return None
        return completed

    # Run

    def load_schedule(self) -> Schedule | None:
        return load_schedule(self.repo)

    def load_anchor(self) -> datetime | None:
        return load_anchor(self.repo)

    def save_anchor(self, end: datetime) -> None:
        self.repo.save_setting(SETTING_DIGEST_SCHEDULE_ANCHOR, end.astimezone(UTC).isoformat())

    def process_digest(self, stop_event: threading.Event | None = None) -> list[WindowResult]:
        try:
            schedule = self.load_schedule()
        except RepositoryError as exc:
            log.error("digest.schedule_unavailable", error=str(exc))
            return []
        if schedule is None:
            log.warning("digest.no_schedule", reason="no digest schedule configured")
            return []

        settings = DigestSettings.load(self.repo, self.config)
        if not settings.target_chat_id:
            log.warning("digest.no_target_chat")
            return []

        now = self.now()
        catchup = duration_or_default(
            self.config.scheduler_catchup_window, DEFAULT_CATCHUP_WINDOW, "scheduler_catchup_window"
        )
        try:
            anchor = self.load_anchor()
        except RepositoryError as exc:
            log.error("digest.anchor_unavailable", error=str(exc))
            return []

        windows = build_windows(schedule, now, catchup, anchor)
        if not windows:
            log.debug("digest.no_pending_windows")
            return []

        timezone = schedule.location()
        results: list[WindowResult] = []
        # Once a window fails, later windows may still post but must not move the anchor past it.
        anchor_blocked = False

        for window in windows:
            window_log = log.bind(start=window.start.isoformat(), end=window.end.isoformat())
            if stop_event is not None and stop_event.is_set():
                window_log.info("digest.cancelled")
                results.append(WindowResult(window=window, status=WindowStatus.CANCELLED))
                break
            if not self.lease.renew():
                results.append(WindowResult(window=window, status=WindowStatus.CANCELLED, error="scheduler lock lost"))
                break

            try:
                result = self.process_window(window, settings, timezone, now, stop_event)
            except DigestError as exc:
                window_log.error("digest.window_failed", error=str(exc))
                results.append(WindowResult(window=window, status=WindowStatus.FAILED, error=str(exc)))
                anchor_blocked = True
                continue

            results.append(result)
            if result.status is WindowStatus.CANCELLED:
                break

            if not anchor_blocked:
                try:
                    self.save_anchor(window.end)
                except RepositoryError as exc:
                    window_log.error("digest.anchor_save_failed", error=str(exc))

        anomalies = [result.anomaly for result in results if result.anomaly is not None]
        if anomalies and settings.anomaly_notifications:
            self.send_anomaly_report(anomalies, settings, timezone)

        log.info(
            "digest.run_complete",
            windows=len(windows),
            posted=sum(1 for result in results if result.status is WindowStatus.POSTED),
            anomalies=len(anomalies),
        )
        return results

    # Window

    def process_window(
        self,
        window: Window,
        settings: DigestSettings,
        timezone: tzinfo,
        now: datetime,
        stop_event: threading.Event | None = None,
    ) -> WindowResult:
        if self.repo.digest_exists(window.start, window.end):
            log.debug("digest.window_skipped", start=window.start.isoformat(), end=window.end.isoformat())
            return WindowResult(window=window, status=WindowStatus.SKIPPED)

        build = self.build_digest(window, settings, timezone, now)
        if not build.text:
            return WindowResult(window=window, status=WindowStatus.EMPTY, anomaly=build.anomaly)

        if stop_event is not None and stop_event.is_set():
            return WindowResult(window=window, status=WindowStatus.CANCELLED)

        digest_id = str(uuid.uuid4())
        message_id = self.post_digest(window, settings, build.text, digest_id)
        self.finalize(window, settings, build, digest_id, message_id)
        return WindowResult(window=window, status=WindowStatus.POSTED, digest_id=digest_id, message_id=message_id)

    def build_digest(self, window: Window, settings: DigestSettings, timezone: tzinfo, now: datetime) -> DigestBuild:
        """Run the composition pipeline for one window; an empty ``text`` means nothing to post."""
        pool = fetch_candidate_pool(self.repo, window, settings)
        if not pool.items:
            return DigestBuild(anomaly=pool.anomaly)

        items = apply_smart_selection(pool.items, settings, now)
        if settings.relevance_gate_enabled:
            items = apply_relevance_gate(items, settings.relevance_threshold)
        items = deduplicate_items(items, settings.similarity_threshold)
        items = balance_and_limit(items, settings)
        if not items:
            return DigestBuild()

        clusters: list[Cluster] = []
        if settings.topics_enabled:
            clusterer = TopicClusterer(self.repo, ClusteringConfig.from_settings(settings), self.llm)
            clusters = clusterer.cluster_window(items, window)

        items, clusters = apply_corroboration(
            items,
            clusters,
            settings.corroboration_importance_boost,
            settings.single_source_penalty,
        )
        self.log_quality(items, window, settings, now)

        ids = [item.id for item in items]
        try:
            evidence = self.repo.get_items_evidence(ids)
        except RepositoryError as exc:
            log.warning("digest.evidence_unavailable", error=str(exc))
            evidence = {}
        try:
            fact_checks = self.repo.get_fact_checks(ids)
        except RepositoryError as exc:
            log.warning("digest.fact_checks_unavailable", error=str(exc))
            fact_checks = {}

        renderer = DigestRenderer(
            settings,
            timezone,
            llm=self.llm,
            cache=ClusterSummaryCache(self.repo, settings.digest_language, now),
            evidence=evidence,
            fact_checks=fact_checks,
        )
        text = renderer.render(window, items, clusters)
        return DigestBuild(text=text, items=items, clusters=clusters)

    def log_quality(self, items: Sequence[Item], window: Window, settings: DigestSettings, now: datetime) -> None:
        if not items:
            return

        avg_importance = sum(item.importance_score for item in items) / len(items)
        avg_relevance = sum(item.relevance_score for item in items) / len(items)
        quality_log = log.bind(
            start=window.start.isoformat(),
            items=len(items),
            avg_importance=round(avg_importance, 3),
            avg_relevance=round(avg_relevance, 3),
        )
        if len(items) <= LOW_ITEM_COUNT or avg_importance < settings.importance_threshold:
            quality_log.warning("digest.low_quality")
        else:
            quality_log.info("digest.quality")

        lags = [
            (window.end - seen).total_seconds()
            for seen in (item.first_seen_at or item.published_at for item in items)
            if seen is not None
        ]
        if not lags:
            return
        avg_lag = timedelta(seconds=sum(lags) / len(lags))
        try:
            alert = parse_duration(settings.time_to_digest_alert)
        except ValueError:
            log.debug("digest.invalid_lag_alert", value=settings.time_to_digest_alert)
            return
        if alert > timedelta(0) and avg_lag > alert:
            quality_log.warning("digest.time_to_digest_high", avg_lag=str(avg_lag), alert=str(alert))

    def post_digest(self, window: Window, settings: DigestSettings, text: str, digest_id: str) -> int:
        image = None
        if settings.digest_cover_image:
            try:
                image = self.repo.get_digest_cover_image(window.start, window.end, settings.importance_threshold)
            except RepositoryError as exc:
                log.warning("digest.cover_image_unavailable", error=str(exc))

        try:
            if image:
                return self.poster.send_digest_with_image(settings.target_chat_id, text, digest_id, image)
            return self.poster.send_digest(settings.target_chat_id, text, digest_id)
        except PosterError as exc:
            log.error("digest.post_failed", digest_id=digest_id, error=str(exc))
            try:
                self.repo.save_digest_error(window.start, window.end, settings.target_chat_id, str(exc))
            except RepositoryError as save_exc:
                log.error("digest.save_error_failed", error=str(save_exc))
            raise

    def finalize(
        self,
        window: Window,
        settings: DigestSettings,
        build: DigestBuild,
        digest_id: str,
        message_id: int,
    ) -> None:
        """Bookkeeping after a successful post; failures are logged because the message is already out."""
        item_ids = [item.id for item in build.items]
        entries = build_digest_entries(build.items, build.clusters)
        finalize_log = log.bind(digest_id=digest_id, start=window.start.isoformat(), end=window.end.isoformat())

        try:
            self.repo.mark_items_as_digested(item_ids)
        except RepositoryError as exc:
            finalize_log.error("digest.mark_digested_failed", error=str(exc))

        try:
            self.repo.save_digest(
                DigestRecord(
                    id=digest_id,
                    window_start=window.start,
                    window_end=window.end,
                    chat_id=settings.target_chat_id,
                    message_id=message_id,
                    entries=entries,
                )
            )
            self.repo.save_digest_entries(digest_id, entries)
        except RepositoryError as exc:
            finalize_log.error("digest.save_failed", error=str(exc))

        try:
            self.repo.collect_and_save_channel_stats(window.start, window.end)
        except RepositoryError as exc:
            finalize_log.warning("digest.channel_stats_failed", error=str(exc))

        finalize_log.info("digest.posted", message_id=message_id, items=len(item_ids), entries=len(entries))

    def send_anomaly_report(self, anomalies: Sequence[Anomaly], settings: DigestSettings, timezone: tzinfo) -> None:
        text = format_anomaly_report(anomalies, settings.importance_threshold, timezone)
        try:
            self.poster.send_notification(text)
        except PosterError as exc:
            log.warning("digest.anomaly_report_failed", error=str(exc))
            return
        log.info("digest.anomaly_report_sent", anomalies=len(anomalies))
