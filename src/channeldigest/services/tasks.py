"""Periodic maintenance tasks and the serial scheduler that runs them."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import ClassVar, Protocol

import structlog

from channeldigest.errors import RepositoryError
from channeldigest.services.ports import Repository
from channeldigest.services.settings import read_setting

log = structlog.get_logger(__name__)

LAST_RUN_SETTING_PREFIX = "task_last_run:"
MIN_RUN_INTERVAL = timedelta(days=6)


class PeriodicTask(Protocol):
    name: str
    setting_key: str | None

    def is_due(self, now: datetime, last_run: datetime | None) -> bool: ...

    def run(self, now: datetime) -> None: ...


class WeeklyTask:
    """Due on Sunday during hour 0 (UTC) unless it already ran in the last six days."""

    name: ClassVar[str] = "weekly"
    setting_key: ClassVar[str | None] = None

    def is_due(self, now: datetime, last_run: datetime | None) -> bool:
        now = now.astimezone(UTC)
        if now.weekday() != 6 or now.hour != 0:
            return False
        return last_run is None or now - last_run > MIN_RUN_INTERVAL

    def run(self, now: datetime) -> None:
        raise NotImplementedError


class TaskScheduler:
    """
    Runs due tasks one after another.

    Last-run times are kept in memory and mirrored to the settings table so a
    restart (or another replica) does not repeat a weekly job.
    """

    def __init__(self, repo: Repository, tasks: Sequence[PeriodicTask]) -> None:
        self.repo = repo
        self.tasks = list(tasks)
        self._last_runs: dict[str, datetime] = {}

    def last_run(self, task: PeriodicTask) -> datetime | None:
        if task.name in self._last_runs:
            return self._last_runs[task.name]

        stored = read_setting(self.repo, LAST_RUN_SETTING_PREFIX + task.name, "")
        if not stored:
            return None
        try:
            value = datetime.fromisoformat(stored)
        except ValueError:
            log.debug("tasks.last_run_unreadable", task=task.name, value=stored)
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        self._last_runs[task.name] = value
        return value

    def enabled(self, task: PeriodicTask) -> bool:
        if not task.setting_key:
            return True
        return read_setting(self.repo, task.setting_key, True)

    def tick(
        self,
        now: datetime | None = None,
        force: bool = False,
        keep_running: Callable[[], bool] | None = None,
    ) -> list[str]:
        """
        Run every enabled task that is due (or all enabled tasks when ``force``).

        ``keep_running`` is consulted before each task; the tick stops at the
        first ``False``.

        Returns:
            Names of the tasks that completed successfully
        """
        now = now or datetime.now(tz=UTC)
        completed: list[str] = []

        for task in self.tasks:
            if not self.enabled(task):
                log.debug("tasks.disabled", task=task.name)
                continue
            if not force and not task.is_due(now, self.last_run(task)):
                continue
            if keep_running is not None and not keep_running():
                log.warning("tasks.interrupted", task=task.name)
                break

            task_log = log.bind(task=task.name)
            task_log.info("tasks.started")
            try:
                task.run(now)
            except Exception as exc:
                task_log.error("tasks.failed", error=str(exc), exc_info=True)
                continue

            self._record_run(task, now)
            completed.append(task.name)
            task_log.info("tasks.completed")

        return completed

    def _record_run(self, task: PeriodicTask, now: datetime) -> None:
        self._last_runs[task.name] = now
        try:
            self.repo.save_setting(LAST_RUN_SETTING_PREFIX + task.name, now.astimezone(UTC).isoformat())
        except RepositoryError as exc:
            log.warning("tasks.last_run_save_failed", task=task.name, error=str(exc))
