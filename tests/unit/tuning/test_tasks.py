"""Tests for channeldigest.services.tasks."""

from datetime import UTC, datetime, timedelta

from fakes import FakeRepository

from channeldigest.services.tasks import LAST_RUN_SETTING_PREFIX, TaskScheduler, WeeklyTask

SUNDAY_SLOT = datetime(2024, 5, 5, 0, 30, tzinfo=UTC)


class RecordingTask(WeeklyTask):
    name = "recording"
    setting_key = "recording_enabled"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.runs: list[datetime] = []

    def run(self, now: datetime) -> None:
        if self.fail:
            raise RuntimeError("boom")
        self.runs.append(now)


class TestWeeklyTask:
    def test_due_in_sunday_slot(self) -> None:
        assert RecordingTask().is_due(SUNDAY_SLOT, None)

    def test_not_due_outside_slot(self) -> None:
        task = RecordingTask()
        assert not task.is_due(SUNDAY_SLOT + timedelta(hours=1), None)
        assert not task.is_due(SUNDAY_SLOT + timedelta(days=1), None)

    def test_not_due_when_recently_run(self) -> None:
        task = RecordingTask()
        assert not task.is_due(SUNDAY_SLOT, SUNDAY_SLOT - timedelta(minutes=20))
        assert task.is_due(SUNDAY_SLOT, SUNDAY_SLOT - timedelta(days=7))


class TestTaskScheduler:
    def test_runs_due_task_once(self) -> None:
        repo = FakeRepository()
        task = RecordingTask()
        scheduler = TaskScheduler(repo, [task])

        assert scheduler.tick(SUNDAY_SLOT) == ["recording"]
        assert scheduler.tick(SUNDAY_SLOT + timedelta(minutes=10)) == []
        assert task.runs == [SUNDAY_SLOT]
        assert repo.settings[LAST_RUN_SETTING_PREFIX + "recording"] == SUNDAY_SLOT.isoformat()

    def test_last_run_survives_restart(self) -> None:
        repo = FakeRepository()
        repo.settings[LAST_RUN_SETTING_PREFIX + "recording"] = SUNDAY_SLOT.isoformat()
        task = RecordingTask()

        assert TaskScheduler(repo, [task]).tick(SUNDAY_SLOT + timedelta(minutes=5)) == []
        assert task.runs == []

    def test_disabled_task_is_skipped(self) -> None:
        repo = FakeRepository()
        repo.settings["recording_enabled"] = False
        task = RecordingTask()

        assert TaskScheduler(repo, [task]).tick(SUNDAY_SLOT, force=True) == []

    def test_force_ignores_slot(self) -> None:
        task = RecordingTask()

        assert TaskScheduler(FakeRepository(), [task]).tick(SUNDAY_SLOT + timedelta(days=2), force=True) == [
            "recording"
        ]

    def test_failure_does_not_stop_other_tasks(self) -> None:
        repo = FakeRepository()
        failing = RecordingTask(fail=True)
        failing.name = "failing"
        healthy = RecordingTask()

        completed = TaskScheduler(repo, [failing, healthy]).tick(SUNDAY_SLOT)

        assert completed == ["recording"]
        assert LAST_RUN_SETTING_PREFIX + "failing" not in repo.settings

    def test_stops_when_lease_is_lost(self) -> None:
        class OtherTask(RecordingTask):
            name = "other"

        first, second = RecordingTask(), OtherTask()
        answers = iter([True, False])

        completed = TaskScheduler(FakeRepository(), [first, second]).tick(
            SUNDAY_SLOT, keep_running=lambda: next(answers)
        )

        assert completed == ["recording"]
        assert second.runs == []
