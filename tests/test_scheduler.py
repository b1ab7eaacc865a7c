"""Tests for the scheduled trigger. The scheduler is built but never started."""

from typing import Iterator

import pytest
from apscheduler.triggers.cron import CronTrigger

from tentmap.config import Settings
from tentmap.persistence.store import MarkerStore, ReadFailure
from tentmap.scheduler import (
    JOB_ID,
    ScheduledTallyError,
    build_scheduler,
    scheduled_vote_processing,
)
from tentmap.service import TentMapService
from tentmap.tally.job import TallyJob


@pytest.fixture
def store(tmp_path) -> Iterator[MarkerStore]:
    s = MarkerStore(str(tmp_path / "tentmap.db"))
    s.initialize()
    yield s
    s.close()


class TestBuildScheduler:
    def test_registers_daily_job(self, store: MarkerStore, tmp_path) -> None:
        settings = Settings(db_path=tmp_path / "tentmap.db")
        scheduler = build_scheduler(TentMapService(store), settings)
        job = scheduler.get_job(JOB_ID)
        assert job is not None
        assert isinstance(job.trigger, CronTrigger)
        assert str(job.trigger.timezone) == "America/Los_Angeles"
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_custom_schedule(self, store: MarkerStore, tmp_path) -> None:
        settings = Settings(db_path=tmp_path / "tentmap.db", schedule="30 3 * * *", timezone="UTC")
        scheduler = build_scheduler(TentMapService(store), settings)
        fields = {f.name: str(f) for f in scheduler.get_job(JOB_ID).trigger.fields}
        assert fields["hour"] == "3"
        assert fields["minute"] == "30"


class TestScheduledRun:
    def test_success_returns_payload(self, store: MarkerStore) -> None:
        data = scheduled_vote_processing(TentMapService(store))
        assert data["success"] is True
        assert store.count_news() == 1

    def test_failure_raises(self, store: MarkerStore) -> None:
        class _FailingJob(TallyJob):
            def run(self):
                raise ReadFailure("Could not enumerate markers: disk I/O error")

        service = TentMapService(store, tally_job=_FailingJob(store))
        with pytest.raises(ScheduledTallyError, match="disk I/O error"):
            scheduled_vote_processing(service)
