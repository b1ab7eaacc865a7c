"""Scheduled trigger: runs the tally on a cron schedule.

A failed pass raises inside the job so APScheduler reports it through its
own job-error logging; the next scheduled run is the retry.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from tentmap.config import Settings
from tentmap.service import TentMapService

logger = logging.getLogger(__name__)

JOB_ID = "scheduled_vote_processing"


class ScheduledTallyError(RuntimeError):
    """A scheduled tally pass failed; nothing was committed."""


def scheduled_vote_processing(service: TentMapService) -> dict:
    logger.info("Scheduled vote processing triggered")
    result = service.process_votes()
    if not result.success:
        raise ScheduledTallyError("; ".join(result.errors))
    logger.info(
        "Scheduled processing completed: %s markers processed, %s added, %s removed",
        result.data["processed"], result.data["added"], result.data["removed"],
    )
    return result.data


def build_scheduler(service: TentMapService, settings: Settings) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=settings.zone)
    scheduler.add_job(
        scheduled_vote_processing,
        CronTrigger.from_crontab(settings.schedule, timezone=settings.zone),
        args=[service],
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
