"""Tally job: one atomic re-evaluation of every marker.

A pass:
1. Takes the store's write lock and reads every marker.
2. Applies the transition rules to each non-removed marker.
3. Stages the new status, zeroed counters and a fresh lastVerifiedAt.
4. Stages deletion of the whole vote ledger, including entries for
   markers this pass skipped.
5. Commits all of it as one unit. Nothing is visible until COMMIT; any
   failure (or interruption) before that leaves the store untouched.
6. Appends a single summary record to the news feed.

Step 6 happens after the commit. If it fails, the pass still stands and
the report carries a warning; the tally is not rolled back to protect a
news entry.

Re-running immediately is safe: counters are already zero, verified
markers stay verified and any pending 0/0 marker is promoted.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, tzinfo
from typing import Callable, Optional

from tentmap.engine.transition import StatusTransitionEngine
from tentmap.models.marker import MarkerStatus
from tentmap.models.news import NewsKind, NewsRecord
from tentmap.models.tally import MarkerUpdate, TallyReport
from tentmap.persistence.store import MarkerStore
from tentmap.utils.time import utc_now
from tentmap.voting.aggregator import VoteAggregator

logger = logging.getLogger(__name__)


def format_summary(
    added: int,
    removed: int,
    when: datetime,
    tz: Optional[tzinfo] = None,
) -> tuple[str, str]:
    """Return (title, message) for the news feed."""
    local = when.astimezone(tz) if tz is not None else when
    title = f"Updates {local.month}/{local.day}"
    message = f"+{added} objects added, -{removed} objects removed"
    return title, message


class TallyJob:
    """Runs tally passes against a MarkerStore.

    Usage:
        job = TallyJob(store, tz=ZoneInfo("America/Los_Angeles"))
        report = job.run()

    Raises InvalidStateError, ReadFailure or CommitFailure; in every case
    the registry and ledger are exactly as they were before the call.
    """

    def __init__(
        self,
        store: MarkerStore,
        clock: Callable[[], datetime] = utc_now,
        tz: Optional[tzinfo] = None,
        count_rejected_pending: bool = False,
    ) -> None:
        self._store = store
        self._clock = clock
        self._tz = tz
        self._count_rejected_pending = count_rejected_pending

    def run(self) -> TallyReport:
        started = self._clock()
        logger.info("Starting vote tally pass")

        scanned = 0
        added = 0
        removed = 0
        transitions: dict[str, int] = {}

        with self._store.tally_batch() as batch:
            now = self._clock()
            for row in batch.markers():
                scanned += 1
                if not StatusTransitionEngine.is_eligible(row["status"]):
                    continue

                counts = VoteAggregator.from_row(row)
                outcome = StatusTransitionEngine.transition(
                    row["status"], counts.yes, counts.no,
                )
                if outcome.counts_as_added:
                    added += 1
                if outcome.counts_as_removed:
                    removed += 1
                elif (
                    self._count_rejected_pending
                    and outcome.previous == MarkerStatus.PENDING
                    and outcome.new_status == MarkerStatus.REMOVED
                ):
                    removed += 1
                transitions[outcome.key] = transitions.get(outcome.key, 0) + 1

                batch.stage_update(MarkerUpdate(
                    marker_id=row["marker_id"],
                    status=outcome.new_status,
                    verified_at=now,
                ))

            batch.stage_ledger_drain()
            touched = batch.staged_count

        finished = self._clock()
        title, message = format_summary(added, removed, finished, self._tz)
        report = TallyReport(
            scanned=scanned,
            touched=touched,
            added=added,
            removed=removed,
            votes_cleared=batch.votes_cleared,
            started_at=started,
            finished_at=finished,
            summary_title=title,
            summary_message=message,
            transitions=transitions,
        )

        news = NewsRecord(
            news_id=uuid.uuid4().hex,
            title=title,
            message=message,
            created_at=finished,
            kind=NewsKind.VOTE_UPDATE,
        )
        try:
            self._store.append_news(news)
            report.news_id = news.news_id
        except sqlite3.Error as e:
            warning = f"Tally committed but news summary was not recorded: {e}"
            logger.error(warning)
            report.warnings.append(warning)

        logger.info(
            "Vote tally completed: scanned=%d processed=%d added=%d removed=%d votes_cleared=%d",
            report.scanned, report.touched, report.added, report.removed, report.votes_cleared,
        )
        return report
