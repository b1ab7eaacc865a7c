"""Vote acceptance: the write path that feeds the daily tally.

Each accepted vote appends one ledger entry and increments exactly one of
the marker's two counters, in the same transaction. One vote per voter
per marker per cycle; the tally drains the ledger, which reopens voting
for the next cycle.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional, Union

from tentmap.models.marker import VoteChoice, VoteRecord
from tentmap.persistence.store import MarkerClosed, MarkerStore
from tentmap.utils.time import utc_now

logger = logging.getLogger(__name__)


class VoteRejected(Exception):
    """Base class for votes that were not accepted."""


class MarkerNotFoundError(VoteRejected):
    pass


class VotingClosedError(VoteRejected):
    """The marker is removed or is an incident report (not voteable)."""


class DuplicateVoteError(VoteRejected):
    """The voter already voted on this marker in the current cycle."""


class VoteAcceptor:
    """Validates and records votes.

    Usage:
        acceptor = VoteAcceptor(store)
        acceptor.submit_vote(marker_id, voter_id, "yes")
    """

    def __init__(
        self,
        store: MarkerStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    def has_voted(self, marker_id: str, voter_id: str) -> bool:
        return self._store.has_voted(marker_id, voter_id.strip())

    def submit_vote(
        self,
        marker_id: str,
        voter_id: str,
        choice: Union[VoteChoice, str],
        vote_id: Optional[str] = None,
    ) -> VoteRecord:
        """Record one vote. Raises ValueError on bad input, VoteRejected otherwise."""
        voter = (voter_id or "").strip()
        if not voter:
            raise ValueError("voter_id must not be blank")
        try:
            vote_choice = VoteChoice(choice)
        except ValueError:
            raise ValueError(f"Invalid vote choice: {choice!r}") from None

        marker = self._store.get_marker(marker_id)
        if marker is None:
            raise MarkerNotFoundError(f"Marker not found: {marker_id}")
        if not marker.accepts_votes:
            raise VotingClosedError(
                f"Marker {marker_id} ({marker.marker_type.value}, "
                f"{marker.status.value}) is not open for voting"
            )

        vote = VoteRecord(
            vote_id=vote_id or uuid.uuid4().hex,
            marker_id=marker_id,
            voter_id=voter,
            choice=vote_choice,
            submitted_at=self._clock(),
        )
        try:
            inserted = self._store.record_vote(vote)
        except LookupError:
            raise MarkerNotFoundError(f"Marker not found: {marker_id}") from None
        except MarkerClosed:
            raise VotingClosedError(f"Marker {marker_id} closed for voting") from None
        if not inserted:
            raise DuplicateVoteError(
                f"Voter {voter} already voted on marker {marker_id} this cycle"
            )

        logger.debug("Vote %s recorded: marker=%s choice=%s", vote.vote_id, marker_id, vote_choice.value)
        return vote
