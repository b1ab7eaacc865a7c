"""Vote aggregator: reads the per-marker counters kept by the registry.

The counters are maintained incrementally at vote time and are the source
of truth for the tally; the ledger is never scanned to recompute them.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from tentmap.engine.transition import InvalidStateError
from tentmap.models.marker import VoteCounts
from tentmap.persistence.store import MarkerStore


class VoteAggregator:
    def __init__(self, store: MarkerStore) -> None:
        self._store = store

    def counts(self, marker_id: str) -> Optional[VoteCounts]:
        """Current counters for a marker, or None if it does not exist."""
        return self._store.vote_counts(marker_id)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> VoteCounts:
        """Read counters from a registry row. Missing values count as zero."""
        yes = row.get("votes_yes")
        no = row.get("votes_no")
        try:
            return VoteCounts(yes=int(yes or 0), no=int(no or 0))
        except (TypeError, ValueError):
            raise InvalidStateError(
                f"Non-numeric vote counters on marker {row.get('marker_id')}: "
                f"yes={yes!r}, no={no!r}"
            ) from None
