"""Status transition engine: maps (status, yes, no) to the next status.

Rules:
    PENDING:  yes >= no → VERIFIED (counts as added)
              yes <  no → REMOVED
    VERIFIED: no  >  yes → REMOVED (counts as removed)
              otherwise  → VERIFIED (no change)
    REMOVED:  not eligible; the tally skips the marker entirely.

Ties are asymmetric: a tied PENDING marker is promoted, a tied VERIFIED
marker is kept. With no votes at all a PENDING marker is therefore
promoted (0 >= 0).

Pure computation: no I/O, no clock, no mutation of inputs. Any status
label outside the three known values is data corruption and raises
InvalidStateError rather than being coerced.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from tentmap.models.marker import MarkerStatus


class InvalidStateError(Exception):
    """Raised when a marker carries an unknown status or impossible counts."""


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of applying the vote rules to one marker."""
    previous: MarkerStatus
    new_status: MarkerStatus
    counts_as_added: bool = False
    counts_as_removed: bool = False

    @property
    def eligible(self) -> bool:
        return self.previous != MarkerStatus.REMOVED

    @property
    def changed(self) -> bool:
        return self.previous != self.new_status

    @property
    def key(self) -> str:
        return f"{self.previous.value}->{self.new_status.value}"


class StatusTransitionEngine:
    """Applies the vote rules. Stateless; all methods are static."""

    @staticmethod
    def parse_status(status: Union[MarkerStatus, str]) -> MarkerStatus:
        """Coerce a stored status label. Unknown labels raise InvalidStateError."""
        if isinstance(status, MarkerStatus):
            return status
        try:
            return MarkerStatus(status)
        except ValueError:
            raise InvalidStateError(f"Unrecognized marker status: {status!r}") from None

    @staticmethod
    def is_eligible(status: Union[MarkerStatus, str]) -> bool:
        """Whether the tally should touch a marker in this status."""
        return StatusTransitionEngine.parse_status(status) != MarkerStatus.REMOVED

    @staticmethod
    def transition(
        status: Union[MarkerStatus, str],
        yes: int,
        no: int,
    ) -> TransitionOutcome:
        current = StatusTransitionEngine.parse_status(status)
        if yes < 0 or no < 0:
            raise InvalidStateError(
                f"Negative vote counters (yes={yes}, no={no}) on {current.value} marker"
            )

        if current == MarkerStatus.REMOVED:
            return TransitionOutcome(previous=current, new_status=current)

        if current == MarkerStatus.PENDING:
            if yes >= no:
                return TransitionOutcome(
                    previous=current,
                    new_status=MarkerStatus.VERIFIED,
                    counts_as_added=True,
                )
            return TransitionOutcome(previous=current, new_status=MarkerStatus.REMOVED)

        # VERIFIED
        if no > yes:
            return TransitionOutcome(
                previous=current,
                new_status=MarkerStatus.REMOVED,
                counts_as_removed=True,
            )
        return TransitionOutcome(previous=current, new_status=current)


def transition(
    status: Union[MarkerStatus, str],
    yes: int,
    no: int,
) -> TransitionOutcome:
    """Module-level shorthand for StatusTransitionEngine.transition."""
    return StatusTransitionEngine.transition(status, yes, no)
