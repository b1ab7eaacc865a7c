"""Marker and vote models.

Marker lifecycle: PENDING → VERIFIED → REMOVED
                  PENDING → REMOVED

Only the daily tally moves a marker between states. REMOVED is terminal
for the tally: removed markers are never re-entered automatically.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from tentmap.utils.time import from_iso, to_iso


class MarkerStatus(str, enum.Enum):
    """Visibility state of a marker."""
    PENDING = "pending"
    VERIFIED = "verified"
    REMOVED = "removed"


class MarkerType(str, enum.Enum):
    """Kind of street report."""
    TENT = "tent"
    RV = "rv"
    ENCAMPMENT = "encampment"
    INCIDENT = "incident"
    STRUCTURE = "structure"


class VoteChoice(str, enum.Enum):
    YES = "yes"
    NO = "no"


# Type-specific attributes accepted at creation; anything else is rejected.
ATTRIBUTE_KEYS: dict[MarkerType, frozenset[str]] = {
    MarkerType.TENT: frozenset(),
    MarkerType.RV: frozenset({"sideOfStreet"}),
    MarkerType.ENCAMPMENT: frozenset({"tentCount"}),
    MarkerType.INCIDENT: frozenset({"incidentType", "incidentDateTime"}),
    MarkerType.STRUCTURE: frozenset(),
}


@dataclass(frozen=True)
class VoteCounts:
    """Aggregate yes/no counters for one marker since the last tally."""
    yes: int = 0
    no: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.no


@dataclass
class Marker:
    """A single crowdsourced point report.

    ``attributes`` holds the type-specific fields (side of street, tent
    count, incident details). They are fixed at creation and play no part
    in the tally.
    """
    marker_id: str
    marker_type: MarkerType
    latitude: float
    longitude: float
    status: MarkerStatus = MarkerStatus.PENDING
    votes_yes: int = 0
    votes_no: int = 0
    created_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def counts(self) -> VoteCounts:
        return VoteCounts(yes=self.votes_yes, no=self.votes_no)

    @property
    def accepts_votes(self) -> bool:
        return (
            self.status != MarkerStatus.REMOVED
            and self.marker_type != MarkerType.INCIDENT
        )

    @staticmethod
    def from_row(row: Mapping[str, Any], attributes: dict[str, Any]) -> Marker:
        return Marker(
            marker_id=row["marker_id"],
            marker_type=MarkerType(row["marker_type"]),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            status=MarkerStatus(row["status"]),
            votes_yes=int(row["votes_yes"] or 0),
            votes_no=int(row["votes_no"] or 0),
            created_at=from_iso(row["created_at"]),
            last_verified_at=from_iso(row["last_verified_at"]),
            attributes=attributes,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the external (camelCase) field names."""
        return {
            "id": self.marker_id,
            "type": self.marker_type.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "status": self.status.value,
            "votesYes": self.votes_yes,
            "votesNo": self.votes_no,
            "createdAt": to_iso(self.created_at) if self.created_at else None,
            "lastVerifiedAt": (
                to_iso(self.last_verified_at) if self.last_verified_at else None
            ),
            **self.attributes,
        }


@dataclass(frozen=True)
class VoteRecord:
    """One ledger entry. Never mutated; purged by the tally."""
    vote_id: str
    marker_id: str
    voter_id: str
    choice: VoteChoice
    submitted_at: datetime

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> VoteRecord:
        return VoteRecord(
            vote_id=row["vote_id"],
            marker_id=row["marker_id"],
            voter_id=row["voter_id"],
            choice=VoteChoice(row["choice"]),
            submitted_at=from_iso(row["submitted_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.vote_id,
            "markerId": self.marker_id,
            "voterId": self.voter_id,
            "choice": self.choice.value,
            "submittedAt": to_iso(self.submitted_at),
        }
