"""Tally pass models: staged updates and the pass report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from tentmap.models.marker import MarkerStatus
from tentmap.utils.time import to_iso


@dataclass(frozen=True)
class MarkerUpdate:
    """A staged registry write: new status, zeroed counters, fresh timestamp."""
    marker_id: str
    status: MarkerStatus
    verified_at: datetime


@dataclass
class TallyReport:
    """Outcome of one committed tally pass."""
    scanned: int
    touched: int
    added: int
    removed: int
    votes_cleared: int
    started_at: datetime
    finished_at: datetime
    summary_title: str = ""
    summary_message: str = ""
    warnings: list[str] = field(default_factory=list)
    transitions: dict[str, int] = field(default_factory=dict)
    news_id: Optional[str] = None

    def to_trigger_payload(self) -> dict[str, Any]:
        """The JSON body returned by the HTTP trigger on success."""
        payload: dict[str, Any] = {
            "success": True,
            "timestamp": to_iso(self.finished_at),
            "processed": self.touched,
            "added": self.added,
            "removed": self.removed,
            "votesCleared": self.votes_cleared,
        }
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload
