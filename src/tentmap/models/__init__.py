"""Data models for markers, ledger entries, and the news feed."""

from tentmap.models.marker import (
    Marker,
    MarkerStatus,
    MarkerType,
    VoteChoice,
    VoteCounts,
    VoteRecord,
)
from tentmap.models.news import NewsKind, NewsRecord
from tentmap.models.tally import MarkerUpdate, TallyReport

__all__ = [
    "Marker",
    "MarkerStatus",
    "MarkerType",
    "MarkerUpdate",
    "NewsKind",
    "NewsRecord",
    "TallyReport",
    "VoteChoice",
    "VoteCounts",
    "VoteRecord",
]
