"""News feed records: the public summary of each tally pass."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from tentmap.utils.time import from_iso, to_iso


class NewsKind(str, enum.Enum):
    VOTE_UPDATE = "vote_update"


@dataclass(frozen=True)
class NewsRecord:
    """An append-only feed entry. The core never edits or deletes these."""
    news_id: str
    title: str
    message: str
    created_at: datetime
    kind: NewsKind = NewsKind.VOTE_UPDATE

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> NewsRecord:
        return NewsRecord(
            news_id=row["news_id"],
            title=row["title"],
            message=row["message"],
            created_at=from_iso(row["created_at"]),
            kind=NewsKind(row["kind"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.news_id,
            "title": self.title,
            "message": self.message,
            "createdAt": to_iso(self.created_at),
            "type": self.kind.value,
        }
