"""SQLite persistence for the marker registry, vote ledger, and news feed.

Three tables back the three logical collections:
- markers: current lifecycle state and aggregate vote counters.
- votes:   the ledger, one row per accepted vote, unique per (marker, voter).
- news:    append-only tally summaries.

Counters are only ever changed in SQL (``votes_yes = votes_yes + 1``), never
read-modify-written from Python, so concurrent votes cannot lose updates.
The tally runs inside a single ``BEGIN IMMEDIATE`` transaction: the marker
snapshot, every staged write, and the ledger drain either all land or none
do.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from tentmap.models.marker import Marker, MarkerStatus, MarkerType, VoteChoice, VoteCounts, VoteRecord
from tentmap.models.news import NewsRecord
from tentmap.models.tally import MarkerUpdate
from tentmap.utils.time import to_iso

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = {
    VoteChoice.YES: "votes_yes",
    VoteChoice.NO: "votes_no",
}


class StoreError(Exception):
    """Base class for storage failures surfaced to the tally caller."""


class ReadFailure(StoreError):
    """The registry or ledger could not be read. Nothing was changed."""


class CommitFailure(StoreError):
    """The atomic batch did not commit. Nothing was changed; safe to retry."""


class MarkerClosed(Exception):
    """The marker exists but no longer accepts votes (removed or incident)."""


class TallyBatch:
    """Staging area for one tally pass.

    Obtained from MarkerStore.tally_batch(). Reads happen under the write
    lock already held by the enclosing transaction; writes are buffered
    and flushed just before COMMIT.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._updates: list[MarkerUpdate] = []
        self._drain_ledger = False
        self.votes_cleared = 0

    def markers(self) -> list[dict[str, Any]]:
        """Return every marker row as a plain dict (raw status labels)."""
        try:
            rows = self._conn.execute(
                """
                SELECT marker_id, status, votes_yes, votes_no
                FROM markers ORDER BY created_at ASC, marker_id ASC
                """
            ).fetchall()
        except sqlite3.Error as e:
            raise ReadFailure(f"Could not enumerate markers: {e}") from e
        return [dict(row) for row in rows]

    def stage_update(self, update: MarkerUpdate) -> None:
        self._updates.append(update)

    def stage_ledger_drain(self) -> None:
        """Stage deletion of every ledger entry, tallied or not."""
        self._drain_ledger = True

    @property
    def staged_count(self) -> int:
        return len(self._updates)

    def _flush(self) -> None:
        for update in self._updates:
            self._write_update(update)
        if self._drain_ledger:
            cursor = self._conn.execute("DELETE FROM votes")
            self.votes_cleared = max(cursor.rowcount, 0)

    def _write_update(self, update: MarkerUpdate) -> None:
        self._conn.execute(
            """
            UPDATE markers
            SET status = ?, votes_yes = 0, votes_no = 0, last_verified_at = ?
            WHERE marker_id = ?
            """,
            (update.status.value, to_iso(update.verified_at), update.marker_id),
        )


class MarkerStore:
    """SQLite persistence for markers, votes, and news."""

    def __init__(self, db_path: str) -> None:
        self.db_path = os.path.expanduser(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._generation = 0

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None or getattr(self._local, "generation", None) != self._generation:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            with self._lock:
                self._connections.append(conn)
                self._local.generation = self._generation
            self._local.conn = conn
        return conn

    def close(self) -> None:
        """Close every connection opened by any thread.

        Threads that use the store afterwards open a fresh connection.
        """
        with self._lock:
            connections, self._connections = self._connections, []
            self._generation += 1
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("Failed to close connection: %s", e)
        self._local.conn = None

    def initialize(self) -> None:
        conn = self._get_connection()
        # No CHECK on status: unknown labels must surface in the tally as
        # InvalidStateError.
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS markers (
                marker_id TEXT PRIMARY KEY,
                marker_type TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                votes_yes INTEGER NOT NULL DEFAULT 0,
                votes_no INTEGER NOT NULL DEFAULT 0,
                attributes_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                last_verified_at TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_markers_status
            ON markers(status)
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS votes (
                vote_id TEXT PRIMARY KEY,
                marker_id TEXT NOT NULL,
                voter_id TEXT NOT NULL,
                choice TEXT NOT NULL CHECK(choice IN ('yes', 'no')),
                submitted_at TEXT NOT NULL,
                UNIQUE(marker_id, voter_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS news (
                news_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                kind TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_news_created
            ON news(created_at DESC)
            """
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            self._rollback(conn)
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error:
            self._rollback(conn)
            raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("Rollback failed: %s", e)

    @contextmanager
    def tally_batch(self) -> Iterator[TallyBatch]:
        """Hold the write lock for one tally pass.

        The body reads and stages through the yielded batch. On normal exit
        the staged writes are flushed and committed as one unit; any error
        raised by the body, the flush, or COMMIT rolls everything back.
        Raises ReadFailure if the lock cannot be taken and CommitFailure if
        the batch cannot be written.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise ReadFailure(f"Could not open tally transaction: {e}") from e

        batch = TallyBatch(conn)
        try:
            yield batch
        except BaseException:
            self._rollback(conn)
            raise

        try:
            batch._flush()
            conn.execute("COMMIT")
        except BaseException as e:
            self._rollback(conn)
            if isinstance(e, sqlite3.Error):
                raise CommitFailure(f"Tally batch did not commit: {e}") from e
            raise

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def insert_marker(self, marker: Marker) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO markers (
                marker_id, marker_type, latitude, longitude, status,
                votes_yes, votes_no, attributes_json, created_at, last_verified_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                marker.marker_id,
                marker.marker_type.value,
                marker.latitude,
                marker.longitude,
                marker.status.value,
                marker.votes_yes,
                marker.votes_no,
                json.dumps(marker.attributes, sort_keys=True),
                to_iso(marker.created_at),
                to_iso(marker.last_verified_at) if marker.last_verified_at else None,
            ),
        )

    def get_marker(self, marker_id: str) -> Optional[Marker]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM markers WHERE marker_id = ?", (marker_id,)
        ).fetchone()
        return self._marker_from_row(row) if row else None

    def list_markers(self, status: Optional[MarkerStatus] = None) -> list[Marker]:
        conn = self._get_connection()
        if status is None:
            rows = conn.execute(
                "SELECT * FROM markers ORDER BY created_at ASC, marker_id ASC"
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM markers WHERE status = ?
                ORDER BY created_at ASC, marker_id ASC
                """,
                (status.value,),
            ).fetchall()
        return [self._marker_from_row(row) for row in rows]

    def vote_counts(self, marker_id: str) -> Optional[VoteCounts]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT votes_yes, votes_no FROM markers WHERE marker_id = ?",
            (marker_id,),
        ).fetchone()
        if row is None:
            return None
        return VoteCounts(yes=int(row["votes_yes"] or 0), no=int(row["votes_no"] or 0))

    def count_markers_by(self, column: str) -> dict[str, int]:
        if column not in ("status", "marker_type"):
            raise ValueError(f"Cannot group markers by {column!r}")
        conn = self._get_connection()
        rows = conn.execute(
            f"SELECT {column} AS label, COUNT(*) AS cnt FROM markers GROUP BY {column}"
        ).fetchall()
        return {row["label"]: int(row["cnt"]) for row in rows}

    def count_markers_created_since(self, cutoff_iso: str) -> dict[str, int]:
        """Markers created at or after the cutoff, grouped by type."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT marker_type AS label, COUNT(*) AS cnt FROM markers
            WHERE created_at >= ? GROUP BY marker_type
            """,
            (cutoff_iso,),
        ).fetchall()
        return {row["label"]: int(row["cnt"]) for row in rows}

    def count_markers(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM markers").fetchone()
        return int(row["cnt"] or 0)

    def delete_markers_created_after(self, cutoff_iso: str) -> int:
        """Delete markers created strictly after the cutoff, with their ledger
        entries. Returns the number of markers deleted."""
        with self._immediate() as conn:
            conn.execute(
                """
                DELETE FROM votes WHERE marker_id IN (
                    SELECT marker_id FROM markers WHERE created_at > ?
                )
                """,
                (cutoff_iso,),
            )
            cursor = conn.execute(
                "DELETE FROM markers WHERE created_at > ?", (cutoff_iso,)
            )
            return cursor.rowcount

    def _marker_from_row(self, row: sqlite3.Row) -> Marker:
        attributes = json.loads(row["attributes_json"] or "{}")
        return Marker.from_row(row, attributes)

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def record_vote(self, vote: VoteRecord) -> bool:
        """Append a ledger entry and bump the matching counter atomically.

        Returns False (and changes nothing) if this voter already has an
        entry for the marker. Raises LookupError if the marker row is gone
        and MarkerClosed if it is removed or an incident; the status is
        checked under the write lock, so a tally that commits first wins.
        """
        column = _COUNTER_COLUMNS[vote.choice]
        with self._immediate() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO votes (vote_id, marker_id, voter_id, choice, submitted_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        vote.vote_id,
                        vote.marker_id,
                        vote.voter_id,
                        vote.choice.value,
                        to_iso(vote.submitted_at),
                    ),
                )
            except sqlite3.IntegrityError:
                return False
            cursor = conn.execute(
                f"""
                UPDATE markers
                SET {column} = {column} + 1, last_verified_at = ?
                WHERE marker_id = ? AND status != ? AND marker_type != ?
                """,
                (
                    to_iso(vote.submitted_at),
                    vote.marker_id,
                    MarkerStatus.REMOVED.value,
                    MarkerType.INCIDENT.value,
                ),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM markers WHERE marker_id = ?", (vote.marker_id,)
                ).fetchone()
                if exists is None:
                    raise LookupError(vote.marker_id)
                raise MarkerClosed(vote.marker_id)
            return True

    def append_ledger_entry(self, vote: VoteRecord) -> None:
        """Insert a ledger row without touching any counter.

        Used for maintenance and recovery; normal votes go through
        record_vote().
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO votes (vote_id, marker_id, voter_id, choice, submitted_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                vote.vote_id,
                vote.marker_id,
                vote.voter_id,
                vote.choice.value,
                to_iso(vote.submitted_at),
            ),
        )

    def has_voted(self, marker_id: str, voter_id: str) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM votes WHERE marker_id = ? AND voter_id = ? LIMIT 1",
            (marker_id, voter_id),
        ).fetchone()
        return row is not None

    def list_votes(self, marker_id: Optional[str] = None) -> list[VoteRecord]:
        conn = self._get_connection()
        if marker_id is None:
            rows = conn.execute(
                "SELECT * FROM votes ORDER BY submitted_at ASC, vote_id ASC"
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM votes WHERE marker_id = ?
                ORDER BY submitted_at ASC, vote_id ASC
                """,
                (marker_id,),
            ).fetchall()
        return [VoteRecord.from_row(row) for row in rows]

    def count_votes(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM votes").fetchone()
        return int(row["cnt"] or 0)

    def ledger_counts_by_marker(self) -> dict[str, VoteCounts]:
        """Recount the ledger per marker. For consistency checks only."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT marker_id,
                   SUM(CASE WHEN choice = 'yes' THEN 1 ELSE 0 END) AS yes,
                   SUM(CASE WHEN choice = 'no' THEN 1 ELSE 0 END) AS no
            FROM votes GROUP BY marker_id
            """
        ).fetchall()
        return {
            row["marker_id"]: VoteCounts(yes=int(row["yes"]), no=int(row["no"]))
            for row in rows
        }

    # ------------------------------------------------------------------
    # News
    # ------------------------------------------------------------------

    def append_news(self, record: NewsRecord) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO news (news_id, title, message, kind, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                record.news_id,
                record.title,
                record.message,
                record.kind.value,
                to_iso(record.created_at),
            ),
        )

    def list_news(self, limit: int = 20) -> list[NewsRecord]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM news ORDER BY created_at DESC, news_id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [NewsRecord.from_row(row) for row in rows]

    def count_news(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM news").fetchone()
        return int(row["cnt"] or 0)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reset(self) -> dict[str, int]:
        """Delete every marker, vote, and news record. Returns counts deleted."""
        with self._immediate() as conn:
            deleted = {}
            for table in ("markers", "votes", "news"):
                cursor = conn.execute(f"DELETE FROM {table}")
                deleted[table] = cursor.rowcount
            return deleted
