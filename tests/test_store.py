"""Tests for MarkerStore: registry, ledger, news, and batch atomicity."""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

from tentmap.models.marker import Marker, MarkerStatus, MarkerType, VoteChoice, VoteCounts, VoteRecord
from tentmap.models.news import NewsRecord
from tentmap.models.tally import MarkerUpdate
from tentmap.persistence import store as store_module
from tentmap.persistence.store import CommitFailure, MarkerClosed, MarkerStore
from tentmap.utils.time import to_iso

T0 = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path) -> Iterator[MarkerStore]:
    s = MarkerStore(str(tmp_path / "tentmap.db"))
    s.initialize()
    yield s
    s.close()


def _marker(marker_id: str, created_at: datetime = T0, **kwargs) -> Marker:
    return Marker(
        marker_id=marker_id,
        marker_type=kwargs.pop("marker_type", MarkerType.TENT),
        latitude=37.77,
        longitude=-122.42,
        created_at=created_at,
        last_verified_at=created_at,
        **kwargs,
    )


def _vote(marker_id: str, voter_id: str, choice: VoteChoice = VoteChoice.YES) -> VoteRecord:
    return VoteRecord(
        vote_id=f"{marker_id}:{voter_id}",
        marker_id=marker_id,
        voter_id=voter_id,
        choice=choice,
        submitted_at=T0,
    )


class TestMarkers:
    def test_insert_and_get(self, store: MarkerStore) -> None:
        store.insert_marker(_marker(
            "M-1", marker_type=MarkerType.ENCAMPMENT, attributes={"tentCount": 3},
        ))
        marker = store.get_marker("M-1")
        assert marker is not None
        assert marker.status == MarkerStatus.PENDING
        assert marker.attributes == {"tentCount": 3}
        assert marker.created_at == T0

    def test_get_missing(self, store: MarkerStore) -> None:
        assert store.get_marker("nope") is None

    def test_list_by_status(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.insert_marker(_marker("M-2", status=MarkerStatus.VERIFIED))
        assert [m.marker_id for m in store.list_markers(MarkerStatus.VERIFIED)] == ["M-2"]
        assert len(store.list_markers()) == 2

    def test_count_by_type_and_status(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.insert_marker(_marker("M-2", marker_type=MarkerType.RV, attributes={"sideOfStreet": "left"}))
        assert store.count_markers_by("marker_type") == {"tent": 1, "rv": 1}
        assert store.count_markers_by("status") == {"pending": 2}

    def test_count_by_rejects_other_columns(self, store: MarkerStore) -> None:
        with pytest.raises(ValueError):
            store.count_markers_by("latitude; DROP TABLE markers")

    def test_delete_created_after(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("old", created_at=T0 - timedelta(days=2)))
        store.insert_marker(_marker("new", created_at=T0 + timedelta(hours=1)))
        assert store.delete_markers_created_after(to_iso(T0)) == 1
        assert store.get_marker("new") is None
        assert store.get_marker("old") is not None

    def test_delete_created_after_drops_their_ledger_entries(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("old", created_at=T0 - timedelta(days=2)))
        store.insert_marker(_marker("new", created_at=T0 + timedelta(hours=1)))
        store.record_vote(_vote("old", "alice"))
        store.record_vote(_vote("new", "alice"))
        store.record_vote(_vote("new", "bob", VoteChoice.NO))
        store.delete_markers_created_after(to_iso(T0))
        assert [v.marker_id for v in store.list_votes()] == ["old"]
        assert set(store.ledger_counts_by_marker()) == {"old"}

    def test_count_created_since(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("old", created_at=T0 - timedelta(days=1)))
        store.insert_marker(_marker("s", created_at=T0, marker_type=MarkerType.STRUCTURE))
        store.insert_marker(_marker("t", created_at=T0 + timedelta(hours=1)))
        assert store.count_markers_created_since(to_iso(T0)) == {"structure": 1, "tent": 1}


class TestVotes:
    def test_record_vote_increments_counter(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        assert store.record_vote(_vote("M-1", "alice", VoteChoice.YES))
        assert store.record_vote(_vote("M-1", "bob", VoteChoice.NO))
        assert store.record_vote(_vote("M-1", "carol", VoteChoice.NO))
        assert store.vote_counts("M-1") == VoteCounts(yes=1, no=2)
        assert store.count_votes() == 3

    def test_duplicate_voter_is_rejected(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        assert store.record_vote(_vote("M-1", "alice"))
        second = VoteRecord(
            vote_id="other-id", marker_id="M-1", voter_id="alice",
            choice=VoteChoice.NO, submitted_at=T0,
        )
        assert not store.record_vote(second)
        assert store.vote_counts("M-1") == VoteCounts(yes=1, no=0)
        assert store.count_votes() == 1

    def test_vote_on_missing_marker_changes_nothing(self, store: MarkerStore) -> None:
        with pytest.raises(LookupError):
            store.record_vote(_vote("ghost", "alice"))
        assert store.count_votes() == 0

    @pytest.mark.parametrize("marker_type,status", [
        (MarkerType.TENT, MarkerStatus.REMOVED),
        (MarkerType.INCIDENT, MarkerStatus.PENDING),
    ])
    def test_vote_on_closed_marker_changes_nothing(
        self, store: MarkerStore, marker_type: MarkerType, status: MarkerStatus,
    ) -> None:
        store.insert_marker(_marker("M-1", marker_type=marker_type, status=status))
        with pytest.raises(MarkerClosed):
            store.record_vote(_vote("M-1", "alice"))
        assert store.vote_counts("M-1") == VoteCounts()
        assert store.count_votes() == 0
        assert store.get_marker("M-1").last_verified_at == T0

    def test_has_voted(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.record_vote(_vote("M-1", "alice"))
        assert store.has_voted("M-1", "alice")
        assert not store.has_voted("M-1", "bob")

    def test_ledger_counts_by_marker(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.record_vote(_vote("M-1", "a", VoteChoice.YES))
        store.record_vote(_vote("M-1", "b", VoteChoice.NO))
        store.append_ledger_entry(_vote("ghost", "c", VoteChoice.NO))
        counts = store.ledger_counts_by_marker()
        assert counts["M-1"] == VoteCounts(yes=1, no=1)
        assert counts["ghost"] == VoteCounts(yes=0, no=1)


class TestNews:
    def test_newest_first(self, store: MarkerStore) -> None:
        for day in (1, 3, 2):
            store.append_news(NewsRecord(
                news_id=f"N-{day}",
                title=f"Updates 1/{day}",
                message="+0 objects added, -0 objects removed",
                created_at=datetime(2026, 1, day, tzinfo=timezone.utc),
            ))
        titles = [n.title for n in store.list_news(limit=2)]
        assert titles == ["Updates 1/3", "Updates 1/2"]
        assert store.count_news() == 3


class TestTallyBatch:
    def test_commit_applies_updates_and_drains_ledger(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.record_vote(_vote("M-1", "alice"))
        with store.tally_batch() as batch:
            rows = batch.markers()
            assert rows[0]["votes_yes"] == 1
            batch.stage_update(MarkerUpdate("M-1", MarkerStatus.VERIFIED, T0))
            batch.stage_ledger_drain()
        assert batch.votes_cleared == 1
        marker = store.get_marker("M-1")
        assert marker.status == MarkerStatus.VERIFIED
        assert marker.counts == VoteCounts()
        assert store.count_votes() == 0

    def test_exception_in_body_rolls_back(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.record_vote(_vote("M-1", "alice"))
        with pytest.raises(RuntimeError):
            with store.tally_batch() as batch:
                batch.stage_update(MarkerUpdate("M-1", MarkerStatus.VERIFIED, T0))
                batch.stage_ledger_drain()
                raise RuntimeError("interrupted")
        assert store.get_marker("M-1").status == MarkerStatus.PENDING
        assert store.count_votes() == 1

    def test_failed_flush_raises_commit_failure(self, store: MarkerStore, monkeypatch) -> None:
        store.insert_marker(_marker("M-1"))
        store.insert_marker(_marker("M-2"))
        store.record_vote(_vote("M-2", "alice"))
        calls = {"n": 0}
        original = store_module.TallyBatch._write_update

        def _flaky(self, update):
            calls["n"] += 1
            if calls["n"] == 2:
                raise sqlite3.OperationalError("disk I/O error")
            original(self, update)

        monkeypatch.setattr(store_module.TallyBatch, "_write_update", _flaky)
        with pytest.raises(CommitFailure):
            with store.tally_batch() as batch:
                for row in batch.markers():
                    batch.stage_update(MarkerUpdate(row["marker_id"], MarkerStatus.VERIFIED, T0))
                batch.stage_ledger_drain()

        assert [m.status for m in store.list_markers()] == [MarkerStatus.PENDING] * 2
        assert store.count_votes() == 1
        assert store.vote_counts("M-2") == VoteCounts(yes=1, no=0)


class TestReset:
    def test_reset_clears_everything(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.record_vote(_vote("M-1", "alice"))
        store.append_news(NewsRecord("N-1", "Updates 1/1", "msg", T0))
        assert store.reset() == {"markers": 1, "votes": 1, "news": 1}
        assert store.count_markers() == 0
        assert store.count_votes() == 0
        assert store.count_news() == 0


class TestConnections:
    def test_close_releases_connections_from_every_thread(self, store: MarkerStore) -> None:
        opened: list[sqlite3.Connection] = []

        def _worker() -> None:
            store.count_markers()
            opened.append(store._get_connection())

        threads = [threading.Thread(target=_worker) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        opened.append(store._get_connection())

        store.close()
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")

    def test_store_reopens_after_close(self, store: MarkerStore) -> None:
        store.insert_marker(_marker("M-1"))
        store.close()
        assert store.count_markers() == 1
