"""tentmap service — unified facade over the registry, votes, and tally.

This is the primary interface for programmatic access. It wires together:
- Marker registry (create, look up, list, maintenance deletes)
- Vote acceptance (one vote per voter per marker per cycle)
- Vote aggregation (counter reads)
- The daily tally pass and its news summary

All operations return a ServiceResult. Domain failures (bad input,
rejected votes, a failed tally pass) come back as success=False with
error strings; they do not raise through the facade.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, Optional, Union

from tentmap import __version__
from tentmap.config import Settings
from tentmap.engine.transition import InvalidStateError
from tentmap.models.marker import (
    ATTRIBUTE_KEYS,
    Marker,
    MarkerStatus,
    MarkerType,
    VoteChoice,
    VoteCounts,
)
from tentmap.models.news import NewsRecord
from tentmap.persistence.store import MarkerStore, StoreError
from tentmap.tally.job import TallyJob
from tentmap.utils.time import from_iso, to_iso, utc_now
from tentmap.voting.acceptance import VoteAcceptor, VoteRejected
from tentmap.voting.aggregator import VoteAggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class TentMapService:
    """Facade for the marker map and its daily vote tally.

    Usage:
        store = MarkerStore("data/tentmap.db")
        store.initialize()
        service = TentMapService(store)

        result = service.create_marker(MarkerType.TENT, 37.77, -122.42)
        service.submit_vote(result.data["marker_id"], "voter-1", "yes")

        # Once a day (scheduler or HTTP trigger)
        result = service.process_votes()
    """

    def __init__(
        self,
        store: MarkerStore,
        tally_job: Optional[TallyJob] = None,
        clock: Callable[[], datetime] = utc_now,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._tz = tz
        self._acceptor = VoteAcceptor(store, clock=clock)
        self._aggregator = VoteAggregator(store)
        self._tally_job = tally_job or TallyJob(store, clock=clock)

    @staticmethod
    def from_settings(settings: Settings) -> TentMapService:
        """Open the configured database and build a fully wired service."""
        store = MarkerStore(str(settings.db_path))
        store.initialize()
        job = TallyJob(
            store,
            tz=settings.zone,
            count_rejected_pending=settings.count_rejected_pending,
        )
        return TentMapService(store, tally_job=job, tz=settings.zone)

    @property
    def store(self) -> MarkerStore:
        return self._store

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def create_marker(
        self,
        marker_type: Union[MarkerType, str],
        latitude: float,
        longitude: float,
        attributes: Optional[dict[str, Any]] = None,
        marker_id: Optional[str] = None,
    ) -> ServiceResult:
        """Register a new pending marker with zeroed counters."""
        try:
            mtype = MarkerType(marker_type)
        except ValueError:
            return ServiceResult(
                success=False, errors=[f"Unknown marker type: {marker_type!r}"],
            )

        errors = _validate_location(latitude, longitude)
        clean_attrs, attr_errors = _validate_attributes(mtype, attributes or {})
        errors.extend(attr_errors)
        if errors:
            return ServiceResult(success=False, errors=errors)

        now = self._clock()
        if mtype == MarkerType.INCIDENT and "incidentDateTime" not in clean_attrs:
            clean_attrs["incidentDateTime"] = to_iso(now)

        mid = (marker_id or "").strip() or uuid.uuid4().hex
        marker = Marker(
            marker_id=mid,
            marker_type=mtype,
            latitude=float(latitude),
            longitude=float(longitude),
            status=MarkerStatus.PENDING,
            created_at=now,
            last_verified_at=now,
            attributes=clean_attrs,
        )
        try:
            self._store.insert_marker(marker)
        except sqlite3.IntegrityError:
            return ServiceResult(success=False, errors=[f"Duplicate marker ID: {mid}"])
        except sqlite3.Error as e:
            return ServiceResult(success=False, errors=[f"Persistence failure: {e}"])

        logger.info("Marker %s created (%s)", mid, mtype.value)
        return ServiceResult(
            success=True,
            data={"marker_id": mid, "status": marker.status.value},
        )

    def get_marker(self, marker_id: str) -> Optional[Marker]:
        return self._store.get_marker(marker_id)

    def list_markers(self, status: Optional[MarkerStatus] = None) -> list[Marker]:
        return self._store.list_markers(status)

    def delete_markers_created_after(self, cutoff: datetime) -> ServiceResult:
        try:
            deleted = self._store.delete_markers_created_after(to_iso(cutoff))
        except sqlite3.Error as e:
            return ServiceResult(success=False, errors=[f"Persistence failure: {e}"])
        logger.warning("Deleted %d markers created after %s", deleted, to_iso(cutoff))
        return ServiceResult(success=True, data={"deleted": deleted})

    def reset_database(self) -> ServiceResult:
        """Delete every marker, vote, and news record."""
        try:
            deleted = self._store.reset()
        except sqlite3.Error as e:
            return ServiceResult(success=False, errors=[f"Persistence failure: {e}"])
        logger.warning("Database reset: %s", deleted)
        return ServiceResult(success=True, data={"deleted": deleted})

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def submit_vote(
        self,
        marker_id: str,
        voter_id: str,
        choice: Union[VoteChoice, str],
    ) -> ServiceResult:
        try:
            vote = self._acceptor.submit_vote(marker_id, voter_id, choice)
        except (ValueError, VoteRejected) as e:
            return ServiceResult(success=False, errors=[str(e)])
        except sqlite3.Error as e:
            return ServiceResult(success=False, errors=[f"Persistence failure: {e}"])
        counts = self._aggregator.counts(marker_id) or VoteCounts()
        return ServiceResult(
            success=True,
            data={
                "vote_id": vote.vote_id,
                "marker_id": marker_id,
                "votes_yes": counts.yes,
                "votes_no": counts.no,
            },
        )

    def has_voted(self, marker_id: str, voter_id: str) -> bool:
        return self._acceptor.has_voted(marker_id, voter_id)

    def get_vote_counts(self, marker_id: str) -> Optional[VoteCounts]:
        return self._aggregator.counts(marker_id)

    # ------------------------------------------------------------------
    # Tally
    # ------------------------------------------------------------------

    def process_votes(self) -> ServiceResult:
        """Run one tally pass.

        ``data`` is the trigger payload: on success
        {success, timestamp, processed, added, removed, votesCleared};
        on failure {success: false, error, timestamp}. A failed pass has
        changed nothing and may be retried immediately.
        """
        try:
            report = self._tally_job.run()
        except (InvalidStateError, StoreError) as e:
            logger.error("Vote tally failed (%s): %s", type(e).__name__, e)
            return ServiceResult(
                success=False,
                errors=[str(e)],
                data={
                    "success": False,
                    "error": str(e),
                    "timestamp": to_iso(self._clock()),
                },
            )
        return ServiceResult(success=True, data=report.to_trigger_payload())

    def list_news(self, limit: int = 20) -> list[NewsRecord]:
        return self._store.list_news(limit)

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Marker, ledger and news counts. ``created_today`` starts at local
        midnight in the service timezone (UTC if none was given)."""
        now = self._clock()
        local = now.astimezone(self._tz) if self._tz is not None else now
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "markers": {
                "total": self._store.count_markers(),
                "by_type": self._store.count_markers_by("marker_type"),
                "by_status": self._store.count_markers_by("status"),
                "created_today": self._store.count_markers_created_since(to_iso(midnight)),
            },
            "votes": self._store.count_votes(),
            "news": self._store.count_news(),
        }

    def status(self) -> dict[str, Any]:
        """Return a system-wide status summary."""
        latest = self._store.list_news(limit=1)
        return {
            "version": __version__,
            "database": self._store.db_path,
            "stats": self.stats(),
            "last_tally": latest[0].to_dict() if latest else None,
        }

    def check_consistency(self) -> list[str]:
        """Compare every marker's counters with its ledger entries.

        Returns one error per mismatch. Ledger entries for markers that no
        longer exist are reported as orphans. Removed markers are skipped:
        the tally leaves their counters as they were.
        """
        errors: list[str] = []
        ledger = self._store.ledger_counts_by_marker()
        for marker in self._store.list_markers():
            expected = ledger.pop(marker.marker_id, VoteCounts())
            if marker.status == MarkerStatus.REMOVED:
                continue
            if marker.counts != expected:
                errors.append(
                    f"{marker.marker_id}: counters yes={marker.votes_yes} no={marker.votes_no} "
                    f"but ledger has yes={expected.yes} no={expected.no}"
                )
        for orphan_id, counts in sorted(ledger.items()):
            errors.append(f"{orphan_id}: {counts.total} ledger entries for unknown marker")
        return errors


def _validate_location(latitude: Any, longitude: Any) -> list[str]:
    errors: list[str] = []
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return [f"Invalid coordinates: ({latitude!r}, {longitude!r})"]
    if math.isnan(lat) or not -90.0 <= lat <= 90.0:
        errors.append(f"Latitude out of range: {latitude}")
    if math.isnan(lng) or not -180.0 <= lng <= 180.0:
        errors.append(f"Longitude out of range: {longitude}")
    return errors


def _validate_attributes(
    marker_type: MarkerType,
    attributes: dict[str, Any],
) -> tuple[dict[str, Any], list[str]]:
    allowed = ATTRIBUTE_KEYS[marker_type]
    errors: list[str] = []
    unknown = sorted(set(attributes) - allowed)
    if unknown:
        errors.append(
            f"Unexpected attributes for {marker_type.value}: {', '.join(unknown)}"
        )

    clean: dict[str, Any] = {}
    if marker_type == MarkerType.RV:
        side = str(attributes.get("sideOfStreet") or "").strip()
        if not side:
            errors.append("rv markers require sideOfStreet")
        clean["sideOfStreet"] = side
    elif marker_type == MarkerType.ENCAMPMENT:
        count = attributes.get("tentCount")
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            errors.append(f"encampment markers require a positive tentCount, got {count!r}")
        clean["tentCount"] = count
    elif marker_type == MarkerType.INCIDENT:
        incident_type = str(attributes.get("incidentType") or "").strip()
        if not incident_type:
            errors.append("incident markers require incidentType")
        clean["incidentType"] = incident_type
        when = attributes.get("incidentDateTime")
        if when:
            try:
                clean["incidentDateTime"] = to_iso(from_iso(str(when)))
            except ValueError:
                errors.append(f"Invalid incidentDateTime: {when!r}")
    return clean, errors
