"""Durable storage for markers, the vote ledger, and the news feed."""

from tentmap.persistence.store import (
    CommitFailure,
    MarkerClosed,
    MarkerStore,
    ReadFailure,
    StoreError,
    TallyBatch,
)

__all__ = ["CommitFailure", "MarkerClosed", "MarkerStore", "ReadFailure", "StoreError", "TallyBatch"]
