"""Vote acceptance and aggregate counter reads."""

from tentmap.voting.acceptance import (
    DuplicateVoteError,
    MarkerNotFoundError,
    VoteAcceptor,
    VoteRejected,
    VotingClosedError,
)
from tentmap.voting.aggregator import VoteAggregator

__all__ = [
    "DuplicateVoteError",
    "MarkerNotFoundError",
    "VoteAcceptor",
    "VoteAggregator",
    "VoteRejected",
    "VotingClosedError",
]
