"""Status transition engine: the daily vote outcome rules."""

from tentmap.engine.transition import (
    InvalidStateError,
    StatusTransitionEngine,
    TransitionOutcome,
    transition,
)

__all__ = [
    "InvalidStateError",
    "StatusTransitionEngine",
    "TransitionOutcome",
    "transition",
]
