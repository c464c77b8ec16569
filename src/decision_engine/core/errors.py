"""Exception hierarchy raised by the decision engine."""

from __future__ import annotations


class DecisionEngineError(Exception):
    """Base class for all decision-engine failures."""


class StateSpaceTooLarge(DecisionEngineError, ValueError):
    """Grid state count exceeds the configured ceiling."""

    def __init__(self, n_states: int, max_states: int) -> None:
        super().__init__(
            f"State space of {n_states} states exceeds max_states={max_states}."
        )
        self.n_states = n_states
        self.max_states = max_states


class InvalidAction(DecisionEngineError, ValueError):
    """Action id or name outside the configured action set."""


class InvalidFeatureVector(DecisionEngineError, ValueError):
    """Feature vector with wrong dimensionality, names or values."""


class IncompatiblePolicy(DecisionEngineError, ValueError):
    """Policy snapshot solved for a different configuration."""
