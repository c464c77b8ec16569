"""Shared value types used across DP and rollout modules."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Union


ActionId = int
StateId = int

# Sentinel returned by exact state lookups that miss the grid.
NOT_FOUND: StateId = -1

FeatureInput = Union[Mapping[str, float], Sequence[float]]


class SolverStatus(str, Enum):
    """Lifecycle of one solve."""

    UNINITIALIZED = "uninitialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ActionDecision:
    """Action recommended for one observed feature vector.

    Attributes:
        action_id: Index into the configured action set.
        action_name: Configured name of the action.
        state_id: Grid state the observation resolved to.
        approximated: True when the observation was off-grid and the
            nearest grid state was used instead.
        expected_value: Q(state, action) under the published solution.
        converged: Whether the solve behind this decision converged.
    """

    action_id: ActionId
    action_name: str
    state_id: StateId
    approximated: bool
    expected_value: float
    converged: bool
