"""Continuous-to-discrete grid utilities for DP state handling."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from itertools import product
import logging

import numpy as np

from decision_engine.core.errors import InvalidFeatureVector, StateSpaceTooLarge
from decision_engine.core.params import DEFAULT_MAX_STATES, FeatureThreshold
from decision_engine.core.types import NOT_FOUND, FeatureInput, StateId

logger = logging.getLogger(__name__)

# Decimal places used to build canonical state keys.
GRID_KEY_DECIMALS = 6

_THRESHOLD_TOL = 1e-9


@dataclass(frozen=True, eq=False)
class StateSpace:
    """Immutable arena of grid states indexed by integer id.

    ``grid`` holds one row per state, in lexicographic order of per-dimension
    grid indices, so state ids are stable for a given (features, resolution).
    """

    features: tuple[str, ...]
    resolution: int
    grid: np.ndarray
    key_to_id: dict[str, StateId] = field(repr=False)

    @property
    def dimensions(self) -> int:
        return len(self.features)

    @property
    def n_states(self) -> int:
        return int(self.grid.shape[0])

    def features_of(self, state_id: StateId) -> np.ndarray:
        """Return a copy of the feature vector for a state."""
        self._check_id(state_id)
        return self.grid[state_id].copy()

    def as_mapping(self, state_id: StateId) -> dict[str, float]:
        self._check_id(state_id)
        return {name: float(value) for name, value in zip(self.features, self.grid[state_id])}

    def to_vector(self, vector: FeatureInput) -> np.ndarray:
        """Normalize a mapping or sequence input into a feature-ordered array."""
        if isinstance(vector, Mapping):
            missing = [name for name in self.features if name not in vector]
            unknown = [name for name in vector if name not in self.features]
            if missing or unknown:
                raise InvalidFeatureVector(
                    f"Feature names mismatch: missing={missing}, unknown={unknown}."
                )
            values = [vector[name] for name in self.features]
        else:
            try:
                values = list(vector)
            except TypeError as exc:
                raise InvalidFeatureVector(
                    f"Expected a mapping or sequence of {self.dimensions} features, "
                    f"got {type(vector).__name__}."
                ) from exc
            if len(values) != self.dimensions:
                raise InvalidFeatureVector(
                    f"Expected {self.dimensions} features, got {len(values)}."
                )
        try:
            array = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise InvalidFeatureVector("Feature values must be numeric.") from exc
        if not np.all(np.isfinite(array)):
            raise InvalidFeatureVector(f"Feature values must be finite, got {values}.")
        return array

    def lookup(self, vector: FeatureInput) -> StateId:
        """Exact grid lookup; returns ``NOT_FOUND`` for off-grid vectors."""
        array = self.to_vector(vector)
        return self.key_to_id.get(state_key(array), NOT_FOUND)

    def nearest(self, vector: FeatureInput) -> StateId:
        """Return the Euclidean-nearest grid state.

        On a regular grid the nearest point is obtained per dimension by
        clamping to [0, 1] and rounding to the closest grid index.
        """
        return self._index_from_array(self.to_vector(vector))

    def snap(self, array: np.ndarray) -> StateId:
        """Clamp and snap an already-validated array onto the grid."""
        return self._index_from_array(array)

    def _index_from_array(self, array: np.ndarray) -> StateId:
        steps = self.resolution - 1
        indices = np.rint(np.clip(array, 0.0, 1.0) * steps).astype(np.int64)
        state_id = 0
        for idx in indices:
            state_id = state_id * self.resolution + int(idx)
        return state_id

    def _check_id(self, state_id: StateId) -> None:
        if not (0 <= state_id < self.n_states):
            raise ValueError(f"Invalid state id {state_id}; expected in [0, {self.n_states}).")


def build_state_space(
    features: tuple[str, ...],
    resolution: int,
    *,
    max_states: int = DEFAULT_MAX_STATES,
) -> StateSpace:
    """Enumerate every grid state for ``features`` at ``resolution``."""
    if not features:
        raise ValueError("At least one feature is required.")
    if len(set(features)) != len(features):
        raise ValueError(f"Feature names must be unique: {features}.")
    if resolution < 2:
        raise ValueError("resolution must be at least 2.")

    n_states = resolution ** len(features)
    if n_states > max_states:
        raise StateSpaceTooLarge(n_states=n_states, max_states=max_states)

    values = grid_values(resolution)
    grid = np.empty((n_states, len(features)), dtype=np.float64)
    key_to_id: dict[str, StateId] = {}
    for state_id, indices in enumerate(product(range(resolution), repeat=len(features))):
        grid[state_id] = [values[idx] for idx in indices]
        key_to_id[state_key(grid[state_id])] = state_id
    grid.setflags(write=False)

    logger.debug(
        "Built state space: %d features x %d grid points = %d states",
        len(features),
        resolution,
        n_states,
    )
    return StateSpace(
        features=tuple(features),
        resolution=resolution,
        grid=grid,
        key_to_id=key_to_id,
    )


def grid_values(resolution: int) -> tuple[float, ...]:
    """Return the equally spaced per-dimension grid values in [0, 1]."""
    steps = resolution - 1
    return tuple(idx / steps for idx in range(resolution))


def state_key(array: np.ndarray) -> str:
    """Canonical string key of a feature vector rounded to grid precision."""
    # Adding 0.0 folds negative zero into zero before formatting.
    return "|".join(
        f"{round(float(value), GRID_KEY_DECIMALS) + 0.0:.{GRID_KEY_DECIMALS}f}"
        for value in array
    )


def threshold_holds(
    threshold: FeatureThreshold,
    array: np.ndarray,
    features: tuple[str, ...],
) -> bool:
    """Evaluate one feature threshold with a small float tolerance."""
    value = float(array[features.index(threshold.feature)])
    return compare(value, threshold.op, threshold.value)


def compare(value: float, op: str, target: float) -> bool:
    if op == ">=":
        return value >= target - _THRESHOLD_TOL
    if op == "<=":
        return value <= target + _THRESHOLD_TOL
    if op == ">":
        return value > target + _THRESHOLD_TOL
    if op == "<":
        return value < target - _THRESHOLD_TOL
    raise ValueError(f"Unsupported comparator {op!r}.")


@dataclass(frozen=True)
class TerminalPredicate:
    """Any-of groups of all-of feature thresholds."""

    features: tuple[str, ...]
    groups: tuple[tuple[FeatureThreshold, ...], ...]

    def __call__(self, array: np.ndarray) -> bool:
        return any(
            all(threshold_holds(threshold, array, self.features) for threshold in group)
            for group in self.groups
        )

    def mask(self, space: StateSpace) -> np.ndarray:
        """Boolean terminal mask over all states of ``space``."""
        return np.fromiter(
            (self(space.grid[idx]) for idx in range(space.n_states)),
            dtype=bool,
            count=space.n_states,
        )
