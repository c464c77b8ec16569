"""Sparse tabular transition model built from declarative effect rules."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging
import math

import numpy as np

from decision_engine.core.errors import InvalidAction, InvalidFeatureVector
from decision_engine.core.params import EffectRule
from decision_engine.core.types import ActionId, StateId
from decision_engine.dp.discretization import StateSpace, compare

logger = logging.getLogger(__name__)

# Tolerance on the total probability mass of one distribution.
PROBABILITY_ATOL = 1e-6


@dataclass(frozen=True)
class TransitionBranch:
    """One probabilistic branch in a transition distribution."""

    next_state: StateId
    probability: float


class TransitionModel:
    """Sparse map ``(state_id, action_id) -> branches``.

    Pairs without registered branches behave as a guaranteed self-loop.
    """

    def __init__(self, space: StateSpace, action_names: tuple[str, ...]) -> None:
        if not action_names:
            raise ValueError("At least one action is required.")
        self.space = space
        self.action_names = tuple(action_names)
        self._branches: dict[tuple[StateId, ActionId], tuple[TransitionBranch, ...]] = {}

    @property
    def n_actions(self) -> int:
        return len(self.action_names)

    def __len__(self) -> int:
        return len(self._branches)

    def pairs(self) -> Iterable[tuple[StateId, ActionId]]:
        """Registered (state, action) pairs in insertion order."""
        return self._branches.keys()

    def action_id(self, action: str | ActionId) -> ActionId:
        """Resolve an action name or id to a validated id."""
        if isinstance(action, str):
            try:
                return self.action_names.index(action)
            except ValueError as exc:
                raise InvalidAction(
                    f"Unknown action {action!r}; expected one of {self.action_names}."
                ) from exc
        self.validate_action(action)
        return int(action)

    def validate_action(self, action: ActionId) -> None:
        try:
            index = int(action)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidAction(f"Action id must be an integer, got {action!r}.") from exc
        if isinstance(action, bool) or index != action or not (0 <= index < self.n_actions):
            raise InvalidAction(
                f"Invalid action {action!r}. Expected an integer in [0, {self.n_actions - 1}]."
            )

    def register(
        self,
        state: StateId,
        action: ActionId,
        branches: Iterable[tuple[StateId, float]],
    ) -> None:
        """Register an explicit distribution for one state-action pair."""
        self.validate_action(action)
        self._check_state(state)
        merged: dict[StateId, float] = {}
        for next_state, probability in branches:
            self._check_state(next_state)
            probability = float(probability)
            if not math.isfinite(probability):
                raise ValueError(
                    f"Non-finite probability {probability} at state={state}, action={action}."
                )
            if probability < 0.0:
                raise ValueError(
                    f"Negative probability {probability} at state={state}, action={action}."
                )
            if probability == 0.0:
                continue
            merged[next_state] = merged.get(next_state, 0.0) + probability

        total = sum(merged.values())
        if abs(total - 1.0) > PROBABILITY_ATOL:
            raise ValueError(
                f"Probability mass={total:.12f} at state={state}, action={action}; "
                "expected 1.0."
            )
        self._branches[(state, int(action))] = tuple(
            TransitionBranch(next_state=next_state, probability=probability)
            for next_state, probability in merged.items()
        )

    def distribution(self, state: StateId, action: ActionId) -> tuple[TransitionBranch, ...]:
        """Return branches for a pair, defaulting to a self-loop."""
        self.validate_action(action)
        self._check_state(state)
        branches = self._branches.get((state, int(action)))
        if branches is None:
            return (TransitionBranch(next_state=state, probability=1.0),)
        return branches

    def has_transitions(self, state: StateId, action: ActionId) -> bool:
        return (state, int(action)) in self._branches

    def _check_state(self, state: StateId) -> None:
        if not (0 <= state < self.space.n_states):
            raise ValueError(
                f"Invalid state id {state}; expected in [0, {self.space.n_states})."
            )


def build_transition_model(
    space: StateSpace,
    action_names: tuple[str, ...],
    rules: Iterable[EffectRule],
    *,
    p_success: float = 0.9,
    p_fail: float = 0.1,
) -> TransitionModel:
    """Build the two-outcome model from effect rules.

    For every state, the rule's deltas are added, clamped to [0, 1] and
    snapped to the grid. The effect lands with ``p_success`` when all
    prerequisites hold and ``p_fail`` otherwise; the remaining mass stays on
    the source state. Actions without a rule are left unregistered.
    """
    for name, value in (("p_success", p_success), ("p_fail", p_fail)):
        if not (0.0 <= value <= 1.0):
            raise ValueError(f"{name} must be in [0, 1].")

    model = TransitionModel(space=space, action_names=action_names)
    compiled = _compile_rules(space=space, model=model, rules=rules)

    for action, deltas, prerequisites in compiled:
        for state in range(space.n_states):
            current = space.grid[state]
            ideal = space.snap(current + deltas)
            met = all(
                compare(float(current[idx]), ">=", minimum) for idx, minimum in prerequisites
            )
            probability = p_success if met else p_fail
            model.register(
                state,
                action,
                ((ideal, probability), (state, 1.0 - probability)),
            )

    logger.debug(
        "Built transition model: %d rules, %d registered pairs",
        len(compiled),
        len(model),
    )
    return model


def _compile_rules(
    *,
    space: StateSpace,
    model: TransitionModel,
    rules: Iterable[EffectRule],
) -> list[tuple[ActionId, np.ndarray, tuple[tuple[int, float], ...]]]:
    compiled: list[tuple[ActionId, np.ndarray, tuple[tuple[int, float], ...]]] = []
    seen: set[ActionId] = set()
    for rule in rules:
        action = model.action_id(rule.action)
        if action in seen:
            raise ValueError(f"Duplicate effect rule for action {rule.action!r}.")
        seen.add(action)

        unknown = sorted(
            (set(rule.effects) | set(rule.prerequisites)) - set(space.features)
        )
        if unknown:
            raise InvalidFeatureVector(
                f"Rule for {rule.action!r} references unknown feature(s) {unknown}."
            )
        deltas = np.zeros(space.dimensions, dtype=np.float64)
        for feature, delta in rule.effects.items():
            deltas[space.features.index(feature)] = float(delta)
        prerequisites = tuple(
            (space.features.index(feature), float(minimum))
            for feature, minimum in rule.prerequisites.items()
        )
        compiled.append((action, deltas, prerequisites))
    return compiled
