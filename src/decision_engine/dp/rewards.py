"""Reward model for feature-grid decision processes."""

from __future__ import annotations

from collections.abc import Mapping

import numpy as np

from decision_engine.core.errors import InvalidAction, InvalidFeatureVector
from decision_engine.core.params import TerminalBonus
from decision_engine.core.types import ActionId
from decision_engine.dp.discretization import TerminalPredicate, compare


class RewardFunction:
    """Pure reward of a ``(state, action, next_state)`` transition.

    reward = sum_k w_k * (next[k] - state[k])
             - cost(action)
             - sum_j e_j * max(0, next[j] - state[j])
             + terminal_bonus(next)

    ``weights`` should sum to the caller's chosen normalization; this is not
    enforced. The terminal bonus is the sum of the configured bonuses whose
    thresholds ``next`` meets, and is paid only when ``next`` is terminal.
    """

    def __init__(
        self,
        features: tuple[str, ...],
        action_costs: tuple[float, ...],
        *,
        weights: Mapping[str, float] | None = None,
        error_penalties: Mapping[str, float] | None = None,
        terminal: TerminalPredicate | None = None,
        terminal_bonuses: tuple[TerminalBonus, ...] = (),
    ) -> None:
        self.features = tuple(features)
        self.action_costs = tuple(float(cost) for cost in action_costs)
        self.terminal = terminal
        self.terminal_bonuses = tuple(terminal_bonuses)
        self._weights = self._dense(weights or {}, name="weights")
        self._error_penalties = self._dense(error_penalties or {}, name="error_penalties")
        self._bonus_index = tuple(
            (self.features.index(bonus.feature), bonus) for bonus in self.terminal_bonuses
        )

    @property
    def weight_total(self) -> float:
        return float(self._weights.sum())

    def __call__(self, state: np.ndarray, action: ActionId, next_state: np.ndarray) -> float:
        if not (0 <= action < len(self.action_costs)):
            raise InvalidAction(
                f"Invalid action {action}. Expected in [0, {len(self.action_costs) - 1}]."
            )
        delta = next_state - state
        reward = float(np.dot(self._weights, delta))
        reward -= self.action_costs[action]
        reward -= float(np.dot(self._error_penalties, np.maximum(delta, 0.0)))
        reward += self.terminal_bonus(next_state)
        return reward

    def terminal_bonus(self, state: np.ndarray) -> float:
        if self.terminal is None or not self.terminal(state):
            return 0.0
        return float(
            sum(
                bonus.bonus
                for idx, bonus in self._bonus_index
                if compare(float(state[idx]), bonus.op, bonus.value)
            )
        )

    def _dense(self, mapping: Mapping[str, float], *, name: str) -> np.ndarray:
        unknown = sorted(set(mapping) - set(self.features))
        if unknown:
            raise InvalidFeatureVector(f"{name} reference unknown feature(s) {unknown}.")
        dense = np.zeros(len(self.features), dtype=np.float64)
        for feature, weight in mapping.items():
            dense[self.features.index(feature)] = float(weight)
        return dense
