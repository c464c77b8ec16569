"""Reward function tests."""

from __future__ import annotations

import numpy as np
import pytest

from decision_engine.core.errors import InvalidAction, InvalidFeatureVector
from decision_engine.dp.rewards import RewardFunction


def test_weighted_progress_minus_cost(grid_process) -> None:
    assert grid_process.reward_of(0, 0, 3) == pytest.approx(0.4)
    assert grid_process.reward_of(0, 1, 1) == pytest.approx(0.05)
    assert grid_process.reward_of(6, 0, 6) == pytest.approx(-0.1)


def test_terminal_bonus_only_on_terminal_next_state(grid_process) -> None:
    # (1.0, 0.5) -> (1.0, 1.0) enters the terminal state.
    assert grid_process.reward_of(7, 1, 8) == pytest.approx(1.05)
    # (0.5, 1.0) -> (1.0, 1.0) also terminal; a >= 1 bonus applies.
    assert grid_process.reward_of(5, 0, 8) == pytest.approx(1.4)
    # (0.5, 0.0) -> (1.0, 0.0) meets a >= 1 but is not terminal.
    assert grid_process.reward_of(3, 0, 6) == pytest.approx(0.4)


def test_error_penalty_applies_to_increases_only() -> None:
    reward = RewardFunction(
        features=("quality", "errors"),
        action_costs=(0.0,),
        weights={"quality": 1.0},
        error_penalties={"errors": 2.0},
    )
    worse = reward(np.array([0.0, 0.0]), 0, np.array([0.5, 0.25]))
    better = reward(np.array([0.0, 0.5]), 0, np.array([0.5, 0.25]))

    assert worse == pytest.approx(0.0)
    assert better == pytest.approx(0.5)
    assert reward.weight_total == pytest.approx(1.0)


def test_reward_rejects_unknown_action_and_feature() -> None:
    reward = RewardFunction(features=("x",), action_costs=(0.1,))
    with pytest.raises(InvalidAction):
        reward(np.array([0.0]), 1, np.array([0.0]))
    with pytest.raises(InvalidFeatureVector):
        RewardFunction(features=("x",), action_costs=(0.1,), weights={"y": 1.0})
