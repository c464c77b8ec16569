"""Policy extraction and reporting tests."""

from __future__ import annotations

import numpy as np
import pytest

from decision_engine.dp.discretization import TerminalPredicate, build_state_space
from decision_engine.dp.mdp import assemble_process
from decision_engine.dp.policy import (
    build_evaluation_summary,
    extract_greedy_policy,
    policy_entropy,
    policy_rows,
    summarize_policy,
)
from decision_engine.dp.rewards import RewardFunction
from decision_engine.dp.transitions import TransitionModel
from decision_engine.dp.value_iteration import ValueIterationConfig, solve_value_iteration


def _solved(process):
    return solve_value_iteration(
        process,
        ValueIterationConfig(gamma=process.gamma, epsilon=1e-10, max_iters=500),
    )


def test_greedy_extraction_matches_solver_policy(grid_process) -> None:
    result = _solved(grid_process)
    policy, q_values = extract_greedy_policy(grid_process, result.values, grid_process.gamma)

    assert np.array_equal(policy, result.policy)
    assert np.allclose(q_values, result.q_values, atol=1e-12)


def test_greedy_extraction_breaks_ties_by_lowest_action() -> None:
    space = build_state_space(("x",), 3)
    model = TransitionModel(space, ("wait", "idle", "pause"))
    terminal = TerminalPredicate(features=space.features, groups=())
    reward = RewardFunction(features=space.features, action_costs=(0.1, 0.1, 0.1))
    process = assemble_process(space=space, model=model, reward=reward, terminal=terminal)

    policy, q_values = extract_greedy_policy(process, np.zeros(3), 0.9)
    assert policy.tolist() == [0, 0, 0]
    assert np.allclose(q_values, -0.1)


def test_policy_rows_and_summary(grid_process) -> None:
    result = _solved(grid_process)
    rows = policy_rows(grid_process, result.policy, result.values)

    assert len(rows) == 9
    assert rows[5]["state_key"] == "0.500000|1.000000"
    assert rows[5]["a"] == 0.5
    assert rows[8]["is_terminal"] is True
    assert rows[6]["action_name"] == "advance_b"

    summary = summarize_policy(rows)
    assert summary["n_live_states"] == 8
    assert summary["dominant_action_share"] == pytest.approx(0.75)
    assert summary["mean_value_by_action"]["advance_b"] == pytest.approx((0.995 + 1.05) / 2)


def test_evaluation_summary_ranks_live_states(grid_process) -> None:
    result = _solved(grid_process)
    summary = build_evaluation_summary(policy_rows(grid_process, result.policy, result.values))

    assert summary["value_summary"]["max"] == pytest.approx(1.66)
    assert summary["top_states_by_value"][0]["state_id"] == 2
    assert summary["bottom_states_by_value"][0]["state_id"] == 6
    assert all(not row["is_terminal"] for row in summary["top_states_by_value"])


def test_policy_entropy() -> None:
    assert policy_entropy([]) == 0.0
    assert policy_entropy([5]) == 0.0
    assert policy_entropy([2, 2]) == pytest.approx(1.0)
    assert policy_entropy([1, 1, 1, 1]) == pytest.approx(2.0)
