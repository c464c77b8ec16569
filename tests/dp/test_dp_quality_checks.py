"""DP quality-check tests."""

from __future__ import annotations

import numpy as np

from decision_engine.dp.quality_checks import run_quality_checks
from decision_engine.dp.value_iteration import ValueIterationConfig, solve_value_iteration


def _solved(process):
    result = solve_value_iteration(
        process,
        ValueIterationConfig(gamma=process.gamma, epsilon=1e-10, max_iters=500),
    )
    return result


def _run(process, result, **overrides):
    kwargs = {
        "process": process,
        "values": result.values,
        "policy": result.policy,
        "q_values": result.q_values,
        "gamma": process.gamma,
        "converged": result.converged,
    }
    kwargs.update(overrides)
    return run_quality_checks(**kwargs)


def test_solved_process_passes_hard_checks(small_process) -> None:
    result = _solved(small_process)
    report = _run(small_process, result)

    assert report.hard_failures == ()
    assert report.passed is True
    payload = report.to_dict()
    assert {check["name"] for check in payload["hard_checks"]} == {
        "parameter_domains",
        "policy_action_range",
        "terminal_invariants",
        "transition_probabilities",
        "q_values_coverage",
        "bellman_residual",
    }


def test_hard_checks_fail_on_invalid_gamma(small_process) -> None:
    result = _solved(small_process)
    report = _run(small_process, result, gamma=1.2)

    assert report.passed is False
    assert any(check.name == "parameter_domains" for check in report.hard_failures)


def test_hard_checks_fail_on_non_zero_terminal_value(small_process) -> None:
    result = _solved(small_process)
    values = np.array(result.values)
    values[8] = 0.5

    report = _run(small_process, result, values=values)
    names = {check.name for check in report.hard_failures}
    assert "terminal_invariants" in names
    assert "bellman_residual" in names


def test_hard_checks_fail_on_out_of_range_policy(small_process) -> None:
    result = _solved(small_process)
    policy = np.array(result.policy)
    policy[0] = 7

    report = _run(small_process, result, policy=policy)
    assert [check.name for check in report.hard_failures] == ["policy_action_range"]


def test_bellman_residual_skipped_for_unconverged_solves(small_process) -> None:
    result = solve_value_iteration(
        small_process,
        ValueIterationConfig(gamma=small_process.gamma, epsilon=1e-10, max_iters=2),
    )
    report = _run(small_process, result)

    assert report.hard_failures == ()
    assert "solver_convergence" in {check.name for check in report.conceptual_warnings}


def test_conceptual_warnings_do_not_fail_by_default(grid_process) -> None:
    result = _solved(grid_process)
    collapsed_policy = np.zeros(grid_process.n_states, dtype=np.int64)

    report = _run(grid_process, result, policy=collapsed_policy)
    warning_names = {check.name for check in report.conceptual_warnings}

    assert report.hard_failures == ()
    assert "policy_collapse" in warning_names
    # Fixture weights sum to 1.5.
    assert "reward_weight_normalization" in warning_names
    assert report.passed is True


def test_strict_mode_escalates_conceptual_warnings_to_failure(grid_process) -> None:
    result = _solved(grid_process)
    report = _run(grid_process, result, strict_conceptual=True)

    assert len(report.conceptual_warnings) >= 1
    assert report.passed is False


def test_policy_improvement_history_must_not_decrease(grid_process) -> None:
    result = _solved(grid_process)

    flat = _run(grid_process, result, value_history=[1.0, 2.0, 2.0])
    dropped = _run(grid_process, result, value_history=[1.0, 2.0, 1.5])

    assert "policy_improvement_monotone" not in {c.name for c in flat.conceptual_warnings}
    assert "policy_improvement_monotone" in {c.name for c in dropped.conceptual_warnings}
