"""Policy-iteration solver for tabular DP."""

from __future__ import annotations

import logging

import numpy as np

from decision_engine.core.types import SolverStatus
from decision_engine.dp.mdp import DecisionProcess
from decision_engine.dp.value_iteration import (
    CancelCheck,
    SolverResult,
    ValueIterationConfig,
    build_kernel_table,
    evaluate_with_table,
    finalize_result,
    greedy_policy,
    is_cancelled,
    log_outcome,
    q_table,
    validate_policy,
)

logger = logging.getLogger(__name__)

# A state keeps its current action while that action is within this margin
# of the best Q value; this stops improvement from cycling between ties.
_STABILITY_TOL = 1e-9


def solve_policy_iteration(
    process: DecisionProcess,
    config: ValueIterationConfig,
    *,
    initial_policy: np.ndarray | None = None,
    cancel: CancelCheck = None,
) -> SolverResult:
    """Alternate full policy evaluation and greedy improvement.

    Each outer iteration evaluates the current policy to ``epsilon`` (or
    ``eval_max_iters`` sweeps), then switches every live state to its greedy
    action. The total expected value of each evaluated policy is recorded in
    ``value_history``; with exact evaluation it never decreases.
    """
    config.validate()
    table = build_kernel_table(process)
    terminal_mask = process.terminal_mask
    live = ~terminal_mask

    if initial_policy is None:
        policy = np.zeros(process.n_states, dtype=np.int64)
    else:
        policy = validate_policy(
            initial_policy,
            n_states=process.n_states,
            n_actions=process.n_actions,
        )

    values = np.zeros(process.n_states, dtype=np.float64)
    rows = np.arange(process.n_states)
    value_history: list[float] = []
    eval_iterations: list[int] = []
    max_delta_history: list[float] = []
    status = SolverStatus.ITERATING
    iterations = 0

    for iteration in range(1, config.max_iters + 1):
        if is_cancelled(cancel):
            status = SolverStatus.CANCELLED
            break

        evaluation = evaluate_with_table(
            table=table,
            policy=policy,
            terminal_mask=terminal_mask,
            config=config,
            initial_values=values,
        )
        max_delta_history.append(float(np.max(np.abs(evaluation.values - values))))
        values = evaluation.values
        eval_iterations.append(evaluation.iterations)
        value_history.append(float(values[live].sum()))
        iterations = iteration

        q_values = q_table(table, values, config.gamma, terminal_mask)
        improved = greedy_policy(q_values)
        best = q_values.max(axis=1)
        keeps = q_values[rows, policy] >= best - _STABILITY_TOL
        changed = live & ~keeps

        logger.debug(
            "Policy iteration %d: %d state(s) changed, eval sweeps=%d",
            iteration,
            int(changed.sum()),
            evaluation.iterations,
        )
        if not changed.any():
            status = SolverStatus.CONVERGED
            break
        policy = np.where(changed, improved, policy)
    else:
        status = SolverStatus.MAX_ITERATIONS_REACHED

    result = finalize_result(
        table=table,
        values=values,
        terminal_mask=terminal_mask,
        gamma=config.gamma,
        iterations=iterations,
        status=status,
        max_delta_history=tuple(max_delta_history),
        method="policy_iteration",
        value_history=tuple(value_history),
        eval_iterations=tuple(eval_iterations),
    )
    log_outcome(result)
    return result
