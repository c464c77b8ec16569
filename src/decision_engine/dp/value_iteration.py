"""Value-iteration solver and shared Bellman machinery for tabular DP."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import math
import threading
from typing import Union

import numpy as np

from decision_engine.core.errors import InvalidAction
from decision_engine.core.types import ActionId, SolverStatus, StateId
from decision_engine.dp.mdp import DecisionProcess

logger = logging.getLogger(__name__)

_TIE_TOL = 1e-12

CancelCheck = Union[Callable[[], bool], threading.Event, None]


@dataclass(frozen=True)
class ValueIterationConfig:
    """Configuration for tabular value and policy iteration.

    ``max_iters`` caps value-iteration sweeps, or outer improvement steps
    for policy iteration; ``eval_max_iters`` caps the inner policy
    evaluation sweeps.
    """

    gamma: float
    epsilon: float
    max_iters: int
    eval_max_iters: int = 1000
    n_workers: int = 1
    show_progress: bool = False
    progress_desc: str = "Value Iteration"

    def validate(self) -> None:
        if not (0.0 <= self.gamma < 1.0):
            raise ValueError("gamma must be in [0, 1).")
        if self.epsilon <= 0.0:
            raise ValueError("epsilon must be positive.")
        if self.max_iters <= 0:
            raise ValueError("max_iters must be positive.")
        if self.eval_max_iters <= 0:
            raise ValueError("eval_max_iters must be positive.")
        if self.n_workers <= 0:
            raise ValueError("n_workers must be positive.")


@dataclass(frozen=True, eq=False)
class SolverResult:
    """Outputs from one solve; arrays are indexed by state id."""

    values: np.ndarray
    q_values: np.ndarray
    policy: np.ndarray
    iterations: int
    status: SolverStatus
    max_delta_history: tuple[float, ...]
    final_bellman_residual: float
    method: str = "value_iteration"
    value_history: tuple[float, ...] = ()
    eval_iterations: tuple[int, ...] = ()

    @property
    def converged(self) -> bool:
        return self.status is SolverStatus.CONVERGED

    @property
    def max_delta(self) -> float:
        if not self.max_delta_history:
            return math.inf
        return self.max_delta_history[-1]

    def diagnostics(self) -> dict[str, object]:
        """Compact convergence diagnostics for callers and reports."""
        return {
            "convergence": self.converged,
            "iterations": self.iterations,
            "maxDelta": self.max_delta,
            "status": self.status.value,
            "method": self.method,
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    """Fixed-policy value function and its convergence flag."""

    values: np.ndarray
    iterations: int
    converged: bool
    final_delta: float


@dataclass(frozen=True, eq=False)
class KernelTable:
    """Flattened sparse kernels for every (state, action) pair.

    Pair ``s * n_actions + a`` owns the slice
    ``offsets[pair]:offsets[pair + 1]`` of the flat branch arrays. Rewards
    are evaluated once per solve and live only as long as the table.
    """

    next_indices: np.ndarray
    probabilities: np.ndarray
    rewards: np.ndarray
    offsets: np.ndarray
    n_states: int
    n_actions: int


def build_kernel_table(process: DecisionProcess) -> KernelTable:
    """Expand the sparse model into flat arrays for vectorized backups."""
    n_states = process.n_states
    n_actions = process.n_actions
    next_indices: list[int] = []
    probabilities: list[float] = []
    rewards: list[float] = []
    offsets = np.empty(n_states * n_actions + 1, dtype=np.int64)

    pair = 0
    for state in range(n_states):
        for action in range(n_actions):
            offsets[pair] = len(next_indices)
            for branch in process.model.distribution(state, action):
                next_indices.append(branch.next_state)
                probabilities.append(branch.probability)
                rewards.append(process.reward_of(state, action, branch.next_state))
            pair += 1
    offsets[pair] = len(next_indices)

    return KernelTable(
        next_indices=np.asarray(next_indices, dtype=np.int64),
        probabilities=np.asarray(probabilities, dtype=np.float64),
        rewards=np.asarray(rewards, dtype=np.float64),
        offsets=offsets,
        n_states=n_states,
        n_actions=n_actions,
    )


def q_table(
    table: KernelTable,
    values: np.ndarray,
    gamma: float,
    terminal_mask: np.ndarray,
    *,
    lo: int = 0,
    hi: int | None = None,
) -> np.ndarray:
    """Compute Q rows for states ``[lo, hi)`` from a fixed value vector."""
    hi = table.n_states if hi is None else hi
    first = table.offsets[lo * table.n_actions]
    last = table.offsets[hi * table.n_actions]
    segment = slice(first, last)
    backups = table.probabilities[segment] * (
        table.rewards[segment] + gamma * values[table.next_indices[segment]]
    )
    starts = table.offsets[lo * table.n_actions : hi * table.n_actions] - first
    q_block = np.add.reduceat(backups, starts).reshape(hi - lo, table.n_actions)
    q_block[terminal_mask[lo:hi]] = 0.0
    return q_block


def greedy_policy(q_values: np.ndarray) -> np.ndarray:
    """Argmax per row; the lowest action id wins ties within tolerance."""
    best = q_values.max(axis=1, keepdims=True)
    candidates = q_values >= best - _TIE_TOL
    return np.argmax(candidates, axis=1).astype(np.int64)


def bellman_action_value(
    process: DecisionProcess,
    state: StateId,
    action: ActionId,
    values: np.ndarray,
    gamma: float,
) -> float:
    """Compute Q(s, a) from a fixed value function."""
    total = 0.0
    for branch in process.model.distribution(state, action):
        reward = process.reward_of(state, action, branch.next_state)
        total += branch.probability * (reward + gamma * float(values[branch.next_state]))
    return total


def bellman_backup(
    process: DecisionProcess,
    state: StateId,
    values: np.ndarray,
    gamma: float,
) -> tuple[float, int, np.ndarray]:
    """Compute Bellman-optimal value and argmax action at one state."""
    if process.is_terminal(state):
        return 0.0, 0, np.zeros(process.n_actions, dtype=np.float64)

    q_row = np.array(
        [
            bellman_action_value(process, state, action, values, gamma)
            for action in range(process.n_actions)
        ],
        dtype=np.float64,
    )
    best_action = int(greedy_policy(q_row[np.newaxis, :])[0])
    return float(q_row.max()), best_action, q_row


def solve_value_iteration(
    process: DecisionProcess,
    config: ValueIterationConfig,
    *,
    cancel: CancelCheck = None,
) -> SolverResult:
    """Compute optimal values/policy with double-buffered value iteration."""
    config.validate()
    table = build_kernel_table(process)
    terminal_mask = process.terminal_mask

    values_vec = np.zeros(process.n_states, dtype=np.float64)
    max_delta_history: list[float] = []
    status = SolverStatus.ITERATING
    iterations = 0

    progress, show_tqdm = _progress(config)
    with _sweeper(config) as sweep:
        for iteration in progress:
            if is_cancelled(cancel):
                status = SolverStatus.CANCELLED
                break

            q_block = sweep(table, values_vec, config.gamma, terminal_mask)
            next_values = np.where(terminal_mask, 0.0, q_block.max(axis=1))
            max_delta = float(np.max(np.abs(next_values - values_vec)))

            values_vec = next_values
            max_delta_history.append(max_delta)
            iterations = iteration

            if show_tqdm:
                progress.set_postfix({"delta": f"{max_delta:.3e}"}, refresh=False)

            if max_delta <= config.epsilon:
                status = SolverStatus.CONVERGED
                break
        else:
            status = SolverStatus.MAX_ITERATIONS_REACHED

    if show_tqdm:
        progress.close()

    result = finalize_result(
        table=table,
        values=values_vec,
        terminal_mask=terminal_mask,
        gamma=config.gamma,
        iterations=iterations,
        status=status,
        max_delta_history=tuple(max_delta_history),
        method="value_iteration",
    )
    log_outcome(result)
    return result


def evaluate_policy(
    process: DecisionProcess,
    policy: np.ndarray,
    config: ValueIterationConfig,
    *,
    initial_values: np.ndarray | None = None,
) -> PolicyEvaluation:
    """Compute V^pi for a fixed policy via iterative policy evaluation.

    Instead of max_a Q(s,a), each sweep backs up Q(s, pi(s)), giving the
    long-run value of always following the given policy. Hitting
    ``eval_max_iters`` is reported through ``converged`` rather than raised.
    """
    config.validate()
    policy_vec = validate_policy(policy, n_states=process.n_states, n_actions=process.n_actions)
    table = build_kernel_table(process)
    return evaluate_with_table(
        table=table,
        policy=policy_vec,
        terminal_mask=process.terminal_mask,
        config=config,
        initial_values=initial_values,
    )


def evaluate_with_table(
    *,
    table: KernelTable,
    policy: np.ndarray,
    terminal_mask: np.ndarray,
    config: ValueIterationConfig,
    initial_values: np.ndarray | None = None,
) -> PolicyEvaluation:
    """Policy evaluation against a prebuilt kernel table."""
    if initial_values is None:
        values_vec = np.zeros(table.n_states, dtype=np.float64)
    else:
        values_vec = np.where(terminal_mask, 0.0, np.asarray(initial_values, dtype=np.float64))
    rows = np.arange(table.n_states)

    converged = False
    final_delta = math.inf
    iterations = 0
    with _sweeper(config) as sweep:
        for iteration in range(1, config.eval_max_iters + 1):
            q_block = sweep(table, values_vec, config.gamma, terminal_mask)
            next_values = q_block[rows, policy]
            final_delta = float(np.max(np.abs(next_values - values_vec)))
            values_vec = next_values
            iterations = iteration
            if final_delta <= config.epsilon:
                converged = True
                break

    if not converged:
        logger.warning(
            "Policy evaluation stopped at eval_max_iters=%d (final_delta=%.3e)",
            config.eval_max_iters,
            final_delta,
        )
    return PolicyEvaluation(
        values=values_vec,
        iterations=iterations,
        converged=converged,
        final_delta=final_delta,
    )


def validate_policy(policy: np.ndarray, *, n_states: int, n_actions: int) -> np.ndarray:
    """Check policy length and action bounds; return an int64 copy."""
    policy_vec = np.asarray(policy, dtype=np.int64).copy()
    if policy_vec.shape != (n_states,):
        raise ValueError(
            f"Policy has shape {policy_vec.shape}; expected ({n_states},)."
        )
    invalid = np.flatnonzero((policy_vec < 0) | (policy_vec >= n_actions))
    if invalid.size:
        state = int(invalid[0])
        raise InvalidAction(
            f"Invalid action {int(policy_vec[state])} for state {state}; "
            f"expected action in [0, {n_actions - 1}]"
        )
    return policy_vec


def finalize_result(
    *,
    table: KernelTable,
    values: np.ndarray,
    terminal_mask: np.ndarray,
    gamma: float,
    iterations: int,
    status: SolverStatus,
    max_delta_history: tuple[float, ...],
    method: str,
    value_history: tuple[float, ...] = (),
    eval_iterations: tuple[int, ...] = (),
) -> SolverResult:
    q_values = q_table(table, values, gamma, terminal_mask)
    policy = greedy_policy(q_values)
    best = np.where(terminal_mask, 0.0, q_values.max(axis=1))
    final_bellman_residual = float(np.max(np.abs(values - best))) if values.size else 0.0

    for array in (values, q_values, policy):
        array.setflags(write=False)
    return SolverResult(
        values=values,
        q_values=q_values,
        policy=policy,
        iterations=iterations,
        status=status,
        max_delta_history=max_delta_history,
        final_bellman_residual=final_bellman_residual,
        method=method,
        value_history=value_history,
        eval_iterations=eval_iterations,
    )


def log_outcome(result: SolverResult) -> None:
    if result.converged:
        logger.info(
            "%s converged in %d iterations (residual=%.3e)",
            result.method,
            result.iterations,
            result.final_bellman_residual,
        )
    else:
        logger.warning(
            "%s stopped with status=%s after %d iterations (max_delta=%.3e)",
            result.method,
            result.status.value,
            result.iterations,
            result.max_delta,
        )


def is_cancelled(cancel: CancelCheck) -> bool:
    if cancel is None:
        return False
    if isinstance(cancel, threading.Event):
        return cancel.is_set()
    return bool(cancel())


def _progress(config: ValueIterationConfig):
    iterator = range(1, config.max_iters + 1)
    if not config.show_progress:
        return iterator, False
    # Import tqdm lazily to avoid notebook-side effects when progress is disabled.
    from tqdm.auto import tqdm

    progress = tqdm(
        iterator,
        desc=config.progress_desc,
        dynamic_ncols=True,
        leave=False,
    )
    return progress, True


class _sweeper:
    """Context manager yielding a full-sweep Q function.

    With ``n_workers > 1`` contiguous state blocks are backed up on a thread
    pool; every block reads the same previous value vector and the sweep
    returns only after all blocks finish, so the caller swaps buffers after
    a complete barrier.
    """

    def __init__(self, config: ValueIterationConfig) -> None:
        self._n_workers = config.n_workers
        self._pool: ThreadPoolExecutor | None = None

    def __enter__(self):
        if self._n_workers > 1:
            self._pool = ThreadPoolExecutor(max_workers=self._n_workers)
        return self._sweep

    def __exit__(self, *exc_info) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def _sweep(
        self,
        table: KernelTable,
        values: np.ndarray,
        gamma: float,
        terminal_mask: np.ndarray,
    ) -> np.ndarray:
        if self._pool is None or table.n_states < 2 * self._n_workers:
            return q_table(table, values, gamma, terminal_mask)

        bounds = np.linspace(0, table.n_states, self._n_workers + 1, dtype=np.int64)
        futures = [
            self._pool.submit(
                q_table,
                table,
                values,
                gamma,
                terminal_mask,
                lo=int(lo),
                hi=int(hi),
            )
            for lo, hi in zip(bounds[:-1], bounds[1:])
            if hi > lo
        ]
        return np.vstack([future.result() for future in futures])
