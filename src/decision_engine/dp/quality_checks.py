"""Quality checks for tabular DP outputs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import math

import numpy as np

from decision_engine.dp.mdp import DecisionProcess
from decision_engine.dp.transitions import PROBABILITY_ATOL
from decision_engine.dp.value_iteration import build_kernel_table, q_table


@dataclass(frozen=True)
class CheckResult:
    """One quality-check result."""

    name: str
    passed: bool
    details: str
    metric: float | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "passed": self.passed,
            "details": self.details,
        }
        if self.metric is not None:
            payload["metric"] = self.metric
        return payload


@dataclass(frozen=True)
class QualityReport:
    """Aggregated hard/conceptual checks."""

    hard_checks: tuple[CheckResult, ...]
    conceptual_checks: tuple[CheckResult, ...]
    strict_conceptual: bool

    @property
    def hard_failures(self) -> tuple[CheckResult, ...]:
        return tuple(check for check in self.hard_checks if not check.passed)

    @property
    def conceptual_warnings(self) -> tuple[CheckResult, ...]:
        return tuple(check for check in self.conceptual_checks if not check.passed)

    @property
    def passed(self) -> bool:
        if self.hard_failures:
            return False
        if self.strict_conceptual and self.conceptual_warnings:
            return False
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "hard_checks": [check.to_dict() for check in self.hard_checks],
            "conceptual_checks": [check.to_dict() for check in self.conceptual_checks],
            "hard_failures": [check.to_dict() for check in self.hard_failures],
            "conceptual_warnings": [
                check.to_dict() for check in self.conceptual_warnings
            ],
            "strict_conceptual": self.strict_conceptual,
            "passed": self.passed,
        }


def run_quality_checks(
    *,
    process: DecisionProcess,
    values: np.ndarray,
    policy: np.ndarray,
    q_values: np.ndarray,
    gamma: float,
    bellman_atol: float = 1e-6,
    converged: bool = True,
    value_history: Sequence[float] = (),
    strict_conceptual: bool = False,
) -> QualityReport:
    """Run hard + conceptual checks against DP artifacts.

    The Bellman residual is only a hard requirement for converged solves;
    a solve stopped early is reported through the ``solver_convergence``
    conceptual check instead.
    """
    values = np.asarray(values, dtype=np.float64)
    policy = np.asarray(policy, dtype=np.int64)
    q_values = np.asarray(q_values, dtype=np.float64)

    hard_checks = (
        _check_parameter_domains(process=process, gamma=gamma),
        _check_policy_action_range(
            policy=policy,
            n_states=process.n_states,
            n_actions=process.n_actions,
        ),
        _check_terminal_invariants(process=process, values=values, q_values=q_values),
        _check_transition_probabilities(process=process),
        _check_q_values_coverage(
            q_values=q_values,
            n_states=process.n_states,
            n_actions=process.n_actions,
        ),
        _check_bellman_residual(
            process=process,
            values=values,
            gamma=gamma,
            bellman_atol=bellman_atol,
            converged=converged,
        ),
    )

    conceptual_checks = (
        _check_solver_convergence(converged=converged),
        _check_reward_weight_normalization(process=process),
        _check_policy_collapse(policy=policy, terminal_mask=process.terminal_mask),
        _check_policy_improvement_monotone(
            value_history=value_history,
            atol=bellman_atol * max(1, int((~process.terminal_mask).sum())),
        ),
    )

    return QualityReport(
        hard_checks=hard_checks,
        conceptual_checks=conceptual_checks,
        strict_conceptual=strict_conceptual,
    )


def _check_parameter_domains(process: DecisionProcess, gamma: float) -> CheckResult:
    checks: list[str] = []
    if not (0.0 <= gamma < 1.0):
        checks.append("gamma must be in [0, 1)")
    if process.n_states == 0:
        checks.append("state space is empty")
    if process.n_actions == 0:
        checks.append("at least one action required")
    for name, cost in zip(process.action_names, process.reward.action_costs):
        if not math.isfinite(cost):
            checks.append(f"action {name} has non-finite cost")
    passed = len(checks) == 0
    details = "parameter domains valid" if passed else "; ".join(checks)
    return CheckResult(name="parameter_domains", passed=passed, details=details)


def _check_policy_action_range(
    policy: np.ndarray, n_states: int, n_actions: int
) -> CheckResult:
    if policy.shape != (n_states,):
        return CheckResult(
            name="policy_action_range",
            passed=False,
            details=f"policy shape {policy.shape} (expected ({n_states},))",
        )
    invalid = np.flatnonzero((policy < 0) | (policy >= n_actions))
    if invalid.size:
        state = int(invalid[0])
        return CheckResult(
            name="policy_action_range",
            passed=False,
            details=(
                f"invalid action {int(policy[state])} for state {state} "
                f"(expected 0..{n_actions - 1})"
            ),
        )
    return CheckResult(
        name="policy_action_range",
        passed=True,
        details=f"all policy actions in [0, {n_actions - 1}]",
    )


def _check_terminal_invariants(
    *,
    process: DecisionProcess,
    values: np.ndarray,
    q_values: np.ndarray,
) -> CheckResult:
    mask = process.terminal_mask
    if values.shape != mask.shape:
        return CheckResult(
            name="terminal_invariants",
            passed=False,
            details=f"value shape {values.shape} does not match {mask.shape}",
        )
    nonzero = np.flatnonzero(mask & (values != 0.0))
    if nonzero.size:
        state = int(nonzero[0])
        return CheckResult(
            name="terminal_invariants",
            passed=False,
            details=f"terminal state {state} has value {float(values[state])!r}",
        )
    if q_values.shape[:1] == mask.shape and np.any(q_values[mask] != 0.0):
        return CheckResult(
            name="terminal_invariants",
            passed=False,
            details="terminal states carry non-zero q-values",
        )
    return CheckResult(
        name="terminal_invariants",
        passed=True,
        details=f"{int(mask.sum())} terminal state(s) pinned at zero value",
    )


def _check_transition_probabilities(process: DecisionProcess) -> CheckResult:
    model = process.model
    checked = 0
    for state, action in model.pairs():
        branches = model.distribution(state, action)
        if any(branch.probability < 0.0 for branch in branches):
            return CheckResult(
                name="transition_probabilities",
                passed=False,
                details=f"negative probability at state={state}, action={action}",
            )
        total = sum(branch.probability for branch in branches)
        if abs(total - 1.0) > PROBABILITY_ATOL:
            return CheckResult(
                name="transition_probabilities",
                passed=False,
                details=(
                    f"probability mass={total:.12f} at state={state}, action={action}"
                ),
                metric=total,
            )
        checked += 1
    return CheckResult(
        name="transition_probabilities",
        passed=True,
        details=f"validated {checked} state-action distributions",
    )


def _check_q_values_coverage(
    *,
    q_values: np.ndarray,
    n_states: int,
    n_actions: int,
) -> CheckResult:
    if q_values.shape != (n_states, n_actions):
        return CheckResult(
            name="q_values_coverage",
            passed=False,
            details=f"q-value shape {q_values.shape} (expected ({n_states}, {n_actions}))",
        )
    if not np.all(np.isfinite(q_values)):
        return CheckResult(
            name="q_values_coverage",
            passed=False,
            details="q-values contain non-finite entries",
        )
    return CheckResult(
        name="q_values_coverage",
        passed=True,
        details="q-values cover all states and actions",
    )


def _check_bellman_residual(
    *,
    process: DecisionProcess,
    values: np.ndarray,
    gamma: float,
    bellman_atol: float,
    converged: bool,
) -> CheckResult:
    if values.shape != (process.n_states,):
        return CheckResult(
            name="bellman_residual",
            passed=False,
            details=(
                f"value function has shape {values.shape}; "
                f"expected ({process.n_states},)"
            ),
        )
    if not converged:
        return CheckResult(
            name="bellman_residual",
            passed=True,
            details="solve did not converge; residual check skipped",
        )

    table = build_kernel_table(process)
    q_values = q_table(table, values, gamma, process.terminal_mask)
    best = np.where(process.terminal_mask, 0.0, q_values.max(axis=1))
    residual = float(np.max(np.abs(values - best))) if values.size else 0.0

    passed = residual <= bellman_atol
    details = (
        f"bellman residual {residual:.3e} <= atol {bellman_atol:.3e}"
        if passed
        else f"bellman residual {residual:.3e} exceeds atol {bellman_atol:.3e}"
    )
    return CheckResult(
        name="bellman_residual",
        passed=passed,
        details=details,
        metric=residual,
    )


def _check_solver_convergence(converged: bool) -> CheckResult:
    return CheckResult(
        name="solver_convergence",
        passed=converged,
        details="solver converged" if converged else "solver stopped before converging",
    )


def _check_reward_weight_normalization(process: DecisionProcess) -> CheckResult:
    total = process.reward.weight_total
    passed = abs(total - 1.0) <= 1e-6
    return CheckResult(
        name="reward_weight_normalization",
        passed=passed,
        details=f"reward weights sum to {total:.6f}",
        metric=total,
    )


def _check_policy_collapse(policy: np.ndarray, terminal_mask: np.ndarray) -> CheckResult:
    if policy.shape != terminal_mask.shape:
        return CheckResult(
            name="policy_collapse",
            passed=True,
            details="policy shape mismatch; collapse check skipped",
        )
    live_actions = policy[~terminal_mask]
    if live_actions.size == 0:
        return CheckResult(
            name="policy_collapse",
            passed=True,
            details="no live-state actions found",
        )

    _, counts = np.unique(live_actions, return_counts=True)
    dominant_share = float(counts.max() / live_actions.size)
    passed = dominant_share < 0.95
    details = f"dominant action share={dominant_share:.3f}"
    return CheckResult(
        name="policy_collapse",
        passed=passed,
        details=details,
        metric=dominant_share,
    )


def _check_policy_improvement_monotone(
    *,
    value_history: Sequence[float],
    atol: float,
) -> CheckResult:
    if len(value_history) < 2:
        return CheckResult(
            name="policy_improvement_monotone",
            passed=True,
            details="fewer than two evaluated policies; check skipped",
        )
    drops = [
        later - earlier
        for earlier, later in zip(value_history[:-1], value_history[1:])
        if later < earlier - atol
    ]
    worst = min(drops) if drops else 0.0
    passed = not drops
    details = (
        f"total value non-decreasing over {len(value_history)} improvement steps"
        if passed
        else f"{len(drops)} decrease(s) in total value (worst={worst:.3e})"
    )
    return CheckResult(
        name="policy_improvement_monotone",
        passed=passed,
        details=details,
        metric=worst,
    )
