"""Dynamic Programming components for the decision engine."""

from decision_engine.dp.discretization import StateSpace, build_state_space
from decision_engine.dp.mdp import DecisionProcess, build_decision_process
from decision_engine.dp.policy_iteration import solve_policy_iteration
from decision_engine.dp.value_iteration import (
    SolverResult,
    ValueIterationConfig,
    solve_value_iteration,
)

__all__ = [
    "DecisionProcess",
    "SolverResult",
    "StateSpace",
    "ValueIterationConfig",
    "build_decision_process",
    "build_state_space",
    "solve_policy_iteration",
    "solve_value_iteration",
]
