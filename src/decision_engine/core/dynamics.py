"""Single sampled transition step shared by episode runners."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from decision_engine.core.types import ActionId, StateId

if TYPE_CHECKING:
    from decision_engine.dp.mdp import DecisionProcess


@dataclass(frozen=True)
class TransitionOutcome:
    """Single transition outcome emitted by a simulator step."""

    next_state: StateId
    reward: float
    terminated: bool
    info: dict[str, Any]


def step_discrete_state(
    process: "DecisionProcess",
    state: StateId,
    action: ActionId,
    *,
    rng: np.random.Generator | None = None,
    deterministic: bool = False,
) -> TransitionOutcome:
    """Apply one transition in the grid state space.

    Deterministic mode takes the most probable branch (lowest next-state id
    on ties); otherwise the branch is sampled from ``rng``.
    """
    branches = process.model.distribution(state, action)
    if deterministic:
        chosen = min(branches, key=lambda branch: (-branch.probability, branch.next_state))
    else:
        if rng is None:
            raise ValueError("rng is required for sampled transitions.")
        cumulative = np.cumsum([branch.probability for branch in branches])
        draw = rng.random() * cumulative[-1]
        index = int(np.searchsorted(cumulative, draw, side="right"))
        chosen = branches[min(index, len(branches) - 1)]

    next_state = chosen.next_state
    return TransitionOutcome(
        next_state=next_state,
        reward=process.reward_of(state, action, next_state),
        terminated=process.is_terminal(next_state),
        info={"probability": chosen.probability, "n_branches": len(branches)},
    )
