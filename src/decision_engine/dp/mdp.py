"""Assembled decision process: state space, dynamics, rewards, terminals."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
from typing import Any

import numpy as np

from decision_engine.core.params import EngineConfig, FeatureThreshold
from decision_engine.core.types import ActionId, StateId
from decision_engine.dp.discretization import (
    StateSpace,
    TerminalPredicate,
    build_state_space,
    threshold_holds,
)
from decision_engine.dp.rewards import RewardFunction
from decision_engine.dp.transitions import TransitionModel, build_transition_model


@dataclass(frozen=True, eq=False)
class DecisionProcess:
    """Read-only bundle consumed by solvers and episode runners."""

    space: StateSpace
    model: TransitionModel
    reward: RewardFunction
    terminal: TerminalPredicate
    terminal_mask: np.ndarray
    config_hash: str
    gamma: float = 0.95
    success_conditions: tuple[FeatureThreshold, ...] = ()

    @property
    def n_states(self) -> int:
        return self.space.n_states

    @property
    def n_actions(self) -> int:
        return self.model.n_actions

    @property
    def action_names(self) -> tuple[str, ...]:
        return self.model.action_names

    def is_terminal(self, state: StateId) -> bool:
        return bool(self.terminal_mask[state])

    def is_success(self, state: StateId) -> bool:
        """Terminal state that also meets the configured success thresholds."""
        if not self.is_terminal(state):
            return False
        vector = self.space.grid[state]
        return all(
            threshold_holds(threshold, vector, self.space.features)
            for threshold in self.success_conditions
        )

    def reward_of(self, state: StateId, action: ActionId, next_state: StateId) -> float:
        return self.reward(self.space.grid[state], action, self.space.grid[next_state])


def build_decision_process(config: EngineConfig) -> DecisionProcess:
    """Build every component from one validated configuration."""
    config.validate()
    space = build_state_space(
        config.features,
        config.resolution,
        max_states=config.max_states,
    )
    model = build_transition_model(
        space,
        config.action_names,
        config.rules,
        p_success=config.p_success,
        p_fail=config.p_fail,
    )
    terminal = TerminalPredicate(features=space.features, groups=config.terminal_conditions)
    reward = RewardFunction(
        features=space.features,
        action_costs=tuple(action.cost for action in config.actions),
        weights=config.reward_weights,
        error_penalties=config.error_penalties,
        terminal=terminal,
        terminal_bonuses=config.terminal_bonuses,
    )
    return assemble_process(
        space=space,
        model=model,
        reward=reward,
        terminal=terminal,
        gamma=config.gamma,
        success_conditions=config.success_conditions,
    )


def assemble_process(
    *,
    space: StateSpace,
    model: TransitionModel,
    reward: RewardFunction,
    terminal: TerminalPredicate,
    gamma: float = 0.95,
    success_conditions: tuple[FeatureThreshold, ...] = (),
) -> DecisionProcess:
    """Freeze components into a process once the model is fully registered."""
    if model.space is not space:
        raise ValueError("Transition model was built for a different state space.")
    terminal_mask = terminal.mask(space)
    terminal_mask.setflags(write=False)
    return DecisionProcess(
        space=space,
        model=model,
        reward=reward,
        terminal=terminal,
        terminal_mask=terminal_mask,
        config_hash=process_hash(space, model, terminal_mask),
        gamma=gamma,
        success_conditions=success_conditions,
    )


def process_hash(space: StateSpace, model: TransitionModel, terminal_mask: np.ndarray) -> str:
    """Stable digest of the state space, transition model and terminal set.

    Rewards and discount are excluded: they change values but not the shape
    of the arrays a stored policy indexes into.
    """
    digest = hashlib.sha256()
    header: dict[str, Any] = {
        "features": list(space.features),
        "resolution": space.resolution,
        "actions": list(model.action_names),
    }
    digest.update(json.dumps(header, sort_keys=True).encode("utf-8"))
    for state, action in sorted(model.pairs()):
        branches = model.distribution(state, action)
        encoded = ";".join(
            f"{branch.next_state}:{branch.probability!r}"
            for branch in sorted(branches, key=lambda b: b.next_state)
        )
        digest.update(f"{state},{action}={encoded}\n".encode("utf-8"))
    digest.update(np.packbits(terminal_mask).tobytes())
    return digest.hexdigest()
