"""Policy rollouts over a solved decision process."""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import asdict, dataclass
import logging
from typing import Any

import numpy as np
import pandas as pd

from decision_engine.core.dynamics import step_discrete_state
from decision_engine.core.types import NOT_FOUND, ActionId, FeatureInput, StateId
from decision_engine.dp.mdp import DecisionProcess
from decision_engine.dp.value_iteration import validate_policy

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 50


@dataclass(frozen=True)
class EpisodeStep:
    """One acted step of an episode."""

    step: int
    state_id: StateId
    action_id: ActionId
    action_name: str
    next_state_id: StateId
    reward: float
    approximated: bool
    features: dict[str, float]


@dataclass(frozen=True)
class EpisodeResult:
    """Trajectory and returns of one episode.

    ``total_reward`` is the discounted return ``sum_t gamma**t * r_t``;
    ``undiscounted_reward`` is the plain sum. ``terminated`` is False when
    the step cap ran out before reaching a terminal state.
    """

    trajectory: tuple[EpisodeStep, ...]
    total_reward: float
    undiscounted_reward: float
    terminated: bool
    success: bool
    initial_state: StateId
    final_state: StateId
    final_features: dict[str, float]
    approximated: bool
    gamma: float = 1.0

    @property
    def steps(self) -> int:
        return len(self.trajectory)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trajectory": [asdict(step) for step in self.trajectory],
            "total_reward": self.total_reward,
            "undiscounted_reward": self.undiscounted_reward,
            "terminated": self.terminated,
            "success": self.success,
            "steps": self.steps,
            "initial_state": self.initial_state,
            "final_state": self.final_state,
            "final_features": dict(self.final_features),
            "approximated": self.approximated,
            "gamma": self.gamma,
        }


class EpisodeRunner:
    """Follow a fixed policy from an initial feature vector.

    The runner only reads the process and policy; one runner owns one random
    generator, so concurrent episodes should each use their own runner.
    """

    def __init__(
        self,
        process: DecisionProcess,
        policy: np.ndarray,
        *,
        gamma: float | None = None,
        deterministic: bool = False,
        seed: int | np.random.SeedSequence | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.process = process
        self.policy = validate_policy(
            policy,
            n_states=process.n_states,
            n_actions=process.n_actions,
        )
        self.gamma = process.gamma if gamma is None else float(gamma)
        if not (0.0 <= self.gamma <= 1.0):
            raise ValueError("gamma must be in [0, 1].")
        self.deterministic = deterministic
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def resolve(self, initial: FeatureInput) -> tuple[StateId, bool]:
        """Map an observation to a grid state, flagging off-grid inputs."""
        space = self.process.space
        state = space.lookup(initial)
        if state != NOT_FOUND:
            return state, False
        state = space.nearest(initial)
        logger.warning(
            "Off-grid feature vector approximated by nearest state %d (%s)",
            state,
            space.as_mapping(state),
        )
        return state, True

    def run(self, initial: FeatureInput, max_steps: int = DEFAULT_MAX_STEPS) -> EpisodeResult:
        if max_steps < 0:
            raise ValueError("max_steps must be non-negative.")
        process = self.process
        state, approximated = self.resolve(initial)
        initial_state = state

        trajectory: list[EpisodeStep] = []
        total_reward = 0.0
        undiscounted_reward = 0.0
        discount = 1.0
        for step in range(max_steps):
            if process.is_terminal(state):
                break
            action = int(self.policy[state])
            outcome = step_discrete_state(
                process,
                state,
                action,
                rng=self.rng,
                deterministic=self.deterministic,
            )
            trajectory.append(
                EpisodeStep(
                    step=step,
                    state_id=state,
                    action_id=action,
                    action_name=process.action_names[action],
                    next_state_id=outcome.next_state,
                    reward=outcome.reward,
                    approximated=approximated and step == 0,
                    features=process.space.as_mapping(state),
                )
            )
            total_reward += discount * outcome.reward
            undiscounted_reward += outcome.reward
            discount *= self.gamma
            state = outcome.next_state

        terminated = process.is_terminal(state)
        if not terminated:
            logger.debug("Episode hit max_steps=%d without terminating", max_steps)
        return EpisodeResult(
            trajectory=tuple(trajectory),
            total_reward=total_reward,
            undiscounted_reward=undiscounted_reward,
            terminated=terminated,
            success=process.is_success(state),
            initial_state=initial_state,
            final_state=state,
            final_features=process.space.as_mapping(state),
            approximated=approximated,
            gamma=self.gamma,
        )


def run_batch(
    process: DecisionProcess,
    policy: np.ndarray,
    initial_states: Sequence[FeatureInput],
    *,
    max_steps: int = DEFAULT_MAX_STEPS,
    gamma: float | None = None,
    seed: int | None = None,
    deterministic: bool = False,
    max_workers: int = 4,
    executor: Executor | None = None,
) -> list[EpisodeResult]:
    """Run independent episodes concurrently, in input order.

    Each episode draws from its own generator spawned from one
    ``SeedSequence``, so results are reproducible for a fixed ``seed``
    regardless of scheduling.
    """
    children = np.random.SeedSequence(seed).spawn(len(initial_states))

    def _run_one(args: tuple[FeatureInput, np.random.SeedSequence]) -> EpisodeResult:
        initial, child = args
        runner = EpisodeRunner(
            process,
            policy,
            gamma=gamma,
            deterministic=deterministic,
            rng=np.random.default_rng(child),
        )
        return runner.run(initial, max_steps=max_steps)

    jobs = list(zip(initial_states, children))
    if executor is None:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(_run_one, jobs))
    return list(executor.map(_run_one, jobs))


def summarize_episodes(results: Sequence[EpisodeResult]) -> dict[str, float]:
    """Aggregate returns and termination statistics over episodes."""
    if not results:
        return {
            "n_episodes": 0,
            "mean_total_reward": 0.0,
            "mean_undiscounted_reward": 0.0,
            "termination_rate": 0.0,
            "success_rate": 0.0,
            "mean_steps": 0.0,
            "approximation_rate": 0.0,
        }
    n = len(results)
    return {
        "n_episodes": n,
        "mean_total_reward": float(np.mean([r.total_reward for r in results])),
        "mean_undiscounted_reward": float(np.mean([r.undiscounted_reward for r in results])),
        "termination_rate": sum(r.terminated for r in results) / n,
        "success_rate": sum(r.success for r in results) / n,
        "mean_steps": float(np.mean([r.steps for r in results])),
        "approximation_rate": sum(r.approximated for r in results) / n,
    }


def trajectory_frame(result: EpisodeResult) -> pd.DataFrame:
    """Flatten an episode trajectory into one row per step."""
    rows = []
    for step in result.trajectory:
        row = asdict(step)
        features = row.pop("features")
        row.update({f"feature_{name}": value for name, value in features.items()})
        rows.append(row)
    if not rows:
        return pd.DataFrame(
            columns=[
                "step",
                "state_id",
                "action_id",
                "action_name",
                "next_state_id",
                "reward",
                "approximated",
                "discounted_reward",
            ]
        )
    frame = pd.DataFrame(rows)
    frame["discounted_reward"] = frame["reward"] * result.gamma ** frame["step"]
    return frame
