"""Transition model probability-mass and rule tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from decision_engine.core.errors import InvalidAction, InvalidFeatureVector
from decision_engine.core.params import EffectRule, load_engine_config
from decision_engine.dp.discretization import build_state_space
from decision_engine.dp.transitions import (
    PROBABILITY_ATOL,
    TransitionBranch,
    TransitionModel,
    build_transition_model,
)


def test_every_distribution_is_normalized_and_non_negative(small_process) -> None:
    model = small_process.model
    for state in range(small_process.n_states):
        for action in range(small_process.n_actions):
            branches = model.distribution(state, action)
            assert all(branch.probability >= 0.0 for branch in branches)
            assert abs(sum(b.probability for b in branches) - 1.0) <= PROBABILITY_ATOL


def test_two_outcome_model_uses_prerequisites(small_process) -> None:
    model = small_process.model
    # advance_b needs a >= 0.5: fails from (0, 0), holds from (0.5, 0).
    assert model.distribution(0, 1) == (
        TransitionBranch(next_state=1, probability=0.2),
        TransitionBranch(next_state=0, probability=0.8),
    )
    branches = {b.next_state: b.probability for b in model.distribution(3, 1)}
    assert branches == pytest.approx({4: 0.9, 3: 0.1})


def test_clamped_effect_merges_into_single_self_loop(small_process) -> None:
    # b is already 1.0 at state (0, 1.0); the ideal state is the source.
    branches = small_process.model.distribution(2, 1)
    assert len(branches) == 1
    assert branches[0].next_state == 2
    assert branches[0].probability == pytest.approx(1.0)


def test_unregistered_pair_is_self_loop() -> None:
    space = build_state_space(("a",), 3)
    model = TransitionModel(space, ("noop",))

    assert model.has_transitions(1, 0) is False
    assert model.distribution(1, 0) == (TransitionBranch(next_state=1, probability=1.0),)


def test_register_validates_probability_mass() -> None:
    space = build_state_space(("a",), 3)
    model = TransitionModel(space, ("noop", "go"))

    with pytest.raises(ValueError, match="Probability mass"):
        model.register(0, 1, [(1, 0.5), (2, 0.4)])
    with pytest.raises(ValueError, match="Negative probability"):
        model.register(0, 1, [(1, 1.2), (2, -0.2)])
    with pytest.raises(ValueError, match="Non-finite probability"):
        model.register(0, 1, [(1, float("nan"))])
    with pytest.raises(ValueError, match="Non-finite probability"):
        model.register(0, 1, [(1, float("inf")), (2, float("-inf"))])
    with pytest.raises(InvalidAction):
        model.register(0, 2, [(1, 1.0)])
    assert model.has_transitions(0, 1) is False

    model.register(0, 1, [(1, 0.5), (1, 0.25), (2, 0.25), (0, 0.0)])
    assert model.distribution(0, 1) == (
        TransitionBranch(next_state=1, probability=0.75),
        TransitionBranch(next_state=2, probability=0.25),
    )


def test_distribution_rejects_unknown_action(small_process) -> None:
    with pytest.raises(InvalidAction):
        small_process.model.distribution(0, 5)
    with pytest.raises(InvalidAction):
        small_process.model.distribution(0, 1.7)
    with pytest.raises(InvalidAction):
        small_process.model.distribution(0, float("nan"))
    with pytest.raises(InvalidAction):
        small_process.model.action_id("teleport")
    assert small_process.model.action_id("advance_b") == 1


def test_invalid_rules_raise() -> None:
    space = build_state_space(("a",), 3)
    with pytest.raises(ValueError, match="Duplicate"):
        build_transition_model(
            space,
            ("go",),
            [EffectRule("go", {"a": 0.5}), EffectRule("go", {"a": 1.0})],
        )
    with pytest.raises(InvalidFeatureVector):
        build_transition_model(space, ("go",), [EffectRule("go", {"z": 0.5})])
    with pytest.raises(InvalidAction):
        build_transition_model(space, ("go",), [EffectRule("stop", {"a": 0.5})])


def test_sub_half_step_effects_snap_back_on_workflow_grid() -> None:
    project_root = Path(__file__).resolve().parents[2]
    config = load_engine_config(project_root / "configs" / "engine" / "analysis_workflow.yaml")
    space = build_state_space(config.features, config.resolution)
    model = build_transition_model(
        space,
        config.action_names,
        config.rules,
        p_success=config.p_success,
        p_fail=config.p_fail,
    )
    # optimizeCosts prerequisites hold here; +0.1 progress is under half a step.
    state = space.lookup(
        {
            "planCompleteness": 0.0,
            "elementCount": 0.0,
            "quantityAccuracy": 0.75,
            "complianceLevel": 0.5,
            "errorRate": 0.0,
            "analysisProgress": 0.0,
        }
    )
    branches = model.distribution(state, model.action_id("optimizeCosts"))
    assert [(b.next_state, b.probability) for b in branches] == [(state, pytest.approx(1.0))]
