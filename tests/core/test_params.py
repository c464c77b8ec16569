"""Tests for engine configuration schema and YAML serialization."""

from __future__ import annotations

from pathlib import Path

import pytest

from decision_engine.core.params import (
    ActionSpec,
    EffectRule,
    EngineConfig,
    FeatureThreshold,
    TerminalBonus,
    load_engine_config,
    save_engine_config,
)


def _config() -> EngineConfig:
    return EngineConfig(
        features=("coverage", "errors"),
        resolution=4,
        actions=(ActionSpec("scan", cost=0.1), ActionSpec("fix", cost=0.2)),
        rules=(
            EffectRule(action="scan", effects={"coverage": 0.3}),
            EffectRule(
                action="fix",
                effects={"errors": -0.3},
                prerequisites={"coverage": 0.3},
            ),
        ),
        reward_weights={"coverage": 1.0},
        error_penalties={"errors": 0.5},
        terminal_conditions=((FeatureThreshold("coverage", ">=", 1.0),),),
        terminal_bonuses=(TerminalBonus("errors", "<=", 0.0, bonus=0.5),),
        success_conditions=(FeatureThreshold("errors", "<=", 0.1),),
        initial_states=({"coverage": 0.0, "errors": 1.0},),
        metadata={"source": "unit-test"},
    )


def test_config_roundtrip_yaml(tmp_path: Path) -> None:
    config = _config()
    output_path = tmp_path / "engine.yaml"
    save_engine_config(config=config, output_path=output_path)

    loaded = load_engine_config(output_path)
    assert loaded == config
    assert loaded.action_names == ("scan", "fix")


def test_defaults_match_documented_values() -> None:
    config = EngineConfig(features=("x",), resolution=2, actions=(ActionSpec("a"),))
    assert config.p_success == 0.9
    assert config.p_fail == 0.1
    assert config.max_states == 100_000
    assert config.gamma == 0.95


@pytest.mark.parametrize(
    "payload_update, message",
    [
        ({"resolution": 1}, "resolution"),
        ({"features": []}, "feature"),
        ({"gamma": 1.0}, "gamma"),
        ({"p_success": 1.5}, "p_success"),
        ({"reward_weights": {"unknown": 1.0}}, "Unknown feature"),
    ],
)
def test_invalid_config_payload_raises(payload_update: dict, message: str) -> None:
    payload = _config().to_dict()
    payload.update(payload_update)
    with pytest.raises(ValueError, match=message):
        EngineConfig.from_dict(payload)


def test_threshold_rejects_unknown_comparator() -> None:
    with pytest.raises(ValueError, match="comparator"):
        FeatureThreshold("x", "==", 1.0)


def test_workflow_config_loads() -> None:
    project_root = Path(__file__).resolve().parents[2]
    config = load_engine_config(project_root / "configs" / "engine" / "analysis_workflow.yaml")

    assert len(config.features) == 6
    assert config.action_names[0] == "analyzeStructure"
    assert len(config.actions) == 7
    assert abs(sum(config.reward_weights.values()) - 1.0) <= 1e-12
