"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys

import pytest


def _preload_numpy_without_macos_check() -> None:
    """Preload NumPy while bypassing the macOS sanity check.

    This avoids a hard crash seen with some macOS BLAS/LAPACK builds during
    NumPy's import-time polyfit check.
    """
    if sys.platform != "darwin":
        return

    original_platform = sys.platform
    try:
        sys.platform = "linux"
        import numpy  # noqa: F401
    finally:
        sys.platform = original_platform


_preload_numpy_without_macos_check()

from decision_engine.core.params import (  # noqa: E402
    ActionSpec,
    EffectRule,
    EngineConfig,
    FeatureThreshold,
    TerminalBonus,
    load_engine_config,
)
from decision_engine.dp.mdp import DecisionProcess, build_decision_process  # noqa: E402

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"


def grid_config(**overrides) -> EngineConfig:
    """Deterministic 2-feature, 9-state workflow with a unique optimum."""
    config = EngineConfig(
        features=("a", "b"),
        resolution=3,
        actions=(ActionSpec("advance_a", cost=0.1), ActionSpec("advance_b", cost=0.2)),
        rules=(
            EffectRule(action="advance_a", effects={"a": 0.5}),
            EffectRule(action="advance_b", effects={"b": 0.5}),
        ),
        reward_weights={"a": 1.0, "b": 0.5},
        terminal_conditions=(
            (FeatureThreshold("a", ">=", 1.0), FeatureThreshold("b", ">=", 1.0)),
        ),
        terminal_bonuses=(TerminalBonus("a", ">=", 1.0, bonus=1.0),),
        p_success=1.0,
        p_fail=1.0,
        gamma=0.9,
    )
    return replace(config, **overrides) if overrides else config


@pytest.fixture
def grid_process() -> DecisionProcess:
    return build_decision_process(grid_config())


@pytest.fixture
def line_process() -> DecisionProcess:
    return build_decision_process(load_engine_config(FIXTURES_DIR / "line_1d.yaml"))


@pytest.fixture
def small_process() -> DecisionProcess:
    return build_decision_process(load_engine_config(FIXTURES_DIR / "engine_small.yaml"))
