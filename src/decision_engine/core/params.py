"""Engine configuration schema and YAML helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import math
from pathlib import Path
from typing import Any

import yaml

_COMPARATORS = (">=", "<=", ">", "<")

# Default ceiling on grid state count.
DEFAULT_MAX_STATES = 100_000


@dataclass(frozen=True)
class FeatureThreshold:
    """Comparison of one feature against a constant."""

    feature: str
    op: str
    value: float

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(
                f"Unsupported comparator {self.op!r}; expected one of {_COMPARATORS}."
            )


@dataclass(frozen=True)
class TerminalBonus:
    """Bonus paid on entering a terminal state that meets a threshold."""

    feature: str
    op: str
    value: float
    bonus: float

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(
                f"Unsupported comparator {self.op!r}; expected one of {_COMPARATORS}."
            )


@dataclass(frozen=True)
class ActionSpec:
    """One named action with a fixed execution cost."""

    name: str
    cost: float = 0.0


@dataclass(frozen=True)
class EffectRule:
    """Declarative effect of an action on the feature vector."""

    action: str
    effects: dict[str, float] = field(default_factory=dict)
    prerequisites: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineConfig:
    """Top-level decision-process configuration.

    ``terminal_conditions`` is a disjunction of conjunctions: a state is
    terminal when every threshold of at least one group holds.
    ``reward_weights`` are expected to sum to a normalization chosen by the
    caller (commonly 1.0); the sum is reported by quality checks but not
    enforced.
    """

    features: tuple[str, ...]
    resolution: int
    actions: tuple[ActionSpec, ...]
    rules: tuple[EffectRule, ...] = ()
    reward_weights: dict[str, float] = field(default_factory=dict)
    error_penalties: dict[str, float] = field(default_factory=dict)
    terminal_conditions: tuple[tuple[FeatureThreshold, ...], ...] = ()
    terminal_bonuses: tuple[TerminalBonus, ...] = ()
    success_conditions: tuple[FeatureThreshold, ...] = ()
    p_success: float = 0.9
    p_fail: float = 0.1
    max_states: int = DEFAULT_MAX_STATES
    gamma: float = 0.95
    initial_states: tuple[dict[str, float], ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def action_names(self) -> tuple[str, ...]:
        return tuple(action.name for action in self.actions)

    def validate(self) -> None:
        if not self.features:
            raise ValueError("At least one feature is required.")
        if len(set(self.features)) != len(self.features):
            raise ValueError(f"Feature names must be unique: {self.features}.")
        if self.resolution < 2:
            raise ValueError("resolution must be at least 2.")
        if not self.actions:
            raise ValueError("At least one action is required.")
        if len(set(self.action_names)) != len(self.actions):
            raise ValueError(f"Action names must be unique: {self.action_names}.")
        for name, value in (("p_success", self.p_success), ("p_fail", self.p_fail)):
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0, 1].")
        if not (0.0 <= self.gamma < 1.0):
            raise ValueError("gamma must be in [0, 1).")
        if self.max_states <= 0:
            raise ValueError("max_states must be positive.")

        known = set(self.features)
        referenced = [
            *self.reward_weights,
            *self.error_penalties,
            *(threshold.feature for group in self.terminal_conditions for threshold in group),
            *(bonus.feature for bonus in self.terminal_bonuses),
            *(threshold.feature for threshold in self.success_conditions),
        ]
        unknown = sorted(set(referenced) - known)
        if unknown:
            raise ValueError(f"Unknown feature(s) referenced in config: {unknown}.")
        for name, value in {**self.reward_weights, **self.error_penalties}.items():
            if not math.isfinite(value):
                raise ValueError(f"Weight for {name!r} must be finite.")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to plain YAML-safe containers."""
        payload = asdict(self)
        payload["features"] = list(self.features)
        payload["actions"] = [asdict(action) for action in self.actions]
        payload["rules"] = [asdict(rule) for rule in self.rules]
        payload["terminal_conditions"] = [
            [asdict(threshold) for threshold in group]
            for group in self.terminal_conditions
        ]
        payload["terminal_bonuses"] = [asdict(bonus) for bonus in self.terminal_bonuses]
        payload["success_conditions"] = [
            asdict(threshold) for threshold in self.success_conditions
        ]
        payload["initial_states"] = [dict(state) for state in self.initial_states]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EngineConfig":
        """Create configuration from a plain dict."""
        actions = tuple(
            ActionSpec(name=str(item["name"]), cost=float(item.get("cost", 0.0)))
            for item in payload["actions"]
        )
        rules = tuple(
            EffectRule(
                action=str(item["action"]),
                effects={str(k): float(v) for k, v in item.get("effects", {}).items()},
                prerequisites={
                    str(k): float(v) for k, v in item.get("prerequisites", {}).items()
                },
            )
            for item in payload.get("rules", [])
        )
        terminal_conditions = tuple(
            tuple(_threshold_from_dict(item) for item in group)
            for group in payload.get("terminal_conditions", [])
        )
        terminal_bonuses = tuple(
            TerminalBonus(
                feature=str(item["feature"]),
                op=str(item["op"]),
                value=float(item["value"]),
                bonus=float(item["bonus"]),
            )
            for item in payload.get("terminal_bonuses", [])
        )
        success_conditions = tuple(
            _threshold_from_dict(item) for item in payload.get("success_conditions", [])
        )
        config = cls(
            features=tuple(str(name) for name in payload["features"]),
            resolution=int(payload["resolution"]),
            actions=actions,
            rules=rules,
            reward_weights={
                str(k): float(v) for k, v in payload.get("reward_weights", {}).items()
            },
            error_penalties={
                str(k): float(v) for k, v in payload.get("error_penalties", {}).items()
            },
            terminal_conditions=terminal_conditions,
            terminal_bonuses=terminal_bonuses,
            success_conditions=success_conditions,
            p_success=float(payload.get("p_success", 0.9)),
            p_fail=float(payload.get("p_fail", 0.1)),
            max_states=int(payload.get("max_states", DEFAULT_MAX_STATES)),
            gamma=float(payload.get("gamma", 0.95)),
            initial_states=tuple(
                {str(k): float(v) for k, v in state.items()}
                for state in payload.get("initial_states", [])
            ),
            metadata=dict(payload.get("metadata", {})),
        )
        config.validate()
        return config


def save_engine_config(config: EngineConfig, output_path: Path) -> None:
    """Serialize configuration to YAML."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(yaml.safe_dump(config.to_dict(), sort_keys=False))


def load_engine_config(path: Path) -> EngineConfig:
    """Load configuration from YAML."""
    payload = yaml.safe_load(path.read_text())
    if not isinstance(payload, dict):
        raise ValueError("Expected a mapping in engine config YAML.")
    return EngineConfig.from_dict(payload)


def _threshold_from_dict(item: dict[str, Any]) -> FeatureThreshold:
    return FeatureThreshold(
        feature=str(item["feature"]),
        op=str(item["op"]),
        value=float(item["value"]),
    )
