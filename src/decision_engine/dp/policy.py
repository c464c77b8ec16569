"""Policy extraction and reporting helpers for tabular DP."""

from __future__ import annotations

from collections import Counter
import math
from statistics import mean

import numpy as np

from decision_engine.dp.discretization import state_key
from decision_engine.dp.mdp import DecisionProcess
from decision_engine.dp.value_iteration import bellman_backup


def extract_greedy_policy(
    process: DecisionProcess,
    values: np.ndarray,
    gamma: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Extract deterministic greedy policy against a value function."""
    policy = np.zeros(process.n_states, dtype=np.int64)
    q_values = np.zeros((process.n_states, process.n_actions), dtype=np.float64)
    for state in range(process.n_states):
        _, action, q_row = bellman_backup(process, state, values, gamma)
        policy[state] = action
        q_values[state] = q_row
    return policy, q_values


def policy_rows(
    process: DecisionProcess,
    policy: np.ndarray,
    values: np.ndarray,
) -> list[dict[str, object]]:
    """Build flat tabular rows for policy/value inspection."""
    space = process.space
    rows: list[dict[str, object]] = []
    for state in range(space.n_states):
        action = int(policy[state])
        row: dict[str, object] = {
            "state_id": state,
            "state_key": state_key(space.grid[state]),
            "is_terminal": process.is_terminal(state),
        }
        row.update(space.as_mapping(state))
        row["action"] = action
        row["action_name"] = process.action_names[action]
        row["value"] = float(values[state])
        rows.append(row)
    return rows


def summarize_policy(rows: list[dict[str, object]]) -> dict[str, object]:
    """Summarize action usage over live states."""
    live_rows = [row for row in rows if not bool(row["is_terminal"])]
    if not live_rows:
        return {
            "n_live_states": 0,
            "action_histogram": {},
            "dominant_action_share": 0.0,
            "policy_entropy_bits": 0.0,
            "mean_value_by_action": {},
        }

    counter = Counter(str(row["action_name"]) for row in live_rows)
    n_live = len(live_rows)
    return {
        "n_live_states": n_live,
        "action_histogram": dict(sorted(counter.items())),
        "dominant_action_share": max(counter.values()) / n_live,
        "policy_entropy_bits": policy_entropy(list(counter.values())),
        "mean_value_by_action": {
            name: float(mean(float(r["value"]) for r in live_rows if r["action_name"] == name))
            for name in sorted(counter)
        },
    }


def build_evaluation_summary(rows: list[dict[str, object]]) -> dict[str, object]:
    """Build report-oriented summary payload from policy rows."""
    live_rows = [row for row in rows if not bool(row["is_terminal"])]
    live_values = [float(row["value"]) for row in live_rows]

    if live_rows:
        value_summary = {
            "min": min(live_values),
            "max": max(live_values),
            "mean": float(sum(live_values) / len(live_values)),
        }
    else:
        value_summary = {"min": 0.0, "max": 0.0, "mean": 0.0}

    top_states = sorted(live_rows, key=lambda row: float(row["value"]), reverse=True)[:10]
    bottom_states = sorted(live_rows, key=lambda row: float(row["value"]))[:10]

    return {
        "policy_summary": summarize_policy(rows),
        "value_summary": value_summary,
        "top_states_by_value": top_states,
        "bottom_states_by_value": bottom_states,
    }


def policy_entropy(counts: list[int]) -> float:
    """Shannon entropy (bits) of an action-count histogram."""
    total = sum(counts)
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in counts:
        if count > 0:
            p = count / total
            entropy -= p * math.log2(p)
    return entropy
