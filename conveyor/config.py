"""
Content Conveyor — Configuration
Loads config/conveyor.yaml and exposes typed accessors.
Per-user limits are NOT here; they live in the settings table.
"""

from __future__ import annotations
import os
from functools import lru_cache
from pathlib import Path

import yaml

CONFIG_DIR = Path(
    os.environ.get(
        "CONVEYOR_CONFIG_DIR",
        str(Path(__file__).parent.parent / "config"),
    )
)

DEFAULTS: dict = {
    "stages": {"timeouts": {"default": 120}, "cost_estimates": {}},
    "budget": {"estimated_cost_per_item": 0.14, "counter_write_attempts": 5},
    "gate": {
        "confidence_floor": 0.6,
        "threshold": {"min_band": 60, "max_band": 90, "alpha": 0.2, "sensitivity": 20},
    },
    "optimizer": {"max_iterations": 2},
    "retry": {"max_retries": 3},
    "runner": {"stall_timeout_minutes": 60},
    "events": {"live_queue_size": 256, "history_default_limit": 50, "append_attempts": 3},
    "learning": {"min_pattern_count": 2},
}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, val in (override or {}).items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], val)
        else:
            merged[key] = val
    return merged


@lru_cache(maxsize=1)
def load_config() -> dict:
    path = CONFIG_DIR / "conveyor.yaml"
    if not path.exists():
        return DEFAULTS
    with open(path) as f:
        return _merge(DEFAULTS, yaml.safe_load(f) or {})


def reload_config() -> dict:
    load_config.cache_clear()
    return load_config()


def get_stage_timeout(stage_key: str) -> float:
    timeouts = load_config()["stages"]["timeouts"]
    return float(timeouts.get(stage_key, timeouts.get("default", 120)))


def get_stage_cost_estimate(stage_key: str) -> float:
    return float(load_config()["stages"]["cost_estimates"].get(stage_key, 0.0))


def get_threshold_band() -> dict[str, float]:
    t = load_config()["gate"]["threshold"]
    return {
        "min_band": float(t.get("min_band", 60)),
        "max_band": float(t.get("max_band", 90)),
        "alpha": float(t.get("alpha", 0.2)),
        "sensitivity": float(t.get("sensitivity", 20)),
    }


def get_confidence_floor() -> float:
    return float(load_config()["gate"].get("confidence_floor", 0.6))


def get_max_retries() -> int:
    return int(os.environ.get("CONVEYOR_MAX_RETRIES", load_config()["retry"]["max_retries"]))


def get_stall_timeout_minutes() -> int:
    return int(load_config()["runner"]["stall_timeout_minutes"])


def get_estimated_cost_per_item() -> float:
    return float(load_config()["budget"]["estimated_cost_per_item"])


def get_counter_write_attempts() -> int:
    return int(load_config()["budget"]["counter_write_attempts"])


def get_live_queue_size() -> int:
    return int(load_config()["events"]["live_queue_size"])


def get_history_default_limit() -> int:
    return int(load_config()["events"]["history_default_limit"])


def get_optimizer_max_iterations() -> int:
    return int(load_config()["optimizer"]["max_iterations"])


def get_event_append_attempts() -> int:
    return max(1, int(load_config()["events"].get("append_attempts", 3)))


def get_min_pattern_count() -> int:
    return int(load_config()["learning"]["min_pattern_count"])
