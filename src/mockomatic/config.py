"""Configuration: defaults, YAML file, CLI flags and the options handed to the solver."""
from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

DATA_DIR = Path(os.getenv("MOCKOMATIC_DATA_DIR", "data"))
DATA_OUTPUT_DIR = DATA_DIR / "output"

DEFAULT_SETTINGS = {
    # Regarding the solving method
    "solver": "ortools",
    "time_limit_sec": 30.0,
    "solver_workers": None,
    "pair_variables": "weighted",

    # Regarding the session layout
    "rest_station_title": "rest",
    "midday_hour": 12,

    # Regarding the run
    "max_workers": 2,
    "output_dir": str(DATA_OUTPUT_DIR),
    "log_level": "INFO",
}

_INT_KEYS = ("solver_workers", "midday_hour", "max_workers")
_FLOAT_KEYS = ("time_limit_sec",)


def load_config_file(path):
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def normalize_keys(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accept kebab-case keys (as written on the command line) in config files."""
    if not overrides:
        return {}
    return {str(key).replace("-", "_"): value for key, value in overrides.items()}


def build_parser():
    p = argparse.ArgumentParser(prog="mockomatic", description="Allocate candidates and examiners to stations")

    # General
    p.add_argument("--config", type=str,
                   help="Path to YAML configuration file (default: $MOCKOMATIC_CONFIG)")
    p.add_argument("--session-dir", type=str, required=True,
                   help="Directory with candidates.csv, examiners.csv, stations.csv and slots.json")
    p.add_argument("--session-id", type=str,
                   help="Session to allocate (default: the single session found in the directory)")
    p.add_argument("--user", type=str, default="mockomatic",
                   help="Name recorded as modified_by in the allocation history")

    # Regarding the solving method
    p.add_argument("--solver")
    p.add_argument("--time-limit-sec", type=float)
    p.add_argument("--solver-workers", type=int)
    p.add_argument("--pair-variables", choices=["weighted", "all"])

    # Regarding the session layout
    p.add_argument("--rest-station-title")
    p.add_argument("--midday-hour", type=int)

    # Regarding the run
    p.add_argument("--max-workers", type=int,
                   help="Sessions allocated in parallel when the directory holds several")
    p.add_argument("--output-dir")
    p.add_argument("--log-level")

    return p


def str_to_bool(x):
    if isinstance(x, bool):
        return x
    if x is None:
        return None
    return str(x).strip().lower() in ["1", "true", "yes", "y"]


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in _INT_KEYS:
        return int(value)
    if key in _FLOAT_KEYS:
        return float(value)
    return value


def resolve_settings(
    file_cfg: Optional[Dict[str, Any]] = None,
    cli_args: Optional[argparse.Namespace] = None,
) -> Dict[str, Any]:
    """Defaults, then the config file, then explicitly passed CLI flags."""
    settings = DEFAULT_SETTINGS.copy()
    for key, value in normalize_keys(file_cfg).items():
        if key not in settings:
            raise ValueError(f"Unknown configuration key: {key}")
        settings[key] = _coerce(key, value)

    if cli_args is not None:
        for key in settings:
            value = getattr(cli_args, key, None)
            if value is None:
                continue
            settings[key] = _coerce(key, value)

    if settings["pair_variables"] not in ("weighted", "all"):
        raise ValueError(f"pair_variables must be 'weighted' or 'all', got {settings['pair_variables']!r}")
    if not 0 <= settings["midday_hour"] <= 24:
        raise ValueError(f"midday_hour must be between 0 and 24, got {settings['midday_hour']}")
    if settings["max_workers"] < 1:
        raise ValueError(f"max_workers must be at least 1, got {settings['max_workers']}")
    return settings


def get_settings(argv: Optional[List[str]] = None):
    """Parse the command line and return ``(settings, args)``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = args.config or os.getenv("MOCKOMATIC_CONFIG")
    file_cfg = load_config_file(config_path) if config_path else {}
    return resolve_settings(file_cfg, args), args


@dataclass
class SolverOptions:
    solver: str = "ortools"
    time_limit_sec: Optional[float] = 30.0
    solver_workers: Optional[int] = None
    pair_variables: str = "weighted"
    rest_station_title: str = "rest"
    midday_hour: int = 12

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None) -> "SolverOptions":
        settings = settings or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in settings.items() if k in known and v is not None})


__all__ = [
    "DEFAULT_SETTINGS",
    "DATA_DIR",
    "DATA_OUTPUT_DIR",
    "SolverOptions",
    "build_parser",
    "get_settings",
    "load_config_file",
    "normalize_keys",
    "resolve_settings",
    "str_to_bool",
]
