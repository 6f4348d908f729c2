"""
Analysis configuration (YAML, merged over built-in defaults).

Defaults describe the Ya Ha Tinda wolf RSF data: two packs, two home-range
estimators and nine habitat covariates. A YAML file only needs to carry the
keys it changes.
"""
from __future__ import annotations

import copy
from pathlib import Path

import yaml


DEFAULTS: dict = {
    "response": "used",
    "pack_column": "pack",
    "packs": ["Red Deer", "Bow Valley"],
    "all_packs_label": "All packs",
    "predictors": [
        "deer_w2",
        "moose_w2",
        "elk_w2",
        "sheep_w2",
        "goat_w2",
        "wolf_w2",
        "Elevation2",
        "DistFromHumanAccess2",
        "DistFromHighHumanAccess2",
    ],
    "term_labels": {
        "deer_w2": "Deer",
        "moose_w2": "Moose",
        "elk_w2": "Elk",
        "sheep_w2": "Sheep",
        "goat_w2": "Goat",
        "wolf_w2": "Wolf",
        "Elevation2": "Elevation",
        "DistFromHumanAccess2": "Dist. to human access",
        "DistFromHighHumanAccess2": "Dist. to high human access",
    },
    # method label -> CSV path; order sets the dodge order in the figure
    "methods": {
        "KDE": "data/wolfkde.csv",
        "MCP": "data/wolfmcp.csv",
    },
    "exponentiate": True,
    "conf_level": 0.95,
    "n_jobs": 1,
    "max_null_rate": 0.05,
    "figure": {
        "log_scale": True,
        "width": 8.0,
        "panel_height": 4.0,
        "dpi": 200,
        "palette": "Set2",
    },
}


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict) and k != "methods":
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | Path | None = None) -> dict:
    """Load YAML config; if None, return a copy of DEFAULTS."""
    if not path:
        return copy.deepcopy(DEFAULTS)
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config {path} must be a mapping, got {type(raw).__name__}")

    unknown = sorted(set(raw) - set(DEFAULTS))
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {unknown}")

    cfg = _merge(DEFAULTS, raw)

    # relative data paths resolve against the config file's directory
    base = Path(path).resolve().parent
    cfg["methods"] = {
        m: str(p if Path(p).is_absolute() else (base / p))
        for m, p in cfg["methods"].items()
    }
    return cfg
