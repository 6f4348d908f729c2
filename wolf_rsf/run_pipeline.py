#!/usr/bin/env python3
"""
Wolf RSF caterpillar report

This script:
1) Loads one used/available table per home-range method (KDE, MCP)
2) Builds three partition sets: all packs, Red Deer, Bow Valley
3) Runs the DQ preflight over every partition (dq_report.*)
4) Fits one univariate logistic regression per covariate per partition
   (9 covariates x 6 partitions = 54 models)
5) Writes the tidy coefficient tables and the stacked caterpillar figure

Outputs are written to --output_dir.
"""
from __future__ import annotations

import argparse
import json
import re
from pathlib import Path
from typing import Dict, Mapping

import pandas as pd

from .config import load_config
from .models import ModelRunError, RESULT_COLUMNS, build_panels, partition_name, run_panels
from .plots import compose_figure, save_figure
from .validation import validate_panels, write_reports


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", title.lower()).strip("_")


def load_method_tables(paths: Mapping[str, str]) -> Dict[str, pd.DataFrame]:
    tables = {}
    for method, p in paths.items():
        path = Path(p)
        if not path.exists():
            raise FileNotFoundError(f"Missing {method} table: {path}")
        tables[method] = pd.read_csv(path)
    return tables


def run_summary(panels: Mapping[str, tuple], panel_results: Mapping[str, pd.DataFrame]) -> dict:
    report: dict = {}

    report["panels"] = list(panel_results)
    report["partition_rows"] = {
        partition_name(key): int(len(df))
        for _, (tables, _) in panels.items()
        for key, df in tables.items()
    }
    report["models_fitted"] = int(sum(len(r) for r in panel_results.values()))
    report["models_by_panel"] = {t: int(len(r)) for t, r in panel_results.items()}

    sig = {}
    for t, r in panel_results.items():
        if len(r):
            sig[t] = int((r["p_value"] < 0.05).sum())
    report["terms_p_lt_0.05_by_panel"] = sig
    return report


def run_report(
    config: dict,
    output_dir: str | Path,
    fail_on_error: bool = False,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Full report run. Returns the combined coefficient table (with a `panel`
    column). Raises ModelRunError before anything but the DQ report is written
    if any partition or model fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    response = config["response"]
    predictors = list(config["predictors"])

    tables_by_method = load_method_tables(config["methods"])
    panels = build_panels(
        tables_by_method,
        config["packs"],
        pack_column=config["pack_column"],
        all_packs_label=config["all_packs_label"],
    )

    findings, metrics_df = validate_panels(
        panels, response, predictors, max_null_rate=float(config["max_null_rate"]),
    )
    write_reports(findings, metrics_df, str(output_dir))
    n_err = sum(1 for f in findings if f.severity == "ERROR")
    if verbose:
        print(f"DQ preflight: {len(findings)} finding(s), {n_err} ERROR -> {output_dir / 'dq_report.md'}")
    if fail_on_error and n_err:
        raise SystemExit(2)

    panel_results = run_panels(
        panels,
        response,
        predictors,
        exponentiate=bool(config["exponentiate"]),
        conf_level=float(config["conf_level"]),
        n_jobs=int(config["n_jobs"]),
    )

    frames = []
    for title, res in panel_results.items():
        res.to_csv(output_dir / f"coefficients_{_slug(title)}.csv", index=False)
        frames.append(res.assign(panel=title))
        if verbose:
            print(f"  {title}: {len(res)} models")
    combined = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=RESULT_COLUMNS + ["panel"])
    combined.to_csv(output_dir / "coefficients.csv", index=False)

    fig_cfg = config["figure"]
    fig = compose_figure(
        panel_results,
        term_labels=config.get("term_labels"),
        exponentiated=bool(config["exponentiate"]),
        conf_level=float(config["conf_level"]),
        log_scale=bool(fig_cfg["log_scale"]),
        width=float(fig_cfg["width"]),
        panel_height=float(fig_cfg["panel_height"]),
        palette=fig_cfg["palette"],
    )
    fig_path = save_figure(fig, output_dir / "caterpillar.png", dpi=int(fig_cfg["dpi"]))

    rep = run_summary(panels, panel_results)
    rep["figure"] = str(fig_path)
    rep["exponentiate"] = bool(config["exponentiate"])
    rep["conf_level"] = float(config["conf_level"])
    with open(output_dir / "run_summary.json", "w") as f:
        json.dump(rep, f, indent=2, default=str)

    md_lines = ["# Run Summary", ""]
    for k, v in rep.items():
        md_lines.append(f"- **{k}**: {v}")
    with open(output_dir / "run_summary.md", "w") as f:
        f.write("\n".join(md_lines) + "\n")

    return combined


def main(argv=None):
    ap = argparse.ArgumentParser(description="Univariate RSF models + caterpillar figure")
    ap.add_argument("--config", default=None, help="Path to YAML analysis config")
    ap.add_argument("--kde_csv", default=None, help="Override the KDE used/available table")
    ap.add_argument("--mcp_csv", default=None, help="Override the MCP used/available table")
    ap.add_argument("--output_dir", default="reports", help="Folder to write tables, figure and reports")
    ap.add_argument("--no_exponentiate", action="store_true", help="Report log-odds instead of odds ratios")
    ap.add_argument("--jobs", type=int, default=None, help="Fit partitions on N threads")
    ap.add_argument("--fail_on_error", action="store_true", help="Stop after the DQ preflight if it has ERROR findings")
    args = ap.parse_args(argv)

    config = load_config(args.config)
    if args.kde_csv:
        config["methods"]["KDE"] = args.kde_csv
    if args.mcp_csv:
        config["methods"]["MCP"] = args.mcp_csv
    if args.no_exponentiate:
        config["exponentiate"] = False
    if args.jobs is not None:
        config["n_jobs"] = args.jobs

    try:
        combined = run_report(config, args.output_dir, fail_on_error=args.fail_on_error)
    except (ModelRunError, FileNotFoundError) as err:
        print(f"❌ {type(err).__name__}: {err}")
        print("No figure written.")
        raise SystemExit(2)

    print(f"✅ Report complete ({len(combined)} models)")
    print(f"Outputs written to: {args.output_dir}")


if __name__ == "__main__":
    main()
