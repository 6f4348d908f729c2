"""
Habitat-table DQ preflight

Checks every partition that feeds the model runner and writes:
- dq_report.json (findings + per-partition metrics)
- dq_report.md   (human-readable summary)

Findings are a report only; the model runner still fails fast on its own.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from .models import partition_name


DEFAULT_MAX_NULL_RATE = 0.05
# used share outside this band usually means a mis-joined used/available table
MIN_USED_SHARE = 0.01
MAX_USED_SHARE = 0.99


@dataclass
class Finding:
    severity: str  # ERROR, WARN, INFO
    check: str
    message: str
    sample: Optional[dict] = None


def validate_partition(
    df: pd.DataFrame,
    response: str,
    predictors: List[str],
    pack_column: str | None = None,
    max_null_rate: float = DEFAULT_MAX_NULL_RATE,
) -> Tuple[List[Finding], Dict]:
    """
    Validate one partition's table.
    Returns:
      findings: list of Finding
      metrics: dict (row counts, used/available, null rates)
    """
    findings: List[Finding] = []
    metrics: Dict = {"rows": int(len(df))}

    cols = set(df.columns)
    required = [response] + list(predictors)
    if pack_column:
        required.append(pack_column)
    missing = [c for c in required if c not in cols]
    if missing:
        findings.append(Finding(
            severity="ERROR",
            check="schema.required_columns",
            message=f"Missing required columns: {missing}",
            sample={"missing": missing},
        ))

    if len(df) == 0:
        findings.append(Finding(
            severity="ERROR",
            check="partition.empty",
            message="Partition has no rows.",
        ))
        return findings, metrics

    if response in cols:
        y = pd.to_numeric(df[response], errors="coerce")
        bad = df[response].notna() & ~y.isin([0, 1])
        metrics["invalid_response"] = int(bad.sum())
        if metrics["invalid_response"] > 0:
            findings.append(Finding(
                severity="ERROR",
                check="values.response_binary",
                message=f"Found {metrics['invalid_response']} rows where {response} is not 0/1.",
                sample={"examples": df.loc[bad, response].astype(str).value_counts().head(5).to_dict()},
            ))
        metrics["used"] = int((y == 1).sum())
        metrics["available"] = int((y == 0).sum())
        share = metrics["used"] / len(df)
        metrics["used_share"] = float(share)
        if share < MIN_USED_SHARE or share > MAX_USED_SHARE:
            findings.append(Finding(
                severity="WARN",
                check="balance.used_share",
                message=f"Used share is {share:.1%}; expected both used and available points.",
            ))

    for p in predictors:
        if p not in cols:
            continue
        null_rate = float(df[p].isna().mean())
        metrics[f"null_rate.{p}"] = null_rate
        if null_rate > max_null_rate:
            findings.append(Finding(
                severity="WARN",
                check=f"nulls.{p}",
                message=f"High null rate for {p}: {null_rate:.1%} (rows are dropped before fitting)",
            ))
        if df[p].dropna().nunique() < 2:
            findings.append(Finding(
                severity="ERROR",
                check=f"values.constant.{p}",
                message=f"{p} is constant within partition; the univariate model cannot be fitted.",
            ))

    return findings, metrics


def validate_panels(
    panels: Mapping[str, tuple],
    response: str,
    predictors: List[str],
    max_null_rate: float = DEFAULT_MAX_NULL_RATE,
) -> Tuple[List[Finding], pd.DataFrame]:
    all_findings: List[Finding] = []
    metrics_rows: List[dict] = []

    for title, (tables, labels) in panels.items():
        for key, df in tables.items():
            part = partition_name(key)
            findings, metrics = validate_partition(df, response, predictors, max_null_rate=max_null_rate)
            for f in findings:
                f.sample = f.sample or {}
                f.sample["panel"] = title
                f.sample["partition"] = part
                all_findings.append(f)
            metrics_rows.append({"panel": title, "partition": part, "model": labels.get(key), **metrics})

    metrics_df = pd.DataFrame(metrics_rows)
    return all_findings, metrics_df


def _null_rate_table(metrics: pd.DataFrame) -> pd.DataFrame:
    """partition x covariate null-rate matrix, covariate names without the prefix."""
    cols = [c for c in metrics.columns if c.startswith("null_rate.")]
    out = metrics[["partition"] + cols].rename(columns={c: c[len("null_rate."):] for c in cols})
    return out.round(3)


def write_reports(findings: List[Finding], metrics_df: pd.DataFrame, output_dir: str) -> None:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    (out / "dq_report.json").write_text(json.dumps({
        "findings": [asdict(x) for x in findings],
        "metrics": metrics_df.to_dict(orient="records"),
    }, indent=2, default=str), encoding="utf-8")

    n_err = sum(1 for f in findings if f.severity == "ERROR")
    n_warn = sum(1 for f in findings if f.severity == "WARN")
    by_part: Dict[str, List[Finding]] = {}
    for f in findings:
        by_part.setdefault((f.sample or {}).get("partition", "-"), []).append(f)

    md = ["# Habitat Data Quality Report", ""]
    md.append(f"- Partitions checked: **{len(metrics_df)}**")
    md.append(f"- ERROR: **{n_err}** | WARN: **{n_warn}**")
    md.append("")

    panels = metrics_df["panel"].unique().tolist() if "panel" in metrics_df.columns else []
    for title in panels:
        sub = metrics_df[metrics_df["panel"] == title]
        md.append(f"## {title}")
        md.append("")
        keep = [c for c in ["partition", "model", "rows", "used", "available", "used_share"] if c in sub.columns]
        md.append(sub[keep].to_markdown(index=False))
        md.append("")

        nulls = _null_rate_table(sub)
        if nulls.shape[1] > 1 and (nulls.iloc[:, 1:] > 0).any().any():
            md.append("Covariate null rates (rows dropped per model):")
            md.append("")
            md.append(nulls.to_markdown(index=False))
            md.append("")

        for part in sub["partition"]:
            for f in by_part.get(part, []):
                md.append(f"- **{f.severity}** `{f.check}` ({part}): {f.message}")
        md.append("")

    (out / "dq_report.md").write_text("\n".join(md) + "\n", encoding="utf-8")
