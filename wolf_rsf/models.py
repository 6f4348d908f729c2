"""
Batch model runner for univariate resource-selection models.

Fits one logistic regression (used ~ covariate) per (partition, covariate)
and stacks the tidy coefficient rows into a single table:

1) fit_single     - one covariate, one table, one coefficient record
2) fit_batch      - every covariate for one table, tagged with a model label
3) fit_partitions - every partition (pack x home-range method), concatenated
4) select_pack    - row subset for one pack

Everything is fail-fast: the first schema, partition or fit problem is raised
with partition/predictor/column context and no partial table is returned.
"""
from __future__ import annotations

import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Hashable, Iterable, List, Mapping, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)


RECORD_COLUMNS = [
    "term", "estimate", "std_error", "statistic", "p_value",
    "conf_low", "conf_high", "n_obs",
]
RESULT_COLUMNS = RECORD_COLUMNS + ["model", "partition"]

INTERCEPT = "(Intercept)"
DEFAULT_MAXITER = 100


class ModelRunError(Exception):
    """Base error; carries where in the run it happened."""

    def __init__(self, message: str, *, partition=None, predictor: str | None = None,
                 column: str | None = None):
        super().__init__(message)
        self.message = message
        self.partition = partition
        self.predictor = predictor
        self.column = column

    def __str__(self) -> str:
        ctx = []
        if self.partition is not None:
            ctx.append(f"partition={partition_name(self.partition)!r}")
        if self.predictor is not None:
            ctx.append(f"predictor={self.predictor!r}")
        if self.column is not None:
            ctx.append(f"column={self.column!r}")
        if not ctx:
            return self.message
        return f"{self.message} [{', '.join(ctx)}]"


class SchemaError(ModelRunError):
    """Missing or malformed column."""


class FitError(ModelRunError):
    """Non-convergent or degenerate regression."""


class PartitionError(ModelRunError):
    """Empty or undefined partition."""


def partition_name(key) -> str:
    if isinstance(key, tuple):
        return " / ".join(str(k) for k in key)
    return str(key)


def _unique_predictors(predictors: Iterable[str]) -> List[str]:
    preds = list(predictors)
    dupes = sorted({p for p in preds if preds.count(p) > 1})
    if dupes:
        raise ValueError(f"Duplicate predictors: {dupes}")
    return preds


def _binary_response(y: pd.Series, response: str) -> pd.Series:
    if y.dtype == bool:
        return y.astype(int)
    num = pd.to_numeric(y, errors="coerce")
    bad = num.isna() | ~num.isin([0, 1])
    if bad.any():
        examples = y[bad].unique()[:3].tolist()
        raise SchemaError(
            f"Response must be coded 0/1; found values like {examples}",
            column=response,
        )
    return num.astype(int)


def fit_single(
    table: pd.DataFrame,
    response: str,
    predictor: str,
    exponentiate: bool = True,
    conf_level: float = 0.95,
    maxiter: int = DEFAULT_MAXITER,
) -> dict:
    """
    Fit response ~ 1 + predictor (binomial, logit link) and return the
    predictor's coefficient record. The intercept is never returned.

    estimate/conf_low/conf_high are odds ratios when exponentiate=True;
    std_error, statistic and p_value stay on the log-odds scale.
    """
    for col in (response, predictor):
        if col not in table.columns:
            raise SchemaError(f"Missing column {col!r}", predictor=predictor, column=col)

    df = table[[response, predictor]].dropna()
    y = _binary_response(df[response], response)
    if y.nunique() < 2:
        raise FitError(
            f"Response has a single class across {len(df)} rows; cannot fit",
            predictor=predictor,
        )

    x = df[predictor]
    if x.dtype == bool:
        x = x.astype(float)
    if not pd.api.types.is_numeric_dtype(x):
        raise SchemaError(
            f"Predictor must be numeric, got dtype {x.dtype}",
            predictor=predictor, column=predictor,
        )

    if x.nunique() < 2:
        raise FitError(
            f"Predictor has {x.nunique()} distinct value(s) across {len(df)} rows; cannot fit",
            predictor=predictor,
        )

    X = pd.DataFrame({INTERCEPT: 1.0, predictor: x.astype(float)}, index=df.index)

    # warning filters are process-global; separation is raised by the model instead
    model = sm.Logit(y, X)
    model.raise_on_perfect_prediction = True
    try:
        res = model.fit(disp=False, maxiter=maxiter)
    except PerfectSeparationError as e:
        raise FitError(f"Perfect separation: {e}", predictor=predictor) from e
    except np.linalg.LinAlgError as e:
        raise FitError(f"Singular design matrix: {e}", predictor=predictor) from e

    if not res.mle_retvals.get("converged", True):
        raise FitError(
            f"Solver did not converge after {res.mle_retvals.get('iterations', maxiter)} iterations",
            predictor=predictor,
        )

    beta = float(res.params[predictor])
    se = float(res.bse[predictor])
    if not (np.isfinite(beta) and np.isfinite(se)):
        raise FitError(
            f"Non-finite estimate (coef={beta}, se={se})", predictor=predictor,
        )

    ci = res.conf_int(alpha=1.0 - conf_level).loc[predictor]
    lo, hi = float(ci.iloc[0]), float(ci.iloc[1])
    if exponentiate:
        beta_out, lo, hi = float(np.exp(beta)), float(np.exp(lo)), float(np.exp(hi))
    else:
        beta_out = beta

    return {
        "term": predictor,
        "estimate": beta_out,
        "std_error": se,
        "statistic": float(res.tvalues[predictor]),
        "p_value": float(res.pvalues[predictor]),
        "conf_low": lo,
        "conf_high": hi,
        "n_obs": int(res.nobs),
    }


def fit_batch(
    table: pd.DataFrame,
    response: str,
    predictors: Iterable[str],
    label: str,
    exponentiate: bool = True,
    conf_level: float = 0.95,
) -> pd.DataFrame:
    """One model per predictor, caller order kept, `label` attached as `model`."""
    preds = _unique_predictors(predictors)

    rows = []
    for p in preds:
        try:
            rec = fit_single(table, response, p, exponentiate=exponentiate, conf_level=conf_level)
        except ModelRunError as err:
            if err.predictor is None:
                err.predictor = p
            raise
        rec["model"] = label
        rows.append(rec)

    return pd.DataFrame(rows, columns=RECORD_COLUMNS + ["model"])


def check_partitions(
    tables: Mapping[Hashable, pd.DataFrame],
    labels: Mapping[Hashable, str],
    response: str,
    predictors: Iterable[str],
) -> None:
    """Raise before any model is fitted if a partition is unusable."""
    preds = list(predictors)

    extra = [k for k in labels if k not in tables]
    if extra:
        raise PartitionError("Label given for a partition with no table", partition=extra[0])

    for key, df in tables.items():
        if key not in labels:
            raise PartitionError("No label defined for partition", partition=key)
        if df is None or len(df) == 0:
            raise PartitionError("Partition has no rows", partition=key)
        for col in [response] + preds:
            if col not in df.columns:
                raise SchemaError(f"Missing column {col!r}", partition=key, column=col)


def fit_partitions(
    tables: Mapping[Hashable, pd.DataFrame],
    labels: Mapping[Hashable, str],
    response: str,
    predictors: Iterable[str],
    exponentiate: bool = True,
    conf_level: float = 0.95,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Run fit_batch for every partition and concatenate.

    Output has len(tables) * len(predictors) rows: partition order first,
    then predictor order. With n_jobs > 1 partitions are fitted on a thread
    pool; order and the raised error (earliest failing partition) match the
    serial run.
    """
    preds = _unique_predictors(predictors)
    check_partitions(tables, labels, response, preds)

    def _one(key) -> pd.DataFrame:
        try:
            out = fit_batch(
                tables[key], response, preds, labels[key],
                exponentiate=exponentiate, conf_level=conf_level,
            )
        except ModelRunError as err:
            err.partition = key
            raise
        out["partition"] = partition_name(key)
        return out

    keys = list(tables)
    # entered once on the calling thread and left only after the pool joins;
    # solver failures are reported through FitError, not warnings
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", HessianInversionWarning)
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        if n_jobs > 1 and len(keys) > 1:
            with ThreadPoolExecutor(max_workers=n_jobs) as pool:
                futures = [pool.submit(_one, k) for k in keys]
                frames = [f.result() for f in futures]
        else:
            frames = [_one(k) for k in keys]

    if not frames:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def select_pack(table: pd.DataFrame, pack: str, pack_column: str = "pack") -> pd.DataFrame:
    if pack_column not in table.columns:
        raise SchemaError(f"Missing column {pack_column!r}", column=pack_column)
    return table.loc[table[pack_column] == pack].copy()


Panel = Tuple[Dict[Tuple[str, str], pd.DataFrame], Dict[Tuple[str, str], str]]


def build_panels(
    tables_by_method: Mapping[str, pd.DataFrame],
    packs: Iterable[str],
    pack_column: str = "pack",
    all_packs_label: str = "All packs",
) -> Dict[str, Panel]:
    """
    Partition maps for the report figure, keyed by panel title:
    all packs first, then one panel per pack. Each panel crosses its rows
    with every home-range method; the method name is the attached label.
    """
    panels: Dict[str, Panel] = {}

    tables = {(all_packs_label, m): df for m, df in tables_by_method.items()}
    labels = {(all_packs_label, m): m for m in tables_by_method}
    panels[all_packs_label] = (tables, labels)

    for pack in packs:
        tables = {(pack, m): select_pack(df, pack, pack_column) for m, df in tables_by_method.items()}
        labels = {(pack, m): m for m in tables_by_method}
        panels[pack] = (tables, labels)

    return panels


def run_panels(
    panels: Mapping[str, Panel],
    response: str,
    predictors: Iterable[str],
    exponentiate: bool = True,
    conf_level: float = 0.95,
    n_jobs: int = 1,
) -> Dict[str, pd.DataFrame]:
    preds = list(predictors)
    return {
        title: fit_partitions(
            tables, labels, response, preds,
            exponentiate=exponentiate, conf_level=conf_level, n_jobs=n_jobs,
        )
        for title, (tables, labels) in panels.items()
    }
