import warnings
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from wolf_rsf import models
from wolf_rsf.models import (
    FitError, PartitionError, SchemaError, RESULT_COLUMNS,
    build_panels, fit_batch, fit_partitions, fit_single, select_pack,
)


def _frame(n=300, seed=0, predictors=("Deer", "Elk"), pack=None):
    rng = np.random.default_rng(seed)
    df = pd.DataFrame({p: rng.normal(size=n) for p in predictors})
    eta = -0.3 + 0.8 * df[predictors[0]] - 0.4 * df[predictors[-1]]
    df["used"] = (rng.random(n) < 1 / (1 + np.exp(-eta))).astype(int)
    if pack is not None:
        df["pack"] = pack
    return df


def test_fit_single_returns_predictor_record_only():
    rec = fit_single(_frame(), "used", "Deer")
    assert rec["term"] == "Deer"
    assert rec["estimate"] > 1.0  # positive simulated effect -> OR above 1
    assert rec["conf_low"] < rec["estimate"] < rec["conf_high"]
    assert rec["n_obs"] == 300
    assert set(rec) == set(models.RECORD_COLUMNS)


def test_exponentiate_only_changes_scale_of_estimate_and_ci():
    df = _frame()
    odds = fit_single(df, "used", "Elk", exponentiate=True)
    logit = fit_single(df, "used", "Elk", exponentiate=False)
    assert odds["estimate"] == pytest.approx(np.exp(logit["estimate"]))
    assert odds["conf_high"] == pytest.approx(np.exp(logit["conf_high"]))
    assert odds["std_error"] == pytest.approx(logit["std_error"])


def test_missing_rows_are_dropped_before_fit():
    df = _frame()
    df.loc[:9, "Deer"] = np.nan
    assert fit_single(df, "used", "Deer")["n_obs"] == 290


def test_constant_predictor_is_fit_error():
    df = _frame()
    df["Deer"] = 1.0
    with pytest.raises(FitError) as ei:
        fit_single(df, "used", "Deer")
    assert ei.value.predictor == "Deer"


def test_perfect_separation_is_fit_error():
    df = _frame()
    df["used"] = (df["Deer"] > 0).astype(int)
    with pytest.raises(FitError):
        fit_single(df, "used", "Deer")


def test_non_binary_response_is_schema_error():
    df = _frame()
    df.loc[0, "used"] = 2
    with pytest.raises(SchemaError) as ei:
        fit_single(df, "used", "Deer")
    assert ei.value.column == "used"


def test_missing_predictor_is_schema_error():
    with pytest.raises(SchemaError) as ei:
        fit_single(_frame(), "used", "Moose")
    assert ei.value.column == "Moose"


def test_batch_keeps_caller_order_and_label():
    df = _frame(predictors=("Deer", "Elk", "Moose"))
    out = fit_batch(df, "used", ["Moose", "Deer", "Elk"], label="KDE")
    assert out["term"].tolist() == ["Moose", "Deer", "Elk"]
    assert (out["model"] == "KDE").all()


def test_batch_rejects_duplicate_predictors():
    with pytest.raises(ValueError):
        fit_batch(_frame(), "used", ["Deer", "Elk", "Deer"], label="KDE")


def test_batch_fails_whole_on_one_bad_predictor():
    df = _frame()
    df["Elk"] = 0.0
    with pytest.raises(FitError) as ei:
        fit_batch(df, "used", ["Deer", "Elk"], label="MCP")
    assert ei.value.predictor == "Elk"


def test_partitions_two_packs_two_predictors():
    tables = {"PackA": _frame(seed=1), "PackB": _frame(seed=2)}
    labels = {"PackA": "PackA", "PackB": "PackB"}
    out = fit_partitions(tables, labels, "used", ["Deer", "Elk"])

    assert list(out.columns) == RESULT_COLUMNS
    assert list(zip(out["partition"], out["term"])) == [
        ("PackA", "Deer"), ("PackA", "Elk"), ("PackB", "Deer"), ("PackB", "Elk"),
    ]
    assert (out["model"] == out["partition"]).all()


def test_missing_column_in_one_partition_names_partition_and_column():
    tables = {"PackA": _frame(seed=1), "PackB": _frame(seed=2).drop(columns=["Elk"])}
    labels = {"PackA": "PackA", "PackB": "PackB"}
    with pytest.raises(SchemaError) as ei:
        fit_partitions(tables, labels, "used", ["Deer", "Elk"])
    assert ei.value.partition == "PackB"
    assert ei.value.column == "Elk"
    assert "PackB" in str(ei.value) and "Elk" in str(ei.value)


def test_empty_partition_fails_before_any_fit(monkeypatch):
    def _boom(*a, **k):
        raise AssertionError("fit attempted")

    monkeypatch.setattr(models, "fit_single", _boom)
    tables = {"A": _frame(), "B": _frame().iloc[0:0]}
    with pytest.raises(PartitionError) as ei:
        fit_partitions(tables, {"A": "KDE", "B": "MCP"}, "used", ["Deer"])
    assert ei.value.partition == "B"


def test_partition_without_label_is_partition_error():
    with pytest.raises(PartitionError):
        fit_partitions({"A": _frame()}, {}, "used", ["Deer"])


def test_fit_error_is_tagged_with_partition():
    bad = _frame(seed=3)
    bad["Deer"] = 5.0
    tables = {("Red Deer", "KDE"): _frame(seed=1), ("Red Deer", "MCP"): bad}
    labels = {k: k[1] for k in tables}
    with pytest.raises(FitError) as ei:
        fit_partitions(tables, labels, "used", ["Deer", "Elk"])
    assert ei.value.partition == ("Red Deer", "MCP")
    assert "Red Deer / MCP" in str(ei.value)


def test_row_count_is_partitions_times_predictors():
    preds = ["Deer", "Elk", "Moose"]
    tables = {i: _frame(seed=i, predictors=tuple(preds)) for i in range(4)}
    out = fit_partitions(tables, {i: f"m{i}" for i in tables}, "used", preds)
    assert len(out) == 4 * 3


def test_rerun_and_threaded_run_are_identical():
    tables = {"A": _frame(seed=1), "B": _frame(seed=2), "C": _frame(seed=3)}
    labels = {k: "KDE" for k in tables}
    first = fit_partitions(tables, labels, "used", ["Deer", "Elk"])
    again = fit_partitions(tables, labels, "used", ["Deer", "Elk"])
    threaded = fit_partitions(tables, labels, "used", ["Deer", "Elk"], n_jobs=3)
    pd.testing.assert_frame_equal(first, again)
    pd.testing.assert_frame_equal(first, threaded)


def test_select_pack_keeps_columns_and_may_be_empty():
    df = pd.concat([_frame(n=50, pack="Red Deer"), _frame(n=30, pack="Bow Valley")], ignore_index=True)
    rd = select_pack(df, "Red Deer")
    assert len(rd) == 50
    assert list(rd.columns) == list(df.columns)
    assert select_pack(df, "Cascade").empty


def test_build_panels_crosses_packs_with_methods():
    df = pd.concat([_frame(n=50, pack="Red Deer"), _frame(n=30, pack="Bow Valley")], ignore_index=True)
    panels = build_panels({"KDE": df, "MCP": df}, ["Red Deer", "Bow Valley"])
    assert list(panels) == ["All packs", "Red Deer", "Bow Valley"]

    tables, labels = panels["Bow Valley"]
    assert list(tables) == [("Bow Valley", "KDE"), ("Bow Valley", "MCP")]
    assert labels[("Bow Valley", "MCP")] == "MCP"
    assert len(tables[("Bow Valley", "KDE")]) == 30


def test_too_few_iterations_is_fit_error():
    with pytest.raises(FitError, match="did not converge") as ei:
        fit_single(_frame(), "used", "Deer", maxiter=1)
    assert ei.value.predictor == "Deer"


def test_singular_hessian_is_fit_error(monkeypatch):
    def _singular(self, *a, **k):
        raise np.linalg.LinAlgError("Singular matrix")

    monkeypatch.setattr(models.sm.Logit, "fit", _singular)
    with pytest.raises(FitError, match="Singular design matrix"):
        fit_single(_frame(), "used", "Deer")


def test_non_finite_standard_error_is_fit_error(monkeypatch):
    def _blown_up(self, *a, **k):
        return SimpleNamespace(
            mle_retvals={"converged": True},
            params=pd.Series({models.INTERCEPT: 0.1, "Deer": 0.4}),
            bse=pd.Series({models.INTERCEPT: 0.1, "Deer": np.nan}),
        )

    monkeypatch.setattr(models.sm.Logit, "fit", _blown_up)
    with pytest.raises(FitError, match="Non-finite"):
        fit_single(_frame(), "used", "Deer")


def test_threaded_run_raises_earliest_failing_partition():
    tables = {k: _frame(seed=i) for i, k in enumerate("ABCD")}
    tables["B"]["Elk"] = 2.0
    tables["D"]["Deer"] = 2.0
    with pytest.raises(FitError) as ei:
        fit_partitions(tables, {k: "KDE" for k in tables}, "used", ["Deer", "Elk"], n_jobs=4)
    assert ei.value.partition == "B"
    assert ei.value.predictor == "Elk"


def test_threaded_run_leaves_warning_filters_alone():
    tables = {i: _frame(seed=i) for i in range(16)}
    sep = _frame(seed=99)
    sep["used"] = (sep["Deer"] > 0).astype(int)
    before = list(warnings.filters)

    for _ in range(5):
        fit_partitions(tables, {k: "KDE" for k in tables}, "used", ["Deer", "Elk"], n_jobs=8)
        assert list(warnings.filters) == before

    with pytest.raises(FitError) as ei:
        fit_partitions({**tables, "sep": sep}, {k: "KDE" for k in [*tables, "sep"]},
                       "used", ["Deer"], n_jobs=8)
    assert ei.value.partition == "sep"
    assert list(warnings.filters) == before
