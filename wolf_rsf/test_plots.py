import pandas as pd
import matplotlib.pyplot as plt

from wolf_rsf.plots import caterpillar_plot, compose_figure, save_figure


def _results(partition):
    rows = []
    for model, shift in (("KDE", 1.0), ("MCP", 1.2)):
        for term, est in (("deer_w2", 1.5), ("Elevation2", 0.9)):
            rows.append({
                "term": term, "estimate": est * shift,
                "conf_low": est * shift * 0.8, "conf_high": est * shift * 1.25,
                "model": model, "partition": f"{partition} / {model}",
            })
    return pd.DataFrame(rows)


def test_caterpillar_rows_follow_term_order_with_labels():
    fig, ax = plt.subplots()
    caterpillar_plot(ax, _results("Red Deer"), term_labels={"deer_w2": "Deer"})
    assert [t.get_text() for t in ax.get_yticklabels()] == ["Deer", "Elevation2"]
    assert ax.get_xscale() == "log"
    labels = ax.get_legend_handles_labels()[1]
    assert labels == ["KDE", "MCP"]
    plt.close(fig)


def test_log_odds_panel_is_linear():
    fig, ax = plt.subplots()
    caterpillar_plot(ax, _results("Red Deer"), exponentiated=False)
    assert ax.get_xscale() == "linear"
    plt.close(fig)


def test_compose_three_stacked_panels(tmp_path):
    panels = {t: _results(t) for t in ("All packs", "Red Deer", "Bow Valley")}
    fig = compose_figure(panels)
    axes = fig.get_axes()
    assert len(axes) == 3
    assert [ax.get_title(loc="left") for ax in axes] == [
        "(a) All packs", "(b) Red Deer", "(c) Bow Valley",
    ]

    path = save_figure(fig, tmp_path / "out" / "caterpillar.png", dpi=50)
    assert path.exists() and path.stat().st_size > 0


def test_axis_label_follows_conf_level():
    panels = {t: _results(t) for t in ("All packs", "Red Deer")}
    fig = compose_figure(panels, conf_level=0.9)
    assert all(ax.get_xlabel() == "Odds ratio (90% CI)" for ax in fig.get_axes())
    plt.close(fig)

    fig, ax = plt.subplots()
    caterpillar_plot(ax, _results("Red Deer"), exponentiated=False, conf_level=0.8)
    assert ax.get_xlabel() == "Coefficient (log-odds, 80% CI)"
    plt.close(fig)
