import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

from ivc_data import logger, COUNT_COL, DATE_COL, TREATMENT_COL
from ivc_models import ModelFit, pretty_term


def _save(fig, outdir, filename):
    path = os.path.join(outdir, filename)
    fig.savefig(path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"[plot] saved {filename}")
    return path


def plot_diagnostics(fit: ModelFit, outdir: str):
    """Residuals vs fitted, normal Q-Q, scale-location and residuals vs leverage for a GLM fit"""
    if fit.kind != "glm":
        return None
    res = fit.result
    infl = res.get_influence()
    h = np.asarray(infl.hat_matrix_diag)
    cooks = np.asarray(infl.cooks_distance[0])
    mu = np.asarray(res.fittedvalues)
    eta = np.log(mu)
    dev = np.asarray(res.resid_deviance)
    pearson = np.asarray(res.resid_pearson)
    denom = np.sqrt(np.clip(1 - h, 1e-12, None))
    std_dev = dev / denom
    std_pearson = pearson / denom

    fig, axes = plt.subplots(2, 2, figsize=(11, 9))

    ax = axes[0, 0]
    ax.scatter(eta, dev, s=10, alpha=0.6)
    ax.axhline(0, color="0.6", linestyle="--", linewidth=1)
    ax.set_xlabel("Predicted values (log scale)")
    ax.set_ylabel("Deviance residuals")
    ax.set_title("Residuals vs Fitted", fontweight="bold")

    ax = axes[0, 1]
    (osm, osr), (slope, intercept, _) = stats.probplot(std_dev, dist="norm")
    ax.scatter(osm, osr, s=10, alpha=0.6)
    ax.plot(osm, slope * osm + intercept, color="#b2182b", linewidth=1)
    ax.set_xlabel("Theoretical quantiles")
    ax.set_ylabel("Std. deviance residuals")
    ax.set_title("Normal Q-Q", fontweight="bold")

    ax = axes[1, 0]
    ax.scatter(eta, np.sqrt(np.abs(std_dev)), s=10, alpha=0.6)
    ax.set_xlabel("Predicted values (log scale)")
    ax.set_ylabel("sqrt(|Std. deviance residuals|)")
    ax.set_title("Scale-Location", fontweight="bold")

    ax = axes[1, 1]
    sc = ax.scatter(h, std_pearson, c=cooks, s=12, cmap="viridis", alpha=0.8)
    fig.colorbar(sc, ax=ax, label="Cook's distance")
    ax.axhline(0, color="0.6", linestyle="--", linewidth=1)
    for i in np.argsort(cooks)[-3:]:
        ax.annotate(str(fit.endog.index[i]), (h[i], std_pearson[i]), fontsize=7, color="#333333")
    ax.set_xlabel("Leverage")
    ax.set_ylabel("Std. Pearson residuals")
    ax.set_title("Residuals vs Leverage", fontweight="bold")

    fig.suptitle(f"Diagnostics: {fit.name}", fontsize=13, fontweight="bold")
    fig.tight_layout(rect=[0, 0, 1, 0.97])
    return _save(fig, outdir, f"diagnostics_{fit.name}.png")


def plot_time_series(frame: pd.DataFrame, outdir: str):
    """Mean raw count per sampling date, one line per treatment"""
    daily = frame.groupby([DATE_COL, TREATMENT_COL], observed=True)[COUNT_COL].agg(["mean", "sem"]).reset_index()
    fig, ax = plt.subplots(figsize=(10, 5.5))
    for trt, d in daily.groupby(TREATMENT_COL, observed=True):
        d = d.sort_values(DATE_COL)
        ax.errorbar(d[DATE_COL], d["mean"], yerr=d["sem"].fillna(0), marker="o", capsize=3,
                    linewidth=1.5, markersize=4, label=str(trt))
    ax.set_xlabel("Date")
    ax.set_ylabel(f"Mean {COUNT_COL} (± SE)")
    ax.set_title("Insect counts over time", fontweight="bold")
    ax.grid(axis="y", linestyle=":", alpha=0.35)
    ax.legend(title=TREATMENT_COL, frameon=True, fontsize=8)
    fig.autofmt_xdate()
    return _save(fig, outdir, "raw_counts_timeseries.png")


def plot_predictions(pred: pd.DataFrame, frame: pd.DataFrame, outdir: str, species_col: str = None):
    """Predicted count curves with 95% bands over observed daily means"""
    panels = [(None, pred)]
    if species_col and species_col in pred.columns:
        panels = list(pred.groupby(species_col, sort=True))
    n = len(panels)
    ncol = min(3, n)
    nrow = int(np.ceil(n / ncol))
    fig, axes = plt.subplots(nrow, ncol, figsize=(5.5 * ncol, 4.2 * nrow), sharex=True, squeeze=False)

    for ax, (sp, d) in zip(axes.flat, panels):
        obs = frame if sp is None else frame[frame[species_col].astype(str) == sp]
        obs_daily = obs.groupby([DATE_COL, TREATMENT_COL], observed=True)[COUNT_COL].mean().reset_index()
        for i, (trt, g) in enumerate(d.groupby(TREATMENT_COL, sort=True)):
            color = f"C{i}"
            g = g.sort_values(DATE_COL)
            ax.plot(g[DATE_COL], g["predicted"], color=color, linewidth=1.8, label=str(trt))
            ax.fill_between(g[DATE_COL], g["pred_low"], g["pred_high"], color=color, alpha=0.15)
            o = obs_daily[obs_daily[TREATMENT_COL].astype(str) == str(trt)]
            ax.scatter(o[DATE_COL], o[COUNT_COL], color=color, s=12, alpha=0.7)
        ax.set_title(str(sp) if sp is not None else "All", fontsize=10, fontweight="bold")
        ax.set_ylabel(f"Predicted {COUNT_COL}")
        ax.grid(axis="y", linestyle=":", alpha=0.3)
    for ax in list(axes.flat)[n:]:
        ax.set_visible(False)

    handles, labels = axes.flat[0].get_legend_handles_labels()
    fig.legend(handles, labels, title=TREATMENT_COL, loc="lower center", ncol=max(1, len(labels)),
               frameon=True, fontsize=8, bbox_to_anchor=(0.5, -0.03))
    model = pred["model"].iloc[0] if "model" in pred and len(pred) else ""
    fig.suptitle(f"Model predictions ({model})", fontsize=13, fontweight="bold")
    fig.autofmt_xdate()
    fig.tight_layout(rect=[0, 0.03, 1, 0.97])
    return _save(fig, outdir, "predictions.png")


def plot_coefficients(fit: ModelFit, outdir: str):
    """Rate ratios with 95% CI for estimable non-intercept terms"""
    d = fit.coefs[fit.coefs["estimable"] & (fit.coefs.index != "Intercept")].copy()
    if d.empty:
        return None
    d = d.sort_values("RR").reset_index(drop=True)
    fig, ax = plt.subplots(figsize=(9.5, max(4.0, 0.45 * len(d))))
    y = np.arange(len(d))
    ax.errorbar(d["RR"], y, xerr=[d["RR"] - d["RR_low"], d["RR_high"] - d["RR"]], fmt="o", capsize=5,
                elinewidth=1.8, markersize=5)
    ax.axvline(1, color="0.6", linestyle="--", linewidth=1)
    ax.set_yticks(y)
    ax.set_yticklabels([pretty_term(t) for t in d["term"]], fontsize=8)
    ax.set_xscale("log")
    ax.set_xlabel("Rate ratio (log scale)")
    ax.set_title(f"Effect sizes: {fit.name}", fontweight="bold")
    ax.grid(axis="x", linestyle=":", alpha=0.35)
    return _save(fig, outdir, f"coefficients_{fit.name}.png")
