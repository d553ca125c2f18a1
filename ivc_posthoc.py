from itertools import combinations, product

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from scipy.stats import studentized_range
from statsmodels.stats.multitest import multipletests

from ivc_data import logger, BLOCK_COL, TREATMENT_COL, DATE_COL
from ivc_models import DAY_COL, ModelFit

N_GRID_DATES = 30
SPECIES_COL = "Insect.type"


def design_rows(fit: ModelFit, grid: pd.DataFrame) -> pd.DataFrame:
    """Model-matrix rows (every design column) for new data"""
    (X,) = patsy.build_design_matrices([fit.design_info], grid, return_type="dataframe")
    X.index = grid.index
    return X

def estimable_rows(fit: ModelFit, L: pd.DataFrame, tol: float = 1e-8) -> np.ndarray:
    """True where a linear function lies in the row space of the full model matrix"""
    if not fit.aliased:
        return np.ones(len(L), dtype=bool)
    X = np.asarray(fit.exog_full, dtype=float)
    _, s, vt = np.linalg.svd(X, full_matrices=False)
    rank = int(np.sum(s > tol * s[0]))
    null = vt[rank:].T
    proj = np.abs(np.asarray(L, dtype=float) @ null)
    scale = np.maximum(1.0, np.abs(np.asarray(L, dtype=float)).max(axis=1))
    return proj.max(axis=1) <= 1e-6 * scale

def linear_estimates(fit: ModelFit, L: pd.DataFrame):
    """Estimate and standard error of each row of L on the link scale"""
    ok = estimable_rows(fit, L)
    Le = L[fit.estimable].values
    beta = fit.params()[fit.estimable].values
    V = fit.cov().loc[fit.estimable, fit.estimable].values
    est = Le @ beta
    se = np.sqrt(np.einsum("ij,jk,ik->i", Le, V, Le))
    est[~ok] = np.nan
    se[~ok] = np.nan
    return est, se


# ---------------------------------------------------------------- marginal means

def reference_grid(fit: ModelFit, factor: str = TREATMENT_COL) -> pd.DataFrame:
    """Every level of the model's factors crossed, numeric day held at its mean"""
    frame = fit.data.frame
    levels = {f: [str(v) for v in frame[f].cat.categories] for f in fit.factors}
    if factor not in levels:
        raise ValueError(f"{factor!r} is not a factor of {fit.name}")
    names = list(levels)
    grid = pd.DataFrame(list(product(*[levels[n] for n in names])), columns=names)
    for col in (TREATMENT_COL, BLOCK_COL):
        if col not in grid:
            grid[col] = fit.data.coding.references[col]
    grid[DAY_COL] = float(frame[DAY_COL].mean())
    return grid

def emmeans(fit: ModelFit, factor: str = TREATMENT_COL):
    """Marginal means of factor levels, equally weighted over the other factors"""
    grid = reference_grid(fit, factor)
    X = design_rows(fit, grid)
    L = X.groupby(grid[factor].values, sort=False).mean()
    est, se = linear_estimates(fit, L)
    out = pd.DataFrame({factor: L.index, "emmean": est, "SE": se})
    out["rate"] = np.exp(out["emmean"])
    out["rate_low"] = np.exp(out["emmean"] - stats.norm.ppf(0.975) * out["SE"])
    out["rate_high"] = np.exp(out["emmean"] + stats.norm.ppf(0.975) * out["SE"])
    return out, L

def emmeans_pairwise(fit: ModelFit, factor: str = TREATMENT_COL, adjust: str = "tukey", alpha: float = 0.05):
    """All pairwise level comparisons; differences of log means reported as rate ratios.

    adjust is "tukey" (studentized range, asymptotic df), "none", or any
    method accepted by statsmodels' multipletests (holm, bonferroni, fdr_bh, ...).
    """
    means, L = emmeans(fit, factor)
    pairs = list(combinations(L.index, 2))
    if not pairs:
        logger.warning(f"[emmeans] {fit.name}: fewer than two {factor} levels, nothing to compare")
        return means, pd.DataFrame()

    D = pd.DataFrame([L.loc[a] - L.loc[b] for a, b in pairs], columns=L.columns)
    est, se = linear_estimates(fit, D)
    z = est / se
    p_raw = 2 * stats.norm.sf(np.abs(z))
    ok = np.isfinite(p_raw)
    k = len(L)

    p_adj = np.full(len(pairs), np.nan)
    if adjust == "tukey":
        p_adj[ok] = studentized_range.sf(np.abs(z[ok]) * np.sqrt(2), k, np.inf) if k > 2 else p_raw[ok]
        crit = studentized_range.ppf(1 - alpha, k, np.inf) / np.sqrt(2) if k > 2 else stats.norm.ppf(1 - alpha / 2)
    elif adjust == "none":
        p_adj = p_raw
        crit = stats.norm.ppf(1 - alpha / 2)
    else:
        if ok.any():
            p_adj[ok] = multipletests(p_raw[ok], alpha=alpha, method=adjust)[1]
        m = int(ok.sum()) or 1
        crit = stats.norm.ppf(1 - alpha / (2 * m)) if adjust == "bonferroni" else stats.norm.ppf(1 - alpha / 2)

    out = pd.DataFrame({
        "contrast": [f"{a} / {b}" for a, b in pairs],
        "estimate": est, "SE": se, "z": z, "p_raw": p_raw, "p_adj": p_adj,
    })
    out["ratio"] = np.exp(out["estimate"])
    out["ratio_low"] = np.exp(out["estimate"] - crit * out["SE"])
    out["ratio_high"] = np.exp(out["estimate"] + crit * out["SE"])
    out["adjust"] = adjust
    logger.info(f"[emmeans] {fit.name}: {len(out)} {factor} comparisons ({adjust}), "
                f"{int((out['p_adj'] < alpha).sum())} with p_adj < {alpha}")
    return means, out


# ---------------------------------------------------------------- prediction

def prediction_grid(fit: ModelFit, n_dates: int = N_GRID_DATES, species_col: str = SPECIES_COL) -> pd.DataFrame:
    """Treatment x equally spaced dates x species, Block at its reference level"""
    frame = fit.data.frame
    treatments = [str(v) for v in frame[TREATMENT_COL].cat.categories]
    dates = pd.date_range(frame[DATE_COL].min(), frame[DATE_COL].max(), periods=n_dates)
    if species_col in frame.columns and frame[species_col].notna().any():
        species = sorted(frame[species_col].dropna().astype(str).unique())
        grid = pd.DataFrame(list(product(treatments, dates, species)), columns=[TREATMENT_COL, DATE_COL, species_col])
    else:
        logger.info(f"[predict] no {species_col!r} values; grid is Treatment x Date only")
        grid = pd.DataFrame(list(product(treatments, dates)), columns=[TREATMENT_COL, DATE_COL])
    grid[BLOCK_COL] = fit.data.coding.references[BLOCK_COL]
    grid[DAY_COL] = (grid[DATE_COL] - fit.data.origin) / pd.Timedelta(days=1)
    return grid

def predict_grid(fit: ModelFit, grid: pd.DataFrame, level: float = 0.95) -> pd.DataFrame:
    """Response-scale predictions; the mixed model predicts at a random intercept of zero"""
    est, se = linear_estimates(fit, design_rows(fit, grid))
    zc = stats.norm.ppf(0.5 + level / 2)
    out = grid.copy()
    out["eta"] = est
    out["predicted"] = np.exp(est)
    out["pred_low"] = np.exp(est - zc * se)
    out["pred_high"] = np.exp(est + zc * se)
    out["model"] = fit.name
    logger.info(f"[predict] {fit.name}: {len(out)} grid rows")
    return out
