import re, warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import stats
from statsmodels.discrete.discrete_model import NegativeBinomial
from statsmodels.genmod.bayes_mixed_glm import PoissonBayesMixedGLM
# the Treatment column would shadow patsy's contrast of the same name in formulas
from patsy import Treatment as Reference

from ivc_data import logger, IvcError, BLOCK_COL, TREATMENT_COL, COUNT_COL, DATE_COL

DAY_COL = "day"
DISPERSION_THRESHOLD = 1.2
ALIAS_TOL = 1e-7
GRAD_TOL = 1e-3
Z_95 = stats.norm.ppf(0.975)

POISSON_BLOCK = "poisson_block"
POISSON_BLOCK_X_TRT = "poisson_block_x_trt"
MIXED_POISSON = "mixed_poisson"
NEGBIN = "negbin"

# {y}, {trt} and {blk} are filled in from the response and the factor coding
FORMULAS = {
    POISSON_BLOCK: "{y} ~ {trt} * day + {blk}",
    POISSON_BLOCK_X_TRT: "{y} ~ {trt} * day + {trt} * {blk}",
    MIXED_POISSON: "{y} ~ {trt} * day",
    NEGBIN: "{y} ~ {trt} * day + {blk}",
}

_CODED = re.compile(r"C\((\w+), \w+\([^()]*\)\)")


class NoFinalModelError(IvcError):
    pass


def pretty_term(name: str) -> str:
    """C(Treatment, Sum(omit='Control'))[S.Bee] -> Treatment[S.Bee]"""
    return _CODED.sub(r"\1", name)


@dataclass
class FactorCoding:
    """Contrast coding and the reference level of every factor in the models"""
    contrast: str = "sum"
    references: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.contrast not in ("sum", "treatment"):
            raise ValueError(f"contrast must be 'sum' or 'treatment', got {self.contrast!r}")

    def term(self, col: str) -> str:
        ref = self.references[col]
        if self.contrast == "sum":
            return f"C({col}, Sum(omit={ref!r}))"
        return f"C({col}, Reference(reference={ref!r}))"


@dataclass
class ModelData:
    frame: pd.DataFrame
    origin: pd.Timestamp
    coding: FactorCoding

    def formula(self, name: str) -> str:
        return FORMULAS[name].format(y=COUNT_COL, trt=self.coding.term(TREATMENT_COL),
                                     blk=self.coding.term(BLOCK_COL))


def resolve_references(frame: pd.DataFrame, block_ref: Optional[str] = None,
                       treatment_ref: Optional[str] = None) -> Dict[str, str]:
    refs = {}
    for col, ref in ((BLOCK_COL, block_ref), (TREATMENT_COL, treatment_ref)):
        levels = [str(v) for v in frame[col].cat.categories]
        if ref is None:
            ref = levels[0]
            logger.info(f"[factor] {col}: reference level {ref!r} (first in sort order of {levels})")
        elif str(ref) not in levels:
            raise ValueError(f"Reference level {ref!r} is not a level of {col}: {levels}")
        else:
            logger.info(f"[factor] {col}: reference level {ref!r} (configured)")
        refs[col] = str(ref)
    return refs

def prepare_model_data(cleaned: pd.DataFrame, contrast: str = "sum", block_ref: Optional[str] = None,
                       treatment_ref: Optional[str] = None) -> ModelData:
    """Adds the numeric day covariate (days since the first observed date)"""
    frame = cleaned.copy()
    origin = frame[DATE_COL].min()
    frame[DAY_COL] = (frame[DATE_COL] - origin) / pd.Timedelta(days=1)
    coding = FactorCoding(contrast, resolve_references(frame, block_ref, treatment_ref))
    return ModelData(frame.reset_index(drop=True), origin, coding)


@dataclass
class ModelFit:
    name: str
    family: str
    kind: str
    formula: str
    result: Any
    data: ModelData
    design_info: Any
    endog: pd.Series
    exog_full: pd.DataFrame
    estimable: List[str]
    aliased: List[str]
    factors: List[str]
    coefs: pd.DataFrame
    converged: bool = True
    glm_family: Any = None
    deviance: float = np.nan
    null_deviance: float = np.nan
    df_resid: float = np.nan
    aic: float = np.nan
    bic: float = np.nan
    dispersion: float = np.nan
    fitted_mu: Optional[np.ndarray] = None
    notes: List[str] = field(default_factory=list)

    @property
    def nobs(self):
        return len(self.endog)

    @property
    def exog(self):
        return self.exog_full[self.estimable]

    def params(self) -> pd.Series:
        if self.kind == "mixed":
            return pd.Series(self.result.fe_mean, index=self.estimable)
        return self.result.params

    def cov(self) -> pd.DataFrame:
        if self.kind == "mixed":
            cp = np.asarray(self.result.cov_params())
            if cp.ndim == 1:
                cp = np.diag(cp)
            k = len(self.estimable)
            return pd.DataFrame(cp[:k, :k], index=self.estimable, columns=self.estimable)
        return self.result.cov_params()

    def term_columns(self) -> Dict[str, List[str]]:
        cols = list(self.exog_full.columns)
        return {term: cols[sl] for term, sl in self.design_info.term_name_slices.items()}


def build_design(formula: str, frame: pd.DataFrame):
    y, X = patsy.dmatrices(formula, frame, return_type="dataframe", NA_action="raise")
    return y.iloc[:, 0], X

def find_aliased(X: pd.DataFrame, tol: float = ALIAS_TOL):
    """Columns that are linear combinations of earlier columns, in column order"""
    arr = np.asarray(X, dtype=float)
    norms = np.linalg.norm(arr, axis=0)
    keep, aliased = [], []
    for j, col in enumerate(X.columns):
        if norms[j] == 0:
            aliased.append(col); continue
        cand = arr[:, keep + [j]] / norms[keep + [j]]
        s = np.linalg.svd(cand, compute_uv=False)
        if s[-1] > tol * s[0]:
            keep.append(j)
        else:
            aliased.append(col)
    return [X.columns[j] for j in keep], aliased

def coef_table(est, se, columns, aliased):
    """Coefficient table over every design column; aliased columns are marked not estimable"""
    est = pd.Series(est, dtype=float)
    se = pd.Series(se, dtype=float)
    tbl = pd.DataFrame({"Coef.": est, "Std.Err.": se})
    tbl["z"] = tbl["Coef."] / tbl["Std.Err."]
    tbl["P>|z|"] = 2 * stats.norm.sf(np.abs(tbl["z"]))
    tbl["[0.025"] = tbl["Coef."] - Z_95 * tbl["Std.Err."]
    tbl["0.975]"] = tbl["Coef."] + Z_95 * tbl["Std.Err."]
    tbl = tbl.reindex(list(columns))
    tbl["RR"] = np.exp(tbl["Coef."])
    tbl["RR_low"] = np.exp(tbl["[0.025"])
    tbl["RR_high"] = np.exp(tbl["0.975]"])
    tbl["estimable"] = ~tbl.index.isin(aliased)
    tbl["term"] = [pretty_term(c) for c in tbl.index]
    return tbl


# ---------------------------------------------------------------- GLM fits

def fit_glm(md: ModelData, name: str, family=None, family_label="poisson") -> ModelFit:
    formula = md.formula(name)
    family = family if family is not None else sm.families.Poisson()
    y, X = build_design(formula, md.frame)
    estimable, aliased = find_aliased(X)
    if aliased:
        logger.warning(f"[fit] {name}: {len(aliased)} aliased coefficient(s) not estimable: "
                       f"{[pretty_term(c) for c in aliased]}")

    result = sm.GLM(y, X[estimable], family=family).fit()

    fit = ModelFit(
        name=name, family=family_label, kind="glm", formula=formula, result=result, data=md,
        design_info=X.design_info, endog=y, exog_full=X, estimable=estimable, aliased=aliased,
        factors=[TREATMENT_COL, BLOCK_COL],
        coefs=coef_table(result.params, result.bse, X.columns, aliased),
        converged=bool(result.converged), glm_family=family,
        deviance=float(result.deviance), null_deviance=float(result.null_deviance),
        df_resid=float(result.df_resid), aic=float(result.aic), bic=float(result.bic_llf),
        fitted_mu=np.asarray(result.fittedvalues),
    )
    fit.dispersion = dispersion(fit)
    if aliased:
        fit.notes.append(f"{len(aliased)} coefficient(s) not estimable (aliased)")
    if not fit.converged:
        fit.notes.append("IRLS did not converge")
        logger.warning(f"[fit] {name}: IRLS did not converge")
    logger.info(f"[fit] {name}: n={fit.nobs} k={len(estimable)} deviance={fit.deviance:.2f} "
                f"null={fit.null_deviance:.2f} AIC={fit.aic:.2f} dispersion={fit.dispersion:.3f}")
    return fit

def fit_poisson_block(md: ModelData) -> ModelFit:
    """Block as a fixed main effect"""
    return fit_glm(md, POISSON_BLOCK)

def fit_poisson_block_interaction(md: ModelData) -> ModelFit:
    """Block crossed with Treatment; empty Treatment x Block cells give aliased coefficients"""
    return fit_glm(md, POISSON_BLOCK_X_TRT)

def fit_negative_binomial(md: ModelData, maxiter: int = 200) -> Optional[ModelFit]:
    """NB2 alternative on the fixed-block design.

    alpha is estimated by maximum likelihood with the discrete NegativeBinomial
    model, then the mean model is refit as a GLM with that alpha so that the
    ANOVA, marginal means and predictions work the same way as for Poisson.
    """
    y, X = build_design(md.formula(NEGBIN), md.frame)
    estimable, _ = find_aliased(X)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            nb = NegativeBinomial(y, X[estimable]).fit(disp=0, maxiter=maxiter)
        except (np.linalg.LinAlgError, ValueError) as e:
            logger.warning(f"[fit] {NEGBIN}: alpha estimation failed: {e}")
            return None
    alpha = float(nb.params.iloc[-1])
    if not np.isfinite(alpha) or alpha <= 0:
        logger.warning(f"[fit] {NEGBIN}: alpha estimate not usable ({alpha})")
        return None
    fit = fit_glm(md, NEGBIN, family=sm.families.NegativeBinomial(alpha=alpha), family_label=f"negbin(alpha={alpha:.4f})")
    if not nb.mle_retvals.get("converged", True):
        fit.notes.append("alpha estimation did not converge")
    return fit

def dispersion(fit: ModelFit) -> float:
    """Sum of squared Pearson residuals over residual degrees of freedom"""
    if fit.kind == "mixed":
        mu = fit.fitted_mu
        resid = (fit.endog.values - mu) / np.sqrt(mu)
    else:
        resid = np.asarray(fit.result.resid_pearson)
    if fit.df_resid <= 0:
        return np.nan
    return float(np.sum(resid ** 2) / fit.df_resid)

def is_overdispersed(fit: ModelFit, threshold: float = DISPERSION_THRESHOLD) -> bool:
    return bool(np.isfinite(fit.dispersion) and fit.dispersion > threshold)


# ---------------------------------------------------------------- mixed model

def fit_mixed_poisson(md: ModelData, vcp_p: float = 1.0, fe_p: float = 2.0, method: str = "BFGS",
                      minim_opts: Optional[Dict[str, Any]] = None) -> Optional[ModelFit]:
    """Poisson GLMM with a random intercept per Block, Laplace approximation at the posterior mode.

    Returns None when the optimizer or the Hessian inversion fails outright;
    an optimizer that stops early gives a fit with converged=False.
    """
    formula = md.formula(MIXED_POISSON)
    y, X = build_design(formula, md.frame)
    estimable, aliased = find_aliased(X)
    Z = patsy.dmatrix(f"0 + C({BLOCK_COL})", md.frame, return_type="dataframe")
    ident = np.zeros(Z.shape[1], dtype=int)

    model = PoissonBayesMixedGLM(
        y.values, X[estimable].values, Z.values, ident, vcp_p=vcp_p, fe_p=fe_p,
        fep_names=list(estimable), vcp_names=[BLOCK_COL], vc_names=list(Z.columns))
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = model.fit_map(method=method, minim_opts=minim_opts)
        except (np.linalg.LinAlgError, ValueError) as e:
            logger.warning(f"[fit] {MIXED_POISSON}: Laplace fit failed: {e}")
            return None

    notes = [str(w.message) for w in caught if "converge" in str(w.message).lower()]
    retvals = getattr(result, "optim_retvals", None)
    if retvals is not None and not retvals.success:
        grad = float(np.sqrt(np.sum(np.asarray(retvals.jac) ** 2)))
        optimizer_ok = grad < GRAD_TOL
        if optimizer_ok:
            notes = [f"optimizer warning tolerated (|gradient|={grad:.2e})"]
        else:
            notes.append(f"optimizer: {retvals.message} (|gradient|={grad:.2e})")
    else:
        optimizer_ok = True
    finite = bool(np.all(np.isfinite(result.fe_mean)) and np.all(np.isfinite(result.fe_sd)))
    if not finite:
        notes.append("non-finite fixed-effect estimates or standard errors")
    converged = optimizer_ok and finite

    eta = X[estimable].values @ result.fe_mean + Z.values @ result.vc_mean

    fit = ModelFit(
        name=MIXED_POISSON, family="poisson + random intercept(Block)", kind="mixed", formula=formula,
        result=result, data=md, design_info=X.design_info, endog=y, exog_full=X,
        estimable=estimable, aliased=aliased, factors=[TREATMENT_COL],
        coefs=coef_table(pd.Series(result.fe_mean, index=estimable), pd.Series(result.fe_sd, index=estimable),
                         X.columns, aliased),
        converged=converged, df_resid=float(len(y) - len(estimable) - 1), fitted_mu=np.exp(eta), notes=notes,
    )
    fit.dispersion = dispersion(fit)
    block_sd = float(np.exp(result.vcp_mean[0]))
    fit.notes.append(f"Block random-intercept SD = {block_sd:.4f}")
    if converged:
        logger.info(f"[fit] {MIXED_POISSON}: n={fit.nobs} k={len(estimable)} block_sd={block_sd:.4f} "
                    f"dispersion={fit.dispersion:.3f}")
    else:
        logger.warning(f"[fit] {MIXED_POISSON}: did not converge: {'; '.join(notes)}")
    return fit

def block_effects(fit: ModelFit) -> pd.DataFrame:
    """Posterior mode and SD of each Block intercept"""
    res = fit.result
    return pd.DataFrame({"effect": res.model.vc_names, "mean": res.vc_mean, "sd": res.vc_sd})


# ---------------------------------------------------------------- ANOVA

def anova_type3(fit: ModelFit) -> pd.DataFrame:
    """Each term tested with every other term in the model.

    GLM fits: likelihood-ratio chi-square from refitting without the term's
    columns. Mixed fit: Wald chi-square on the term's fixed effects.
    """
    if fit.data.coding.contrast != "sum":
        logger.warning(f"[anova] {fit.name}: Type III tests on reference-coded factors depend on "
                       f"the reference levels; refit with sum-to-zero contrasts")
    rows = []
    beta, cov = fit.params(), fit.cov()
    for term, cols in fit.term_columns().items():
        if term == "Intercept":
            continue
        cols = [c for c in cols if c in fit.estimable]
        row = {"term": pretty_term(term), "df": len(cols)}
        if not cols:
            row.update(stat=np.nan, p=np.nan)
        elif fit.kind == "mixed":
            b = beta[cols].values
            v = cov.loc[cols, cols].values
            row.update(stat=float(b @ np.linalg.pinv(v) @ b))
        else:
            reduced = [c for c in fit.estimable if c not in cols]
            r = sm.GLM(fit.endog, fit.exog_full[reduced], family=fit.glm_family).fit()
            row.update(stat=float(r.deviance - fit.deviance))
        if cols:
            row["p"] = float(stats.chi2.sf(row["stat"], len(cols)))
        rows.append(row)
    test = "Wald" if fit.kind == "mixed" else "LR"
    tbl = pd.DataFrame(rows, columns=["term", "df", "stat", "p"])
    return tbl.rename(columns={"stat": f"{test} Chisq", "p": "Pr(>Chisq)"})

def anova_type1(fit: ModelFit) -> pd.DataFrame:
    """Sequential analysis of deviance; terms enter in formula order"""
    if fit.kind != "glm":
        raise ValueError("sequential deviance decomposition needs a GLM fit")
    terms = fit.term_columns()
    current = [c for c in terms.get("Intercept", []) if c in fit.estimable]
    prev = sm.GLM(fit.endog, fit.exog_full[current], family=fit.glm_family).fit()
    rows = [{"term": "NULL", "df": np.nan, "Deviance": np.nan,
             "Resid. Df": float(prev.df_resid), "Resid. Dev": float(prev.deviance), "Pr(>Chi)": np.nan}]
    for term, cols in terms.items():
        if term == "Intercept":
            continue
        cols = [c for c in cols if c in fit.estimable]
        current = current + cols
        if cols:
            nxt = sm.GLM(fit.endog, fit.exog_full[current], family=fit.glm_family).fit()
        else:
            nxt = prev
        dev = float(prev.deviance - nxt.deviance)
        rows.append({"term": pretty_term(term), "df": len(cols), "Deviance": dev,
                     "Resid. Df": float(nxt.df_resid), "Resid. Dev": float(nxt.deviance),
                     "Pr(>Chi)": float(stats.chi2.sf(dev, len(cols))) if cols else np.nan})
        prev = nxt
    tbl = pd.DataFrame(rows)
    explained = float(tbl["Deviance"].sum())
    gap = abs(explained - (fit.null_deviance - fit.deviance))
    if gap > 1e-6 * max(1.0, fit.null_deviance):
        logger.warning(f"[anova] {fit.name}: sequential deviances sum to {explained:.4f}, "
                       f"null - residual = {fit.null_deviance - fit.deviance:.4f}")
    return tbl


# ---------------------------------------------------------------- selection

def compare_models(fits: Dict[str, Optional[ModelFit]]) -> pd.DataFrame:
    rows = []
    for name, f in fits.items():
        if f is None:
            continue
        rows.append({"model": name, "family": f.family, "converged": f.converged, "nobs": f.nobs,
                     "k": len(f.estimable), "aliased": len(f.aliased), "AIC": f.aic, "BIC": f.bic,
                     "deviance": f.deviance, "df_resid": f.df_resid, "dispersion": f.dispersion})
    return pd.DataFrame(rows)


@dataclass
class Selection:
    fit: ModelFit
    fallback: bool = False
    notes: List[str] = field(default_factory=list)

def select_final_model(fits: Dict[str, Optional[ModelFit]], prefer: Optional[str] = MIXED_POISSON,
                       fallback: str = POISSON_BLOCK, threshold: float = DISPERSION_THRESHOLD) -> Selection:
    """Pick the model used for post-hoc comparisons and prediction.

    Only the mixed model falls back (to the fixed-block Poisson model) when it
    is missing or did not converge; any other preference must be available.
    """
    if not prefer:
        raise NoFinalModelError("no final model selected: a model preference is required")
    notes = []
    chosen = fits.get(prefer)
    used_fallback = False
    if chosen is None or not chosen.converged:
        reason = "was not fitted" if chosen is None else "did not converge"
        fb = fits.get(fallback)
        if prefer != MIXED_POISSON or fb is None or not fb.converged:
            raise NoFinalModelError(f"no final model selected: {prefer!r} {reason} and no fallback is available")
        msg = f"{prefer} {reason}; fell back to {fallback}"
        logger.warning(f"[select] {msg}")
        notes.append(msg)
        chosen, used_fallback = fb, True

    poisson_ref = fits.get(POISSON_BLOCK)
    if chosen.name != NEGBIN and poisson_ref is not None and is_overdispersed(poisson_ref, threshold):
        msg = (f"{POISSON_BLOCK} dispersion {poisson_ref.dispersion:.3f} > {threshold}: "
               f"overdispersed, consider --final_model {NEGBIN}")
        logger.warning(f"[select] {msg}")
        notes.append(msg)
    logger.info(f"[select] final model: {chosen.name}")
    return Selection(chosen, used_fallback, notes)
