"""
tests/test_ivc_models.py

Poisson GLM variants, aliasing, dispersion, the mixed model, ANOVA
decompositions and final-model selection, all on synthetic Poisson counts.
"""

from __future__ import annotations

import logging
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

import ivc_models as models
from conftest import make_counts


@pytest.fixture()
def md(counts) -> models.ModelData:
    return models.prepare_model_data(counts)


@pytest.fixture()
def poisson_fit(md) -> models.ModelFit:
    return models.fit_poisson_block(md)


# ---------------------------------------------------------------------------
# Factor coding
# ---------------------------------------------------------------------------


class TestFactorCoding:
    def test_default_reference_is_first_sorted_label(self, counts) -> None:
        refs = models.resolve_references(counts)
        assert refs == {"Block": "1", "Treatment": "Control"}

    def test_configured_reference(self, counts) -> None:
        refs = models.resolve_references(counts, block_ref="3", treatment_ref="Grass")
        assert refs == {"Block": "3", "Treatment": "Grass"}

    def test_unknown_reference_raises(self, counts) -> None:
        with pytest.raises(ValueError, match="Meadow"):
            models.resolve_references(counts, treatment_ref="Meadow")

    def test_contrast_terms(self) -> None:
        refs = {"Treatment": "Control", "Block": "1"}
        assert models.FactorCoding("sum", refs).term("Treatment") == "C(Treatment, Sum(omit='Control'))"
        assert models.FactorCoding("treatment", refs).term("Block") == "C(Block, Reference(reference='1'))"
        with pytest.raises(ValueError):
            models.FactorCoding("helmert", refs)

    def test_reference_coding_fits_with_treatment_column(self, counts) -> None:
        md = models.prepare_model_data(counts, contrast="treatment", treatment_ref="Grass")
        fit = models.fit_poisson_block(md)
        assert fit.converged
        main = [c for c in fit.estimable if c.startswith("C(Treatment") and ":" not in c]
        assert [models.pretty_term(c) for c in main] == ["Treatment[T.Control]", "Treatment[T.Wildflower]"]

    def test_pretty_term(self) -> None:
        name = "C(Treatment, Sum(omit='Control'))[S.Grass]:day"
        assert models.pretty_term(name) == "Treatment[S.Grass]:day"

    def test_day_covariate_starts_at_zero(self, md) -> None:
        assert md.frame["day"].min() == 0
        assert md.frame["day"].max() == 28
        assert md.origin == pd.Timestamp("2024-06-03")


# ---------------------------------------------------------------------------
# Poisson GLM
# ---------------------------------------------------------------------------


class TestPoissonGLM:
    def test_fit_is_deterministic(self, md) -> None:
        a = models.fit_poisson_block(md)
        b = models.fit_poisson_block(md)
        np.testing.assert_allclose(a.params().values, b.params().values, rtol=1e-10)

    def test_fit_metadata(self, poisson_fit) -> None:
        assert poisson_fit.converged
        assert poisson_fit.family == "poisson"
        assert poisson_fit.null_deviance >= poisson_fit.deviance
        assert np.isfinite(poisson_fit.aic)
        assert poisson_fit.df_resid == poisson_fit.nobs - len(poisson_fit.estimable)
        assert not poisson_fit.aliased

    def test_coefficient_table_columns(self, poisson_fit) -> None:
        coefs = poisson_fit.coefs
        for col in ["Coef.", "Std.Err.", "z", "P>|z|", "RR", "RR_low", "RR_high", "estimable", "term"]:
            assert col in coefs.columns
        np.testing.assert_allclose(coefs.loc[poisson_fit.estimable, "P>|z|"].values,
                                   poisson_fit.result.pvalues.values, rtol=1e-6)

    def test_dispersion_is_pearson_chi2_over_df(self, poisson_fit) -> None:
        expected = np.sum(np.asarray(poisson_fit.result.resid_pearson) ** 2) / poisson_fit.result.df_resid
        assert poisson_fit.dispersion == pytest.approx(expected)
        assert poisson_fit.dispersion == pytest.approx(poisson_fit.result.pearson_chi2 / poisson_fit.result.df_resid)

    def test_dispersion_near_one_for_poisson_data(self) -> None:
        rng = np.random.default_rng(7)
        big = make_counts(rng, blocks=["1", "2", "3", "4"], reps=40)
        fit = models.fit_poisson_block(models.prepare_model_data(big))
        assert 0.8 < fit.dispersion < 1.2
        assert not models.is_overdispersed(fit)

    def test_overdispersed_data_is_flagged(self) -> None:
        rng = np.random.default_rng(11)
        df = make_counts(rng, reps=20)
        df["Count"] = rng.negative_binomial(2, 2 / (2 + 10.0), size=len(df))
        md = models.prepare_model_data(df)
        fit = models.fit_poisson_block(md)
        assert models.is_overdispersed(fit)
        nb = models.fit_negative_binomial(md)
        assert nb is not None
        assert nb.family.startswith("negbin")
        assert nb.aic < fit.aic


class TestAliasing:
    def test_find_aliased_marks_dependent_columns(self) -> None:
        X = pd.DataFrame({"a": [1.0, 1, 1, 1], "b": [0.0, 1, 0, 1], "c": [1.0, 0, 1, 0], "d": [0.0, 0, 0, 0]})
        keep, aliased = models.find_aliased(X)
        assert keep == ["a", "b"]
        assert aliased == ["c", "d"]

    def test_empty_cell_gives_not_estimable_coefficients(self, counts) -> None:
        sparse = counts[~((counts["Treatment"] == "Grass") & (counts["Block"] == "3"))].copy()
        md = models.prepare_model_data(sparse)
        fit = models.fit_poisson_block_interaction(md)
        assert fit.aliased
        assert fit.converged
        not_est = fit.coefs[~fit.coefs["estimable"]]
        assert set(not_est.index) == set(fit.aliased)
        assert not_est["Coef."].isna().all()
        assert fit.coefs.loc[fit.estimable, "Coef."].notna().all()

    def test_interaction_variant_has_block_by_treatment_terms(self, md) -> None:
        fit = models.fit_poisson_block_interaction(md)
        terms = [models.pretty_term(t) for t in fit.term_columns()]
        assert "Treatment:Block" in terms
        assert len(fit.estimable) == 1 + 2 + 1 + 2 + 2 + 4


# ---------------------------------------------------------------------------
# ANOVA
# ---------------------------------------------------------------------------


class TestAnova:
    def test_sequential_deviances_reconcile(self, poisson_fit) -> None:
        tbl = models.anova_type1(poisson_fit)
        assert tbl["Deviance"].sum() == pytest.approx(poisson_fit.null_deviance - poisson_fit.deviance, rel=1e-6)
        assert tbl["Resid. Dev"].iloc[-1] == pytest.approx(poisson_fit.deviance, rel=1e-6)

    def test_type3_has_one_row_per_term(self, poisson_fit) -> None:
        tbl = models.anova_type3(poisson_fit)
        assert tbl["term"].tolist() == ["Treatment", "Block", "day", "Treatment:day"]
        assert tbl.set_index("term").loc["Treatment", "df"] == 2
        assert ((tbl["Pr(>Chisq)"] >= 0) & (tbl["Pr(>Chisq)"] <= 1)).all()
        assert (tbl["LR Chisq"] >= -1e-8).all()

    def test_type3_on_reference_coding_warns(self, counts, caplog) -> None:
        md = models.prepare_model_data(counts, contrast="treatment")
        fit = models.fit_poisson_block(md)
        with caplog.at_level(logging.WARNING, logger="ivc"):
            models.anova_type3(fit)
        assert "reference-coded" in caplog.text

    def test_type3_skips_fully_aliased_term(self, counts) -> None:
        sparse = counts[~((counts["Treatment"] == "Grass") & (counts["Block"] == "3"))].copy()
        fit = models.fit_poisson_block_interaction(models.prepare_model_data(sparse))
        tbl = models.anova_type3(fit).set_index("term")
        assert tbl.loc["Treatment:Block", "df"] == 3


# ---------------------------------------------------------------------------
# Mixed model
# ---------------------------------------------------------------------------


class TestMixedModel:
    def test_fits_random_block_intercept(self, md) -> None:
        fit = models.fit_mixed_poisson(md)
        assert fit.kind == "mixed"
        assert fit.factors == ["Treatment"]
        assert len(fit.params()) == len(fit.estimable)
        assert fit.cov().shape == (len(fit.estimable), len(fit.estimable))
        assert np.isnan(fit.aic)
        assert any("random-intercept SD" in n for n in fit.notes)
        effects = models.block_effects(fit)
        assert len(effects) == 3

    def test_type3_uses_wald_tests(self, md) -> None:
        tbl = models.anova_type3(models.fit_mixed_poisson(md))
        assert "Wald Chisq" in tbl.columns
        assert tbl["term"].tolist() == ["Treatment", "day", "Treatment:day"]

    def test_stopped_optimizer_falls_back_to_fixed_block(self, md, poisson_fit) -> None:
        mixed = models.fit_mixed_poisson(md, minim_opts={"maxiter": 1})
        assert mixed is None or not mixed.converged
        sel = models.select_final_model({models.MIXED_POISSON: mixed, models.POISSON_BLOCK: poisson_fit})
        assert sel.fit is poisson_fit
        assert sel.fallback
        assert f"fell back to {models.POISSON_BLOCK}" in sel.notes[0]

    def test_failed_laplace_fit_returns_none(self, md, monkeypatch) -> None:
        def singular(self, *args, **kwargs):
            raise np.linalg.LinAlgError("Singular matrix")
        monkeypatch.setattr(models.PoissonBayesMixedGLM, "fit_map", singular)
        assert models.fit_mixed_poisson(md) is None

    def test_converged_fit_notes_do_not_report_failure(self, md) -> None:
        fit = models.fit_mixed_poisson(md)
        assert fit.converged
        assert not any("did not converge" in n for n in fit.notes)

    def test_sequential_anova_is_glm_only(self, md) -> None:
        with pytest.raises(ValueError):
            models.anova_type1(models.fit_mixed_poisson(md))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def _stub(name, converged=True, dispersion=1.0):
    return SimpleNamespace(name=name, converged=converged, dispersion=dispersion, notes=[])


class TestSelection:
    def test_converged_mixed_model_is_chosen(self) -> None:
        fits = {models.MIXED_POISSON: _stub(models.MIXED_POISSON), models.POISSON_BLOCK: _stub(models.POISSON_BLOCK)}
        sel = models.select_final_model(fits)
        assert sel.fit.name == models.MIXED_POISSON
        assert not sel.fallback

    def test_non_converged_mixed_model_falls_back(self) -> None:
        fits = {models.MIXED_POISSON: _stub(models.MIXED_POISSON, converged=False),
                models.POISSON_BLOCK: _stub(models.POISSON_BLOCK)}
        sel = models.select_final_model(fits)
        assert sel.fit.name == models.POISSON_BLOCK
        assert sel.fallback
        assert "did not converge" in sel.notes[0]

    def test_missing_preference_raises(self) -> None:
        fits = {models.POISSON_BLOCK: _stub(models.POISSON_BLOCK)}
        with pytest.raises(models.NoFinalModelError):
            models.select_final_model(fits, prefer=models.NEGBIN)
        with pytest.raises(models.NoFinalModelError):
            models.select_final_model(fits, prefer=None)

    def test_no_fallback_available_raises(self) -> None:
        fits = {models.MIXED_POISSON: _stub(models.MIXED_POISSON, converged=False)}
        with pytest.raises(models.NoFinalModelError, match="no final model selected"):
            models.select_final_model(fits)

    def test_overdispersion_is_advisory(self) -> None:
        fits = {models.MIXED_POISSON: _stub(models.MIXED_POISSON),
                models.POISSON_BLOCK: _stub(models.POISSON_BLOCK, dispersion=2.5)}
        sel = models.select_final_model(fits)
        assert sel.fit.name == models.MIXED_POISSON
        assert any("overdispersed" in n for n in sel.notes)

    def test_compare_models_skips_missing(self, md, poisson_fit) -> None:
        tbl = models.compare_models({models.POISSON_BLOCK: poisson_fit, models.NEGBIN: None})
        assert tbl["model"].tolist() == [models.POISSON_BLOCK]


# ---------------------------------------------------------------------------
# No-effect simulation
# ---------------------------------------------------------------------------


def test_treatment_intervals_cover_zero_without_true_effect() -> None:
    rng = np.random.default_rng(12345)
    n_sims, covered = 200, 0
    for _ in range(n_sims):
        df = make_counts(rng, lam=10.0)
        fit = models.fit_poisson_block(models.prepare_model_data(df))
        row = fit.coefs.loc[[c for c in fit.estimable if c.startswith("C(Treatment") and ":" not in c]]
        covered += int(((row["[0.025"] <= 0) & (row["0.975]"] >= 0)).all())
    # Monte Carlo tolerance around the nominal 95%
    assert covered / n_sims >= 0.9
