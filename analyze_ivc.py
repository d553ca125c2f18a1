import argparse
import os
import sys

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import patsy
import scipy
import statsmodels.api as sm

import ivc_data as data
import ivc_models as models
import ivc_posthoc as posthoc
import ivc_plots as plots
from ivc_data import logger, write_csv


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Insect count analysis: join, clean, Poisson GLM/GLMM, ANOVA, post-hoc, prediction")
    parser.add_argument("--insects", required=True, help="insect counts (CSV)")
    parser.add_argument("--flowers", required=True, help="flower counts (spreadsheet)")
    parser.add_argument("--specimens", required=True, help="specimen identifications (spreadsheet)")
    parser.add_argument("--outdir", required=True)
    parser.add_argument("--contrast", choices=["sum", "treatment"], default="sum",
                        help="Factor coding. 'sum' (sum-to-zero) is required for meaningful Type III tests.")
    parser.add_argument("--block_ref", default=None, help="Reference level of Block (default: first label in sort order)")
    parser.add_argument("--treatment_ref", default=None, help="Reference level of Treatment (default: first label in sort order)")
    parser.add_argument("--dispersion_threshold", type=float, default=models.DISPERSION_THRESHOLD,
                        help="Pearson dispersion above which the Poisson model is flagged as overdispersed.")
    parser.add_argument("--final_model", default=models.MIXED_POISSON,
                        choices=[models.MIXED_POISSON, models.POISSON_BLOCK, models.POISSON_BLOCK_X_TRT, models.NEGBIN],
                        help="Model used for post-hoc comparisons and predictions. The mixed model falls back to "
                             f"{models.POISSON_BLOCK} when it does not converge.")
    parser.add_argument("--adjust", default="tukey", help="p-value adjustment for pairwise comparisons (tukey, holm, bonferroni, fdr_bh, none)")
    parser.add_argument("--alpha", type=float, default=0.05)
    parser.add_argument("--n_dates", type=int, default=posthoc.N_GRID_DATES, help="Dates in the prediction grid")
    parser.add_argument("--species_col", default=posthoc.SPECIES_COL, help="Species column crossed into the prediction grid")
    parser.add_argument("--log", default=None, help="log file path")
    return parser.parse_args(argv)

def write_session_info(args):
    session_info = f"""Session Info
=============
Date: {pd.Timestamp.now()}
Python: {sys.version}
NumPy: {np.__version__}
Pandas: {pd.__version__}
Statsmodels: {sm.__version__}
Patsy: {patsy.__version__}
SciPy: {scipy.__version__}
Matplotlib: {plt.matplotlib.__version__}

Command-line arguments:
{vars(args)}
"""
    with open(os.path.join(args.outdir, "SESSION_INFO.txt"), "w") as f:
        f.write(session_info)

def print_table(title, df):
    print("\n" + "=" * 72)
    print(title)
    print("=" * 72)
    print(df.to_string(index=False) if not df.empty else "(empty)")

def fit_models(md, threshold):
    """All candidate models; the negative binomial is only fitted for an overdispersed Poisson fit"""
    fits = {
        models.POISSON_BLOCK: models.fit_poisson_block(md),
        models.POISSON_BLOCK_X_TRT: models.fit_poisson_block_interaction(md),
    }
    if models.is_overdispersed(fits[models.POISSON_BLOCK], threshold):
        logger.warning(f"[fit] {models.POISSON_BLOCK} dispersion {fits[models.POISSON_BLOCK].dispersion:.3f} "
                       f"> {threshold}: fitting negative binomial alternative")
        fits[models.NEGBIN] = models.fit_negative_binomial(md)
    fits[models.MIXED_POISSON] = models.fit_mixed_poisson(md)
    return fits

def generate_report(audit, comparison, selection, anovas, pairs, args):
    lines = ["# Insect count analysis\n"]
    lines.append("## Cleaning\n")
    for _, r in audit.iterrows():
        lines.append(f"- **{r['step']}**: {r['rows_in']} → {r['rows_out']} rows (dropped {r['dropped']})")
    lines.append("\n## Models\n")
    for _, r in comparison.iterrows():
        lines.append(f"- **{r['model']}** ({r['family']}): converged={r['converged']}, AIC={r['AIC']:.2f}, "
                     f"deviance={r['deviance']:.2f}, dispersion={r['dispersion']:.3f}, aliased={r['aliased']}")
    lines.append("\n## Final model\n")
    lines.append(f"- Selected: **{selection.fit.name}** (requested: {args.final_model})")
    lines.append(f"- Fallback used: {selection.fallback}")
    for note in selection.notes + selection.fit.notes:
        lines.append(f"- {note}")
    lines.append("\n## Type III tests\n")
    for name, tbl in anovas.items():
        lines.append(f"### {name}\n")
        stat_col = [c for c in tbl.columns if c.endswith("Chisq")][0]
        for _, r in tbl.iterrows():
            lines.append(f"- {r['term']}: {stat_col} = {r[stat_col]:.3f}, df = {r['df']}, p = {r['Pr(>Chisq)']:.4g}")
        lines.append("")
    lines.append(f"## Pairwise treatment comparisons ({args.adjust})\n")
    for _, r in pairs.iterrows():
        lines.append(f"- **{r['contrast']}** — rate ratio {r['ratio']:.3f} "
                     f"[{r['ratio_low']:.3f}, {r['ratio_high']:.3f}] · p_adj = {r['p_adj']:.4g}")
    return "\n".join(lines) + "\n"

def run(args):
    os.makedirs(args.outdir, exist_ok=True)
    write_session_info(args)

    print("Loading...")
    insects, flowers, specimens = data.load_tables(args.insects, args.flowers, args.specimens)

    print("Joining...")
    joined = data.join_all(insects, flowers, specimens)
    data.export_joined(joined, args.outdir)

    print("Cleaning...")
    cleaned, audit = data.run_cleaning(joined.insect_specimen)
    write_csv(audit, os.path.join(args.outdir, "cleaning_audit.csv"))
    print_table("CLEANING AUDIT", audit)
    if cleaned.empty:
        raise data.SchemaError("No rows left after cleaning")

    md = models.prepare_model_data(cleaned, contrast=args.contrast, block_ref=args.block_ref,
                                   treatment_ref=args.treatment_ref)

    print("Modeling...")
    fits = fit_models(md, args.dispersion_threshold)
    comparison = models.compare_models(fits)
    write_csv(comparison, os.path.join(args.outdir, "model_comparison.csv"))
    print_table("MODEL COMPARISON", comparison)

    anovas = {}
    for name, fit in fits.items():
        if fit is None:
            continue
        print(f"\n{name}: {fit.formula}")
        print(fit.result.summary())
        coefs = fit.coefs.reset_index(names="column")
        write_csv(coefs, os.path.join(args.outdir, f"coef_{name}.csv"))
        if fit.aliased:
            print(f"Not estimable (aliased): {[models.pretty_term(c) for c in fit.aliased]}")

        a3 = models.anova_type3(fit)
        anovas[name] = a3
        write_csv(a3, os.path.join(args.outdir, f"anova3_{name}.csv"))
        print_table(f"TYPE III ANOVA: {name}", a3)
        if fit.kind == "glm":
            a1 = models.anova_type1(fit)
            write_csv(a1, os.path.join(args.outdir, f"anova1_{name}.csv"))
            print_table(f"SEQUENTIAL DEVIANCE: {name}", a1)
            plots.plot_diagnostics(fit, args.outdir)
        else:
            write_csv(models.block_effects(fit), os.path.join(args.outdir, f"block_effects_{name}.csv"))
        plots.plot_coefficients(fit, args.outdir)

    selection = models.select_final_model(fits, prefer=args.final_model,
                                          threshold=args.dispersion_threshold)
    final = selection.fit

    print("Post-hoc...")
    means, pairs = posthoc.emmeans_pairwise(final, adjust=args.adjust, alpha=args.alpha)
    write_csv(means, os.path.join(args.outdir, f"emmeans_{final.name}.csv"))
    write_csv(pairs, os.path.join(args.outdir, f"emmeans_pairs_{final.name}.csv"))
    print_table(f"ESTIMATED MARGINAL MEANS ({final.name}, response scale)", means)
    print_table(f"PAIRWISE COMPARISONS ({args.adjust})", pairs)

    print("Predicting...")
    grid = posthoc.prediction_grid(final, n_dates=args.n_dates, species_col=args.species_col)
    pred = posthoc.predict_grid(final, grid)
    write_csv(pred, os.path.join(args.outdir, "predictions.csv"))

    plots.plot_time_series(md.frame, args.outdir)
    plots.plot_predictions(pred, md.frame, args.outdir, species_col=args.species_col)

    with open(os.path.join(args.outdir, "model_report.md"), "w", encoding="utf-8") as f:
        f.write(generate_report(audit, comparison, selection, anovas, pairs, args))
    logger.info(f"[save] {os.path.join(args.outdir, 'model_report.md')}")
    return selection

def main(argv=None):
    args = parse_args(argv)
    data.setup_file_logging(args.log)
    logger.info(f"[start] CWD={os.getcwd()}")
    try:
        run(args)
    except (FileNotFoundError, data.IvcError) as e:
        logger.error(f"[abort] {type(e).__name__}: {e}")
        return 1
    print("Done!")
    return 0

if __name__ == "__main__":
    sys.exit(main())
