import json
import logging
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd

from PPGLM.config import (
    BODYFAT_P0,
    BODYFAT_PREDICTORS,
    BODYFAT_SEED,
    BODYFAT_TARGET,
    BOOTSTRAP_SE_N,
    CREDIBLE_INTERVAL,
    DIABETES_P0,
    DIABETES_PREDICTORS,
    DIABETES_SEED,
    DIABETES_SUGGEST_ALPHA,
    DIABETES_TARGET,
    HORSESHOE_SLAB_DF,
    HORSESHOE_SLAB_SCALE,
    HORSESHOE_TARGET_ACCEPT,
    MCMC_PARAMS,
    NORMAL_PRIOR,
    PROB_BINS,
    PROJ_NCLUSTERS,
    PROJ_NDRAWS,
    PROJ_NDRAWS_PRED,
    STUDENT_T_PRIOR,
)
from PPGLM.data import add_noise_columns, clean_bodyfat, clean_diabetes, standardize, summarize_columns
from PPGLM.evaluation import (
    calibration_curve_df,
    classification_accuracy,
    compare_models,
    confusion_table,
    loo_summary_table,
    pareto_k_table,
    rmse,
    smooth_calibration_curve,
)
from PPGLM.glm import BayesGLM
from PPGLM.plots import (
    plot_calibration,
    plot_correlation,
    plot_draws_areas,
    plot_pareto_k,
    plot_posterior_areas,
    plot_selection_frequencies,
    plot_varsel,
    save_figure,
)
from PPGLM.projpred import (
    ProjectionPredictive,
    bootstrap_selection,
    selection_frequencies,
    submodel_frequencies,
)
from PPGLM.utils import build_formula, horseshoe_global_scale, package_versions

logger = logging.getLogger(__name__)

PACKAGES = ["numpy", "pandas", "scipy", "jax", "numpyro", "optax", "arviz", "xarray", "patsy", "scikit-learn",
            "matplotlib"]


def _output_dirs(outdir):
    outdir = Path(outdir)
    dirs = (outdir / "tables", outdir / "figures", outdir / "logs")
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def _write_metadata(path, report, seed, params, extra=None):
    meta = {
        "report": report,
        "seed": int(seed),
        "params": params,
        "runtime": {
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
            "python_version": sys.version,
            "platform": platform.platform(),
            "argv": sys.argv,
            "packages": package_versions(PACKAGES),
        },
    }
    if extra:
        meta.update(extra)
    path.write_text(json.dumps(meta, indent=2, sort_keys=True, default=str), encoding="utf-8")


def fit_reference(data, formula, family, model, params, seed, **prior):
    '''
    Fit a model with MCMC and return it with posterior draws and InferenceData
    :param prior: prior keyword arguments passed to BayesGLM.define_model
    :return: fitted BayesGLM
    '''
    logger.info("Fitting %s (%s): %s", model, family, formula)
    glm = BayesGLM(family=family).add_data(data, formula).define_model(model, **prior)
    glm.fit(PRNGkey=seed, params=params).sample_posterior()
    glm.compute_idata()
    return glm


def _write_posterior(glm, name, tables, figures, title):
    glm.summarize_posterior(CREDIBLE_INTERVAL)
    glm.posterior_summary.to_csv(tables / f"{name}_posterior_summary.csv")
    if "beta" in glm.posterior_samples:
        fig = plot_posterior_areas(glm.idata, ["beta"], CREDIBLE_INTERVAL, title=title)
        save_figure(fig, figures / f"{name}_posterior_areas.png")


def _row_at_size(summary, size):
    return summary.loc[summary["size"] == size].iloc[0]


def run_diabetes_report(df, outdir, params=None, seed=DIABETES_SEED, nterms_max=None, validate_search=False, nloo=None,
                        nclusters=PROJ_NCLUSTERS, ndraws_pred=PROJ_NDRAWS_PRED, ndraws=PROJ_NDRAWS,
                        n_boot_se=BOOTSTRAP_SE_N):
    '''
    Bayesian logistic regression of diabetes on the Pima predictors: Student-t and horseshoe reference
    models, LOO accuracy and calibration, then projection predictive selection of a small submodel
    :param df: raw diabetes DataFrame
    :param outdir: root of the tables, figures and logs directories
    :param params: overrides of MCMC_PARAMS
    :param nterms_max: largest submodel of the search
    :param validate_search: rerun the search inside LOO for nloo observations
    :return: dict of headline results
    '''
    params = dict(MCMC_PARAMS, **(params or {}))
    tables, figures, logs = _output_dirs(outdir)

    data = clean_diabetes(df)
    summarize_columns(data).to_csv(tables / "diabetes_column_summary.csv", index=False)
    data, scaling = standardize(data, DIABETES_PREDICTORS)
    scaling.to_csv(tables / "diabetes_scaling.csv", index=False)
    y = data[DIABETES_TARGET].to_numpy()

    formula = build_formula(DIABETES_TARGET, DIABETES_PREDICTORS)
    post1 = fit_reference(data, formula, "bernoulli", "student_t_prior", params, seed, **STUDENT_T_PRIOR)
    _write_posterior(post1, "diabetes_student_t", tables, figures, "Student-t prior")
    post0 = fit_reference(data, build_formula(DIABETES_TARGET, []), "bernoulli", "baseline_intercept_model", params,
                          seed, **STUDENT_T_PRIOR)

    # Accuracy: posterior mean probability, in-sample and leave-one-out
    prob = post1.epred().mean(axis=0)
    prob_loo = post1.loo_epred()
    prob0 = post0.epred().mean(axis=0)
    prob0_loo = post0.loo_epred()
    accuracy = pd.DataFrame([
        {"model": "student_t", "accuracy": classification_accuracy(y, prob),
         "accuracy_loo": classification_accuracy(y, prob_loo)},
        {"model": "baseline", "accuracy": classification_accuracy(y, prob0),
         "accuracy_loo": classification_accuracy(y, prob0_loo)},
    ])
    accuracy.to_csv(tables / "diabetes_accuracy.csv", index=False)
    confusion_table(y, prob).to_csv(tables / "diabetes_confusion_in_sample.csv")
    confusion_table(y, prob_loo).to_csv(tables / "diabetes_confusion_loo.csv")

    binned = calibration_curve_df(y, prob_loo, n_bins=PROB_BINS)
    smooth = smooth_calibration_curve(y, prob_loo)
    binned.to_csv(tables / "diabetes_calibration_binned.csv", index=False)
    smooth.to_csv(tables / "diabetes_calibration_smooth.csv", index=False)
    save_figure(plot_calibration(binned, smooth), figures / "diabetes_calibration.png")

    loo1 = post1.loo()
    loo0 = post0.loo()
    pareto_k_table(loo1.pareto_k.values).to_csv(tables / "diabetes_pareto_k.csv", index=False)
    save_figure(plot_pareto_k(loo1.pareto_k.values), figures / "diabetes_pareto_k.png")

    n_obs, n_coefs = post1.X.shape
    tau0 = horseshoe_global_scale(DIABETES_P0, n_coefs, n_obs)
    hs_params = dict(params, target_accept=HORSESHOE_TARGET_ACCEPT)
    post2 = fit_reference(data, formula, "bernoulli", "regularized_horseshoe", hs_params, seed, global_scale=tau0,
                          slab_scale=HORSESHOE_SLAB_SCALE, slab_df=HORSESHOE_SLAB_DF)
    _write_posterior(post2, "diabetes_horseshoe", tables, figures, "Regularized horseshoe prior")
    loo2 = post2.loo()

    loo_summary_table({"student_t": loo1, "baseline": loo0, "horseshoe": loo2}).to_csv(
        tables / "diabetes_loo_summary.csv", index=False)
    compare_models({"student_t": post1.idata, "baseline": post0.idata}).to_csv(
        tables / "diabetes_compare_baseline.csv", index_label="model")
    compare_models({"student_t": post1.idata, "horseshoe": post2.idata}).to_csv(
        tables / "diabetes_compare_horseshoe.csv", index_label="model")

    vs = ProjectionPredictive.from_reference(post2, nclusters=nclusters, ndraws_pred=ndraws_pred,
                                             n_boot_se=n_boot_se, seed=seed)
    vs.varsel(nterms_max=nterms_max, validate_search=validate_search, nloo=nloo)
    vs.summary.to_csv(tables / "diabetes_varsel.csv", index=False)
    save_figure(plot_varsel(vs.summary, vs.reference_stats, ("elpd", "pctcorr")), figures / "diabetes_varsel.png")
    if vs.cv_proportions is not None:
        vs.cv_proportions.to_csv(tables / "diabetes_cv_proportions.csv", index=False)

    size_elpd = vs.suggest_size("elpd", alpha=DIABETES_SUGGEST_ALPHA)
    size_pctcorr = vs.suggest_size("pctcorr", alpha=DIABETES_SUGGEST_ALPHA)
    nsel = size_elpd if size_elpd is not None else len(vs.solution_path)
    selected = vs.solution_terms[:nsel]
    logger.info("Suggested size %s (elpd), %s (pctcorr); projecting onto %s", size_elpd, size_pctcorr, selected)

    proj = vs.project(nterms=nsel, ndraws=ndraws)
    proj.to_csv(tables / "diabetes_projected_draws.csv", index=False)
    save_figure(plot_draws_areas(proj, CREDIBLE_INTERVAL, title="Projected posterior"),
                figures / "diabetes_projected_areas.png")

    proj_accuracy = classification_accuracy(y, vs.proj_epred().mean(axis=0))
    proj_accuracy_loo = float(_row_at_size(vs.summary, nsel)["pctcorr"])
    pd.DataFrame([
        {"model": "reference", "accuracy_loo": float(vs.reference_stats["pctcorr"])},
        {"model": "projected", "accuracy": proj_accuracy, "accuracy_loo": proj_accuracy_loo},
    ]).to_csv(tables / "diabetes_projected_accuracy.csv", index=False)

    results = {
        "n_obs": n_obs,
        "accuracy": accuracy,
        "elpd_loo": {"student_t": float(loo1.elpd_loo), "baseline": float(loo0.elpd_loo),
                     "horseshoe": float(loo2.elpd_loo)},
        "solution_terms": vs.solution_terms,
        "suggested_size": {"elpd": size_elpd, "pctcorr": size_pctcorr},
        "selected_terms": selected,
        "projected_accuracy": proj_accuracy,
        "projected_accuracy_loo": proj_accuracy_loo,
    }
    _write_metadata(logs / "diabetes_run_metadata.json", "diabetes", seed, params, extra={
        "projection": {"nterms_max": nterms_max, "validate_search": validate_search, "nloo": nloo,
                       "nclusters": nclusters, "ndraws_pred": ndraws_pred, "ndraws": ndraws},
        "results": {k: v for k, v in results.items() if k != "accuracy"},
    })
    return results


def run_bodyfat_report(df, outdir, params=None, seed=BODYFAT_SEED, nterms_max=None, validate_search=False, nloo=None,
                       n_boot=0, noise_vars=0, nclusters=PROJ_NCLUSTERS, ndraws_pred=PROJ_NDRAWS_PRED,
                       ndraws=PROJ_NDRAWS, n_boot_se=BOOTSTRAP_SE_N):
    '''
    Linear regression of body fat (siri) on 13 anthropometric measurements
    :param n_boot: bootstrap replicates of the selection stability study; 0 skips it
    :param noise_vars: pure-noise predictors added for a second search; 0 skips it
    '''
    params = dict(MCMC_PARAMS, **(params or {}))
    tables, figures, logs = _output_dirs(outdir)

    data = clean_bodyfat(df)
    summarize_columns(data[BODYFAT_PREDICTORS + [BODYFAT_TARGET]]).to_csv(tables / "bodyfat_column_summary.csv",
                                                                        index=False)
    save_figure(plot_correlation(data, BODYFAT_PREDICTORS + [BODYFAT_TARGET]), figures / "bodyfat_correlation.png")
    data, scaling = standardize(data, BODYFAT_PREDICTORS)
    scaling.to_csv(tables / "bodyfat_scaling.csv", index=False)
    y = data[BODYFAT_TARGET].to_numpy(dtype=float)

    formula = build_formula(BODYFAT_TARGET, BODYFAT_PREDICTORS)
    fit1 = fit_reference(data, formula, "gaussian", "normal_prior", params, seed, **NORMAL_PRIOR)
    _write_posterior(fit1, "bodyfat_normal", tables, figures, "Normal prior")

    n_obs, n_coefs = fit1.X.shape
    tau0 = horseshoe_global_scale(BODYFAT_P0, n_coefs, n_obs)
    hs_params = dict(params, target_accept=HORSESHOE_TARGET_ACCEPT)
    hs_prior = dict(slab_scale=HORSESHOE_SLAB_SCALE, slab_df=HORSESHOE_SLAB_DF)
    fit2 = fit_reference(data, formula, "gaussian", "regularized_horseshoe", hs_params, seed, global_scale=tau0,
                         **hs_prior)
    _write_posterior(fit2, "bodyfat_horseshoe", tables, figures, "Regularized horseshoe prior")

    loo1 = fit1.loo()
    loo2 = fit2.loo()
    loo_summary_table({"normal": loo1, "horseshoe": loo2}).to_csv(tables / "bodyfat_loo_summary.csv", index=False)
    compare_models({"normal": fit1.idata, "horseshoe": fit2.idata}).to_csv(tables / "bodyfat_compare.csv",
                                                                          index_label="model")
    pareto_k_table(loo2.pareto_k.values).to_csv(tables / "bodyfat_pareto_k.csv", index=False)
    save_figure(plot_pareto_k(loo2.pareto_k.values), figures / "bodyfat_pareto_k.png")

    projpred_kwargs = dict(nclusters=nclusters, ndraws_pred=ndraws_pred, n_boot_se=n_boot_se)
    vs = ProjectionPredictive.from_reference(fit2, seed=seed, **projpred_kwargs)
    vs.varsel(nterms_max=nterms_max, validate_search=validate_search, nloo=nloo)
    vs.summary.to_csv(tables / "bodyfat_varsel.csv", index=False)
    save_figure(plot_varsel(vs.summary, vs.reference_stats, ("elpd", "rmse")), figures / "bodyfat_varsel.png")
    if vs.cv_proportions is not None:
        vs.cv_proportions.to_csv(tables / "bodyfat_cv_proportions.csv", index=False)

    size_elpd = vs.suggest_size("elpd")
    size_rmse = vs.suggest_size("rmse")
    nsel = size_elpd if size_elpd is not None else len(vs.solution_path)
    selected = vs.solution_terms[:nsel]
    logger.info("Suggested size %s (elpd), %s (rmse); projecting onto %s", size_elpd, size_rmse, selected)

    proj = vs.project(nterms=nsel, ndraws=ndraws)
    proj.to_csv(tables / "bodyfat_projected_draws.csv", index=False)
    save_figure(plot_draws_areas(proj, CREDIBLE_INTERVAL, title="Projected posterior"),
                figures / "bodyfat_projected_areas.png")

    rmse_table = pd.DataFrame([
        {"model": "normal", "rmse": rmse(y, fit1.epred().mean(axis=0)), "rmse_loo": rmse(y, fit1.loo_epred())},
        {"model": "horseshoe", "rmse": rmse(y, fit2.epred().mean(axis=0)), "rmse_loo": rmse(y, fit2.loo_epred())},
        {"model": "projected", "rmse": rmse(y, vs.proj_epred().mean(axis=0)),
         "rmse_loo": float(_row_at_size(vs.summary, nsel)["rmse"])},
    ])
    rmse_table.to_csv(tables / "bodyfat_rmse.csv", index=False)

    results = {
        "n_obs": n_obs,
        "elpd_loo": {"normal": float(loo1.elpd_loo), "horseshoe": float(loo2.elpd_loo)},
        "solution_terms": vs.solution_terms,
        "suggested_size": {"elpd": size_elpd, "rmse": size_rmse},
        "selected_terms": selected,
        "rmse": rmse_table,
    }

    if n_boot > 0:
        # Single chain per bootstrap refit
        boot_params = dict(hs_params, chains=1)

        def refit(boot_data, replicate):
            return fit_reference(boot_data, formula, "gaussian", "regularized_horseshoe", boot_params,
                                 seed + replicate + 1, global_scale=tau0, **hs_prior)

        boot = bootstrap_selection(data, refit, n_boot=n_boot, seed=seed, nterms_max=nterms_max, **projpred_kwargs)
        boot.assign(
            selected=boot["selected"].map(" + ".join),
            path=boot["path"].map(" + ".join),
        ).to_csv(tables / "bodyfat_bootstrap_selection.csv", index=False)

        freq = selection_frequencies(boot, fit2.coef_names)
        freq.to_csv(tables / "bodyfat_bootstrap_inclusion.csv", index=False)
        save_figure(plot_selection_frequencies(freq), figures / "bodyfat_bootstrap_inclusion.png")

        sizes = boot["size"].value_counts(dropna=False).rename_axis("size").reset_index(name="count")
        sizes["proportion"] = sizes["count"] / len(boot)
        sizes.to_csv(tables / "bodyfat_bootstrap_sizes.csv", index=False)
        submodel_frequencies(boot).to_csv(tables / "bodyfat_bootstrap_submodels.csv", index=False)
        results["bootstrap_inclusion"] = freq

    if noise_vars > 0:
        noisy, noise_names = add_noise_columns(data, noise_vars, seed)
        noisy_formula = build_formula(BODYFAT_TARGET, BODYFAT_PREDICTORS + noise_names)
        tau0_noisy = horseshoe_global_scale(BODYFAT_P0, n_coefs + noise_vars, n_obs)
        fit3 = fit_reference(noisy, noisy_formula, "gaussian", "regularized_horseshoe", hs_params, seed,
                             global_scale=tau0_noisy, **hs_prior)

        # The noisy search stops after as many steps as there are real predictors
        noisy_nterms = nterms_max if nterms_max is not None else len(BODYFAT_PREDICTORS)
        vs_noisy = ProjectionPredictive.from_reference(fit3, seed=seed, **projpred_kwargs).varsel(
            nterms_max=noisy_nterms)
        vs_noisy.summary.to_csv(tables / "bodyfat_noise_varsel.csv", index=False)
        save_figure(plot_varsel(vs_noisy.summary, vs_noisy.reference_stats, ("elpd", "rmse")),
                    figures / "bodyfat_noise_varsel.png")

        size_noisy = vs_noisy.suggest_size("elpd")
        noisy_selected = vs_noisy.solution_terms[:size_noisy] if size_noisy is not None else []
        pd.DataFrame({
            "term": noisy_selected,
            "is_noise": [term in noise_names for term in noisy_selected],
        }).to_csv(tables / "bodyfat_noise_selected.csv", index=False)
        results["noise"] = {
            "suggested_size": size_noisy,
            "selected_terms": noisy_selected,
            "n_noise_selected": sum(term in noise_names for term in noisy_selected),
        }

    _write_metadata(logs / "bodyfat_run_metadata.json", "bodyfat", seed, params, extra={
        "projection": {"nterms_max": nterms_max, "validate_search": validate_search, "nloo": nloo,
                       "nclusters": nclusters, "ndraws_pred": ndraws_pred, "ndraws": ndraws},
        "experiments": {"n_boot": n_boot, "noise_vars": noise_vars},
        "results": {k: v for k, v in results.items() if k not in ("rmse", "bootstrap_inclusion")},
    })
    return results
