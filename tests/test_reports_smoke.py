import json
import subprocess
import sys
from pathlib import Path

import pandas as pd

from PPGLM.reports import run_bodyfat_report, run_diabetes_report

TINY = dict(nclusters=5, ndraws_pred=50, ndraws=50, n_boot_se=20)
TINY_MCMC = {"warmup": 60, "mcmcsamples": 60, "chains": 1}


def test_diabetes_report_smoke(tmp_path, diabetes_df):
    results = run_diabetes_report(diabetes_df, tmp_path, params=TINY_MCMC, seed=1, nterms_max=3, **TINY)

    required = [
        "tables/diabetes_column_summary.csv",
        "tables/diabetes_scaling.csv",
        "tables/diabetes_student_t_posterior_summary.csv",
        "tables/diabetes_horseshoe_posterior_summary.csv",
        "tables/diabetes_accuracy.csv",
        "tables/diabetes_confusion_in_sample.csv",
        "tables/diabetes_confusion_loo.csv",
        "tables/diabetes_calibration_binned.csv",
        "tables/diabetes_calibration_smooth.csv",
        "tables/diabetes_pareto_k.csv",
        "tables/diabetes_loo_summary.csv",
        "tables/diabetes_compare_baseline.csv",
        "tables/diabetes_compare_horseshoe.csv",
        "tables/diabetes_varsel.csv",
        "tables/diabetes_projected_draws.csv",
        "tables/diabetes_projected_accuracy.csv",
        "figures/diabetes_student_t_posterior_areas.png",
        "figures/diabetes_horseshoe_posterior_areas.png",
        "figures/diabetes_calibration.png",
        "figures/diabetes_pareto_k.png",
        "figures/diabetes_varsel.png",
        "figures/diabetes_projected_areas.png",
        "logs/diabetes_run_metadata.json",
    ]
    for rel in required:
        assert (tmp_path / rel).exists(), f"Missing expected diabetes artifact: {rel}"

    varsel = pd.read_csv(tmp_path / "tables/diabetes_varsel.csv")
    assert varsel["size"].tolist() == [0, 1, 2, 3]
    assert len(results["solution_terms"]) == 3
    assert set(results["selected_terms"]) <= set(results["solution_terms"])

    meta = json.loads((tmp_path / "logs/diabetes_run_metadata.json").read_text(encoding="utf-8"))
    assert meta["seed"] == 1
    assert meta["params"]["mcmcsamples"] == 60
    assert "numpyro" in meta["runtime"]["packages"]


def test_bodyfat_report_smoke(tmp_path, bodyfat_df):
    results = run_bodyfat_report(bodyfat_df, tmp_path, params=TINY_MCMC, seed=2, nterms_max=3, n_boot=2,
                                 noise_vars=3, **TINY)

    required = [
        "tables/bodyfat_column_summary.csv",
        "tables/bodyfat_scaling.csv",
        "tables/bodyfat_normal_posterior_summary.csv",
        "tables/bodyfat_horseshoe_posterior_summary.csv",
        "tables/bodyfat_loo_summary.csv",
        "tables/bodyfat_compare.csv",
        "tables/bodyfat_pareto_k.csv",
        "tables/bodyfat_varsel.csv",
        "tables/bodyfat_projected_draws.csv",
        "tables/bodyfat_rmse.csv",
        "tables/bodyfat_bootstrap_selection.csv",
        "tables/bodyfat_bootstrap_inclusion.csv",
        "tables/bodyfat_bootstrap_sizes.csv",
        "tables/bodyfat_bootstrap_submodels.csv",
        "tables/bodyfat_noise_varsel.csv",
        "tables/bodyfat_noise_selected.csv",
        "figures/bodyfat_correlation.png",
        "figures/bodyfat_varsel.png",
        "figures/bodyfat_projected_areas.png",
        "figures/bodyfat_bootstrap_inclusion.png",
        "figures/bodyfat_noise_varsel.png",
        "logs/bodyfat_run_metadata.json",
    ]
    for rel in required:
        assert (tmp_path / rel).exists(), f"Missing expected bodyfat artifact: {rel}"

    rmse = pd.read_csv(tmp_path / "tables/bodyfat_rmse.csv")
    assert rmse["model"].tolist() == ["normal", "horseshoe", "projected"]
    assert (rmse["rmse_loo"] > 0).all()
    assert "noise" in results

    inclusion = pd.read_csv(tmp_path / "tables/bodyfat_bootstrap_inclusion.csv")
    assert len(inclusion) == 13
    assert inclusion["frequency"].between(0, 1).all()


def test_script_exits_on_missing_data(tmp_path):
    repo_root = Path(__file__).resolve().parents[1]
    cmd = [
        sys.executable,
        str(repo_root / "scripts" / "01_diabetes.py"),
        "--data",
        str(tmp_path / "missing.csv"),
        "--outdir",
        str(tmp_path / "outputs"),
    ]
    proc = subprocess.run(cmd, cwd=repo_root, capture_output=True, text=True)
    assert proc.returncode != 0
    assert "Diabetes data not found" in proc.stderr
