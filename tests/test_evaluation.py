import numpy as np
import pytest
from scipy.special import expit

from PPGLM.evaluation import (
    bootstrap_stat_diff,
    calibration_curve_df,
    classification_accuracy,
    confusion_table,
    elpd_difference,
    loo_expectation,
    pareto_k_table,
    psis_loo_weights,
    rmse,
    smooth_calibration_curve,
)


def test_classification_accuracy_and_confusion():
    y = np.array([0, 0, 1, 1])
    prob = np.array([0.1, 0.6, 0.7, 0.4])
    assert classification_accuracy(y, prob) == 0.5

    table = confusion_table(y, prob)
    assert table.loc["observed_0", "predicted_0"] == 1
    assert table.loc["observed_0", "predicted_1"] == 1
    assert table.loc["observed_1", "predicted_1"] == 1
    assert table.to_numpy().sum() == 4


def test_rmse():
    assert rmse([1.0, 2.0], [1.0, 4.0]) == pytest.approx(np.sqrt(2.0))


def test_psis_loo_weights_are_normalized():
    rng = np.random.default_rng(0)
    log_lik = rng.normal(-1.0, 0.3, size=(200, 15))
    weights, khat = psis_loo_weights(log_lik)

    assert weights.shape == (15, 200)
    assert khat.shape == (15,)
    np.testing.assert_allclose(weights.sum(axis=1), 1.0)
    assert (weights >= 0).all()


def test_loo_expectation_with_uniform_weights():
    values = np.arange(12, dtype=float).reshape(4, 3)
    weights = np.full((3, 4), 0.25)
    np.testing.assert_allclose(loo_expectation(values, weights), values.mean(axis=0))


def test_calibration_tables():
    rng = np.random.default_rng(1)
    prob = rng.uniform(0.05, 0.95, 400)
    y = rng.binomial(1, prob)

    binned = calibration_curve_df(y, prob, n_bins=5)
    assert list(binned.columns) == ["mean_predicted", "fraction_positive"]
    assert len(binned) == 5

    smooth = smooth_calibration_curve(y, prob, grid_size=50)
    assert smooth.shape == (50, 2)
    assert smooth["observed_smooth"].between(0, 1).all()
    # well calibrated probabilities stay close to the diagonal in the middle
    middle = smooth.iloc[20:30]
    assert np.abs(middle["observed_smooth"] - middle["predicted"]).max() < 0.2


def test_smooth_calibration_needs_both_classes():
    with pytest.raises(ValueError):
        smooth_calibration_curve(np.zeros(10), np.linspace(0.1, 0.9, 10))


def test_pareto_k_table():
    table = pareto_k_table([0.1, 0.2, 0.6, 0.8, 1.2])
    assert table["count"].tolist() == [2, 1, 1, 1]
    assert table["pct"].tolist() == [40.0, 20.0, 20.0, 20.0]


def test_elpd_difference():
    ref = np.array([-1.0, -0.5, -0.7, -0.2])
    out = elpd_difference(ref - 0.1, ref)
    assert out["elpd"] == pytest.approx(ref.sum() - 0.4)
    assert out["elpd_diff"] == pytest.approx(-0.4)
    assert out["elpd_diff_se"] == pytest.approx(0.0, abs=1e-12)


def test_bootstrap_stat_diff():
    rng = np.random.default_rng(2)
    y = rng.binomial(1, 0.5, 100)
    prob = expit(rng.normal(size=100))
    assert bootstrap_stat_diff(y, prob, prob, classification_accuracy, n_boot=50) == 0.0
    se = bootstrap_stat_diff(y, prob, 1 - prob, classification_accuracy, n_boot=50, seed=3)
    assert se > 0
    assert np.isnan(bootstrap_stat_diff(y, prob, prob, classification_accuracy, n_boot=1))
