import arviz as az
import numpy as np
import pandas as pd
import xarray as xr
from scipy.special import logsumexp
from sklearn.calibration import calibration_curve
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import confusion_matrix

from PPGLM.utils import PatsyTransformer

PARETO_K_BINS = [-np.inf, 0.5, 0.7, 1.0, np.inf]
PARETO_K_LABELS = ["(-Inf, 0.5] (good)", "(0.5, 0.7] (ok)", "(0.7, 1] (bad)", "(1, Inf) (very bad)"]


def classification_accuracy(y_true, y_prob, threshold=0.5):
    y = np.asarray(y_true, dtype=int)
    pred = (np.asarray(y_prob, dtype=float) >= threshold).astype(int)
    return float(np.mean(pred == y))


def confusion_table(y_true, y_prob, threshold=0.5):
    y = np.asarray(y_true, dtype=int)
    pred = (np.asarray(y_prob, dtype=float) >= threshold).astype(int)
    cm = confusion_matrix(y, pred, labels=[0, 1])
    return pd.DataFrame(cm, index=["observed_0", "observed_1"], columns=["predicted_0", "predicted_1"])


def rmse(y_true, y_pred):
    y = np.asarray(y_true, dtype=float)
    mu = np.asarray(y_pred, dtype=float)
    return float(np.sqrt(np.mean((y - mu) ** 2)))


def psis_loo_weights(log_lik, reff=1.0):
    '''
    Pareto-smoothed leave-one-out importance weights
    :param log_lik: pointwise log-likelihood, (draws, observations)
    :param reff: relative effective sample size of the draws
    :return: normalized weights, (observations, draws), and the Pareto k of each observation
    '''
    log_ratios = -np.asarray(log_lik, dtype=float).T
    log_ratios = xr.DataArray(log_ratios, dims=["obs", "__sample__"], coords={"__sample__": np.arange(log_ratios.shape[1])})
    smoothed, khat = az.psislw(log_ratios, reff=reff)
    smoothed = np.asarray(smoothed.transpose("obs", "__sample__").values, dtype=float)
    smoothed = smoothed - logsumexp(smoothed, axis=1, keepdims=True)
    return np.exp(smoothed), np.asarray(khat, dtype=float)


def loo_expectation(values, weights):
    '''
    LOO expectation per observation; values (draws, observations), weights (observations, draws)
    '''
    return np.einsum("is,si->i", weights, np.asarray(values, dtype=float))


def calibration_curve_df(y_true, y_prob, n_bins=10, strategy="quantile"):
    frac_pos, mean_pred = calibration_curve(y_true, y_prob, n_bins=n_bins, strategy=strategy)
    return pd.DataFrame({"mean_predicted": mean_pred, "fraction_positive": frac_pos})


def smooth_calibration_curve(y_true, y_prob, df=5, grid_size=100):
    '''
    Calibration curve from a logistic regression on a natural cubic spline of the predicted probability
    :param y_true: 0/1 outcomes
    :param y_prob: predicted probabilities
    :param df: spline degrees of freedom
    :param grid_size: number of probabilities the curve is evaluated at
    :return:
    '''
    y = np.asarray(y_true, dtype=int)
    if np.unique(y).size < 2:
        raise ValueError("Smoothed calibration needs both outcome classes.")
    frame = pd.DataFrame({"prob": np.clip(np.asarray(y_prob, dtype=float), 1e-6, 1 - 1e-6)})

    transformer = PatsyTransformer(f"y ~ cr(prob, df={int(df)}, constraints='center')").fit(frame)
    # Near-unregularized
    model = LogisticRegression(C=1e6, solver="lbfgs", max_iter=2000)
    model.fit(transformer.transform(frame), y)

    grid = pd.DataFrame({"prob": np.linspace(frame["prob"].min(), frame["prob"].max(), grid_size)})
    fitted = model.predict_proba(transformer.transform(grid))[:, 1]
    return pd.DataFrame({"predicted": grid["prob"].to_numpy(), "observed_smooth": fitted})


def pareto_k_table(khat):
    k = np.asarray(khat, dtype=float)
    counts = pd.Series(pd.cut(k, PARETO_K_BINS, labels=PARETO_K_LABELS)).value_counts(sort=False)
    out = counts.rename_axis("range").reset_index(name="count")
    out["pct"] = (out["count"] / k.size * 100.0).round(1) if k.size else np.nan
    return out


def loo_summary_table(results):
    rows = []
    for name, res in results.items():
        khat = np.asarray(res.pareto_k, dtype=float)
        rows.append(
            {
                "model": name,
                "elpd_loo": float(res.elpd_loo),
                "se": float(res.se),
                "p_loo": float(res.p_loo),
                "n_khat_gt_0.7": int(np.sum(khat > 0.7)),
            }
        )
    return pd.DataFrame(rows)


def compare_models(idatas):
    return az.compare(idatas, ic="loo")


def elpd_difference(elpd_i, ref_elpd_i):
    '''
    elpd of a model and its difference to a reference, from pointwise values
    '''
    elpd_i = np.asarray(elpd_i, dtype=float)
    diff_i = elpd_i - np.asarray(ref_elpd_i, dtype=float)
    n = elpd_i.size
    return {
        "elpd": float(np.sum(elpd_i)),
        "elpd_se": float(np.sqrt(n * np.var(elpd_i, ddof=1))) if n > 1 else np.nan,
        "elpd_diff": float(np.sum(diff_i)),
        "elpd_diff_se": float(np.sqrt(n * np.var(diff_i, ddof=1))) if n > 1 else np.nan,
    }


def bootstrap_stat_diff(y_true, pred_a, pred_b, stat, n_boot=500, seed=0):
    '''
    Bootstrap SE of stat(y, pred_a) - stat(y, pred_b), resampling observations
    :param stat: callable (y, prediction) -> float
    :param n_boot: number of resamples; nan for n_boot <= 1
    :param seed: numpy seed
    :return:
    '''
    if n_boot <= 1:
        return np.nan
    y = np.asarray(y_true, dtype=float)
    a = np.asarray(pred_a, dtype=float)
    b = np.asarray(pred_b, dtype=float)
    rng = np.random.default_rng(seed)
    diffs = np.empty(n_boot)
    for i in range(n_boot):
        idx = rng.integers(0, y.size, size=y.size, endpoint=False)
        diffs[i] = stat(y[idx], a[idx]) - stat(y[idx], b[idx])
    return float(np.std(diffs, ddof=1))
