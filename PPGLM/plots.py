from pathlib import Path

import arviz as az
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np


def save_figure(fig, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)


def _forest_figure(axes):
    return np.ravel(axes)[0].figure


def plot_posterior_areas(idata, var_names=("beta",), credible_interval=90, title=""):
    '''
    Ridge plot of marginal posteriors, one row per coefficient, truncated to the credible interval
    :param idata: InferenceData with a posterior group
    :param var_names: posterior variables to plot
    :param credible_interval: width of the plotted interval, in percent
    :return: matplotlib figure
    '''
    axes = az.plot_forest(
        idata,
        var_names=list(var_names),
        kind="ridgeplot",
        combined=True,
        hdi_prob=credible_interval / 100,
        ridgeplot_overlap=1.5,
        colors="lightsteelblue",
    )
    fig = _forest_figure(axes)
    np.ravel(axes)[0].axvline(0.0, color="grey", linestyle="--", linewidth=0.8)
    if title:
        fig.suptitle(title)
    return fig


def plot_draws_areas(draws, credible_interval=90, title=""):
    '''
    Same ridge plot for a frame of draws, one column per parameter, e.g. projected draws
    '''
    posterior = {str(col): draws[col].to_numpy(dtype=float)[None, :] for col in draws.columns}
    return plot_posterior_areas(
        az.from_dict(posterior=posterior),
        var_names=list(posterior),
        credible_interval=credible_interval,
        title=title,
    )


def plot_pareto_k(khat, title="PSIS diagnostic"):
    fig, ax = plt.subplots(figsize=(8, 4))
    k = np.asarray(khat, dtype=float)
    ax.scatter(np.arange(k.size), k, s=10, marker="+", color="tab:blue")
    for level, color in ((0.5, "tab:orange"), (0.7, "tab:red"), (1.0, "darkred")):
        ax.axhline(level, color=color, linestyle="--", linewidth=0.8)
    ax.set_xlabel("Observation")
    ax.set_ylabel("Pareto k")
    ax.set_title(title)
    fig.tight_layout()
    return fig


def plot_calibration(binned, smooth=None, title="LOO calibration"):
    fig, ax = plt.subplots(figsize=(5, 5))
    ax.plot([0, 1], [0, 1], color="grey", linestyle="--", linewidth=0.8, label="Ideal")
    ax.plot(binned["mean_predicted"], binned["fraction_positive"], marker="o", label="Binned")
    if smooth is not None:
        ax.plot(smooth["predicted"], smooth["observed_smooth"], color="tab:red", label="Spline")
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_xlabel("Predicted probability")
    ax.set_ylabel("Observed frequency")
    ax.set_title(title)
    ax.legend()
    fig.tight_layout()
    return fig


def plot_varsel(summary, reference, stats=("elpd",), deltas=True):
    '''
    Performance of each submodel size; the dashed line is the reference model
    :param summary: ProjectionPredictive.summary
    :param reference: reference model statistics
    :param deltas: plot differences to the reference instead of absolute values
    '''
    stats = list(stats)
    fig, axes = plt.subplots(len(stats), 1, figsize=(7, 3 * len(stats)), sharex=True, squeeze=False)
    sizes = summary["size"].to_numpy()

    for ax, stat in zip(axes[:, 0], stats):
        se = summary[f"{stat}_diff_se"].to_numpy(dtype=float)
        if deltas:
            values = summary[f"{stat}_diff"].to_numpy(dtype=float)
            ref = 0.0
            ax.set_ylabel(f"{stat} difference")
        else:
            values = summary[stat].to_numpy(dtype=float)
            ref = float(reference[stat])
            ax.set_ylabel(stat)
        ax.errorbar(sizes, values, yerr=np.nan_to_num(se), marker="o", capsize=3)
        ax.axhline(ref, color="tab:red", linestyle="--", linewidth=0.8)

    axes[-1, 0].set_xlabel("Submodel size")
    axes[-1, 0].set_xticks(sizes)
    fig.tight_layout()
    return fig


def plot_selection_frequencies(freq, title="Bootstrap inclusion frequency"):
    fig, ax = plt.subplots(figsize=(7, max(3, 0.35 * len(freq))))
    ordered = freq.iloc[::-1]
    ax.barh(ordered["term"], ordered["frequency"], color="tab:blue")
    ax.set_xlim(0, 1)
    ax.set_xlabel("Frequency")
    ax.set_title(title)
    fig.tight_layout()
    return fig


def plot_correlation(df, columns, title="Correlation"):
    corr = df[list(columns)].corr()
    fig, ax = plt.subplots(figsize=(8, 7))
    im = ax.imshow(corr.to_numpy(), cmap="RdBu_r", vmin=-1, vmax=1)
    ax.set_xticks(np.arange(len(columns)))
    ax.set_yticks(np.arange(len(columns)))
    ax.set_xticklabels(columns, rotation=45, ha="right", fontsize=8)
    ax.set_yticklabels(columns, fontsize=8)
    for i in range(len(columns)):
        for j in range(len(columns)):
            ax.text(j, i, f"{corr.iat[i, j]:.2f}", ha="center", va="center", fontsize=6)
    fig.colorbar(im, ax=ax, shrink=0.8)
    ax.set_title(title)
    fig.tight_layout()
    return fig
