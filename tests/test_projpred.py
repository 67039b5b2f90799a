import numpy as np
import pandas as pd
import pytest
from scipy.special import expit, logit

from PPGLM.projpred import (
    ProjectionPredictive,
    bootstrap_selection,
    cluster_draws,
    forward_search,
    project_submodel,
    selection_frequencies,
    submodel_frequencies,
)
from PPGLM.utils import PatsyTransformer

NAMES = ["x1", "x2", "x3", "x4", "x5"]
BETA = np.array([1.5, -1.0, 0.0, 0.0, 0.0])


def _reference_draws(family, n=150, n_draws=200, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n, len(BETA)))
    beta = BETA + 0.05 * rng.standard_normal((n_draws, len(BETA)))
    intercept = 0.3 + 0.05 * rng.standard_normal(n_draws)
    eta = intercept[:, None] + beta @ X.T
    if family == "bernoulli":
        y = rng.binomial(1, expit(X @ BETA + 0.3)).astype(float)
        return X, y, expit(eta), None
    sigma = 0.5 + 0.02 * rng.standard_normal(n_draws)
    y = X @ BETA + 0.3 + rng.normal(0, 0.5, n)
    return X, y, eta, sigma


@pytest.fixture(params=["bernoulli", "gaussian"])
def family(request):
    return request.param


@pytest.fixture
def vs(family):
    X, y, mu, sigma = _reference_draws(family)
    return ProjectionPredictive(X, y, mu, family, coef_names=NAMES, sigma=sigma, nclusters=10, ndraws_pred=50,
                                n_boot_se=50)


def test_gaussian_projection_recovers_linear_mean():
    rng = np.random.default_rng(3)
    X = rng.standard_normal((50, 3))
    mu = (0.5 + X @ np.array([1.0, 2.0, -1.0]))[None, :]
    proj = project_submodel("gaussian", X, [0, 1, 2], mu, sigma2=np.array([0.25]))
    np.testing.assert_allclose(proj.coef[0], [1.0, 2.0, -1.0], atol=1e-8)
    np.testing.assert_allclose(proj.intercept, [0.5], atol=1e-8)
    # exact fit leaves the residual sd unchanged
    np.testing.assert_allclose(proj.sigma, [0.5])

    partial = project_submodel("gaussian", X, [1], mu, sigma2=np.array([0.25]))
    assert partial.sigma[0] > 0.5


def test_bernoulli_projection_recovers_logistic_mean():
    rng = np.random.default_rng(4)
    X = rng.standard_normal((300, 2))
    mu = expit(-0.5 + X @ np.array([1.0, -2.0]))[None, :]
    proj = project_submodel("bernoulli", X, [0, 1], mu)
    np.testing.assert_allclose(proj.coef[0], [1.0, -2.0], atol=0.05)
    np.testing.assert_allclose(proj.intercept, [-0.5], atol=0.05)


def test_empty_submodel_closed_form():
    mu = np.array([[0.2, 0.4], [0.6, 0.8]])
    X = np.zeros((2, 1))
    proj = project_submodel("bernoulli", X, [], mu)
    np.testing.assert_allclose(proj.intercept, logit([0.3, 0.7]))
    proj = project_submodel("gaussian", X, [], mu, sigma2=np.zeros(2))
    np.testing.assert_allclose(proj.intercept, [0.3, 0.7])
    np.testing.assert_allclose(proj.sigma, [0.1, 0.1])


def test_cluster_draws():
    X, _, mu, sigma = _reference_draws("gaussian")
    centres, sigma2, weights = cluster_draws(mu, sigma ** 2, nclusters=5, seed=0)
    assert centres.shape[1] == mu.shape[1]
    assert weights.sum() == pytest.approx(1.0)
    assert (sigma2 >= (sigma ** 2).min()).all()

    mean, _, w = cluster_draws(mu, sigma ** 2, nclusters=1)
    np.testing.assert_allclose(mean[0], mu.mean(axis=0))
    assert w.tolist() == [1.0]

    same, _, w = cluster_draws(mu, None, nclusters=None)
    assert same is mu
    assert w.size == mu.shape[0]


def test_forward_search_finds_relevant_terms(family):
    X, _, mu, sigma = _reference_draws(family)
    sigma2 = sigma ** 2 if sigma is not None else None
    path, projections = forward_search(family, X, mu, sigma2, np.full(mu.shape[0], 1 / mu.shape[0]), nterms_max=3)
    assert path[:2] == [0, 1]
    assert len(projections) == 4
    assert projections[2].terms == [0, 1]


def test_varsel_summary(vs, family):
    vs.varsel()
    stat = "pctcorr" if family == "bernoulli" else "rmse"

    summary = vs.summary
    assert summary["size"].tolist() == [0, 1, 2, 3, 4, 5]
    assert vs.solution_terms[:2] == ["x1", "x2"]
    assert summary["solution_term"].iloc[0] is None
    assert {"elpd", "elpd_se", "elpd_diff", "elpd_diff_se", stat, f"{stat}_diff", f"{stat}_diff_se"} <= set(summary)

    # the null model is clearly worse, the two-term model is close to the reference
    assert summary.loc[0, "elpd_diff"] < summary.loc[2, "elpd_diff"]
    assert abs(summary.loc[2, "elpd_diff"]) < 4 * summary.loc[2, "elpd_diff_se"] + 1.0
    assert stat in vs.reference_stats
    assert vs.cv_proportions is None


def test_suggest_size(vs, family):
    with pytest.raises(ValueError, match="varsel"):
        vs.suggest_size()

    vs.varsel()
    # allow 5% of the gap between the null model and the reference
    assert vs.suggest_size("elpd", pct=0.05) == 2
    stat = "pctcorr" if family == "bernoulli" else "rmse"
    assert vs.suggest_size(stat, pct=0.05) is not None
    with pytest.raises(ValueError):
        vs.suggest_size("rmse" if family == "bernoulli" else "pctcorr")


def test_suggest_size_returns_none_when_nothing_qualifies(vs, caplog):
    vs.varsel(nterms_max=1)
    vs.summary["elpd_diff"] = -100.0
    vs.summary["elpd_diff_se"] = 1.0
    vs.summary.loc[0, "elpd_diff"] = -10.0
    with caplog.at_level("WARNING"):
        assert vs.suggest_size("elpd", pct=0.0) is None
    assert "No submodel size" in caplog.text


def test_project_and_predict(vs, family):
    vs.varsel(nterms_max=3)
    draws = vs.project(nterms=2, ndraws=40)

    expected = ["intercept", "x1", "x2"] + (["sigma"] if family == "gaussian" else [])
    assert list(draws.columns) == expected
    assert len(draws) == 40
    assert draws["x1"].mean() == pytest.approx(1.5, abs=0.2)
    assert vs.proj_linpred().shape == (40, vs.X.shape[0])

    explicit = vs.project(solution_terms=["x3"], ndraws=10)
    assert list(explicit.columns[:2]) == ["intercept", "x3"]

    with pytest.raises(ValueError):
        vs.project(nterms=4)
    with pytest.raises(ValueError):
        vs.project(solution_terms=["nope"])
    with pytest.raises(ValueError, match="transformer"):
        vs.proj_linpred(pd.DataFrame({"x1": [0.0]}))


def test_proj_linpred_on_new_data():
    X, y, mu, sigma = _reference_draws("gaussian")
    frame = pd.DataFrame(X, columns=NAMES).assign(y=y)
    transformer = PatsyTransformer("y ~ " + " + ".join(NAMES)).fit(frame)
    vs = ProjectionPredictive(X, y, mu, "gaussian", coef_names=NAMES, sigma=sigma, transformer=transformer,
                              nclusters=5, ndraws_pred=30, n_boot_se=20)
    vs.varsel(nterms_max=2)
    vs.project(nterms=2, ndraws=20)
    np.testing.assert_allclose(vs.proj_linpred(frame.head(7)), vs.proj_linpred()[:, :7])


def test_validate_search_records_cv_proportions(vs):
    vs.varsel(nterms_max=2, validate_search=True, nloo=10)
    assert len(vs.cv_paths) == 10
    props = vs.cv_proportions
    assert props["size"].tolist() == [1, 2]
    assert props.loc[props["size"] == 2, "x1"].iloc[0] == 1.0
    assert props.loc[props["size"] == 2, "x2"].iloc[0] == 1.0
    assert np.isfinite(vs.summary["elpd"]).all()


def test_constructor_validation():
    X, y, mu, sigma = _reference_draws("gaussian", n=20, n_draws=30)
    with pytest.raises(ValueError, match="sigma"):
        ProjectionPredictive(X, y, mu, "gaussian")
    with pytest.raises(ValueError, match="family"):
        ProjectionPredictive(X, y, mu, "poisson")
    with pytest.raises(ValueError, match="observations"):
        ProjectionPredictive(X[:10], y, mu, "gaussian", sigma=sigma)


class _FakeReference:
    """Minimal stand-in for a fitted BayesGLM: draws around fixed coefficients."""

    family = "gaussian"
    coef_names = NAMES
    transformer = None

    def __init__(self, data, replicate):
        rng = np.random.default_rng(replicate)
        self.X = data[NAMES].to_numpy()
        self.y = data["y"].to_numpy()
        beta = BETA + 0.05 * rng.standard_normal((60, len(BETA)))
        self._mu = 0.3 + beta @ self.X.T
        self._sigma = np.full(60, 0.5)

    def epred(self):
        return self._mu

    def draws(self, name):
        assert name == "sigma"
        return self._sigma


def test_bootstrap_selection_and_frequencies():
    X, y, _, _ = _reference_draws("gaussian", n=80)
    data = pd.DataFrame(X, columns=NAMES).assign(y=y)

    boot = bootstrap_selection(data, _FakeReference, n_boot=3, seed=0, nterms_max=3, pct=0.05, nclusters=5,
                               ndraws_pred=30, n_boot_se=20)
    assert boot["replicate"].tolist() == [0, 1, 2]
    assert all(path[:2] == ("x1", "x2") for path in boot["path"])

    freq = selection_frequencies(boot, NAMES)
    assert freq["term"].tolist()[:2] == ["x1", "x2"]
    assert freq.set_index("term").loc["x1", "frequency"] == 1.0

    top = submodel_frequencies(boot)
    assert top["count"].sum() == 3
    assert top["frequency"].sum() == pytest.approx(1.0)
