import logging

import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from patsy import dmatrix, build_design_matrices


class PatsyTransformer(BaseEstimator, TransformerMixin):
    '''
    Design matrix for the right-hand side of a patsy formula. The intercept column
    is dropped: every model samples its intercept as a separate parameter.
    '''

    def __init__(self, formula):
        self.formula = formula
        self.design_info_ = None

    def fit(self, X, y=None):
        X_design = dmatrix(formula_rhs(self.formula), X, NA_action='raise', return_type='dataframe')

        # Save design_info so new data gets the same columns (and the same spline knots)
        self.design_info_ = X_design.design_info
        return self

    def transform(self, X):
        if self.design_info_ is None:
            raise ValueError("The PatsyTransformer has not been fitted yet.")

        X_transformed = build_design_matrices([self.design_info_], X, NA_action='raise', return_type='dataframe')[0]
        return X_transformed.drop(columns=['Intercept'], errors='ignore')

    @property
    def column_names(self):
        if self.design_info_ is None:
            raise ValueError("The PatsyTransformer has not been fitted yet.")
        return [c for c in self.design_info_.column_names if c != 'Intercept']


def build_formula(target, predictors):
    predictors = list(predictors)
    if not predictors:
        return f"{target} ~ 1"
    return f"{target} ~ " + " + ".join(predictors)


def _split_formula(formula):
    if formula.count('~') != 1:
        raise ValueError(f"Formula must have exactly one '~': {formula!r}")
    lhs, rhs = formula.split('~')
    return lhs.strip(), rhs.strip()


def formula_lhs(formula):
    lhs, _ = _split_formula(formula)
    if not lhs:
        raise ValueError(f"Formula has no outcome: {formula!r}")
    return lhs


def formula_rhs(formula):
    _, rhs = _split_formula(formula)
    return rhs


def horseshoe_global_scale(p0, p, n, sigma=1.0):
    '''
    Global scale for the horseshoe prior from a prior guess p0 of the number of relevant
    coefficients (Piironen & Vehtari, 2017): tau0 = p0 / (p - p0) * sigma / sqrt(n)
    '''
    if not 0 < p0 < p:
        raise ValueError(f"p0 must be in (0, {p}), got {p0}")
    if n <= 0:
        raise ValueError("n must be positive")
    return p0 / (p - p0) * sigma / np.sqrt(n)


def credible_bounds(credible_interval=90):
    if not 0 < credible_interval < 100:
        raise ValueError("credible_interval must be in (0, 100)")
    lower = (100 - credible_interval) / 2
    upper = 100 - lower
    return lower, upper


def thin_draws(n_total, ndraws):
    '''
    Evenly spaced draw indices; all draws when ndraws >= n_total
    '''
    if ndraws is None or ndraws >= n_total:
        return np.arange(n_total)
    if ndraws <= 0:
        raise ValueError("ndraws must be positive")
    return np.unique(np.linspace(0, n_total - 1, ndraws).round().astype(int))


def package_versions(packages):
    from importlib import metadata

    out = {}
    for pkg in packages:
        try:
            out[pkg] = metadata.version(pkg)
        except metadata.PackageNotFoundError:
            out[pkg] = None
    return out


def setup_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # jax and matplotlib are chatty at INFO
    for name in ("jax", "matplotlib"):
        logging.getLogger(name).setLevel(logging.WARNING)
