import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import expit, logit, logsumexp
from sklearn.cluster import KMeans
from sklearn.linear_model import LinearRegression, LogisticRegression

from PPGLM.config import (
    BOOTSTRAP_N,
    BOOTSTRAP_SE_N,
    PROJ_NCLUSTERS,
    PROJ_NDRAWS,
    PROJ_NDRAWS_PRED,
    SUGGEST_SIZE_ALPHA,
)
from PPGLM.evaluation import (
    bootstrap_stat_diff,
    classification_accuracy,
    elpd_difference,
    loo_expectation,
    psis_loo_weights,
    rmse,
)
from PPGLM.models import FAMILIES
from PPGLM.utils import thin_draws

logger = logging.getLogger(__name__)


@dataclass
class Projection:
    '''
    Submodel parameters projected from K reference draws or clusters
    '''
    terms: List[int]
    intercept: np.ndarray
    coef: np.ndarray
    sigma: Optional[np.ndarray]
    weights: np.ndarray

    def linpred(self, X):
        linear_pred = np.repeat(self.intercept[:, None], X.shape[0], axis=1)
        if self.terms:
            linear_pred = linear_pred + self.coef @ X[:, self.terms].T
        return linear_pred


def _log_lik(family, y, linear_pred, sigma=None):
    if family == 'bernoulli':
        return y * linear_pred - np.logaddexp(0.0, linear_pred)
    return stats.norm.logpdf(y, loc=linear_pred, scale=sigma[:, None])


def _mean(family, linear_pred):
    if family == 'bernoulli':
        return expit(linear_pred)
    return linear_pred


def project_submodel(family, X, terms, mu, sigma2=None, weights=None, regularization=1e-4):
    '''
    KL projection of reference predictions onto the columns `terms` of X.

    :param mu: (K, n) reference means, one row per draw or cluster
    :param sigma2: (K,) reference residual variances (gaussian)
    :param weights: (K,) weights of the rows of mu; uniform by default
    :param regularization: L2 penalty of the bernoulli projection
    '''
    mu = np.atleast_2d(np.asarray(mu, dtype=float))
    n_rows, n_obs = mu.shape
    terms = list(terms)
    weights = np.full(n_rows, 1.0 / n_rows) if weights is None else np.asarray(weights, dtype=float)
    X_sub = X[:, terms]

    if family == 'gaussian':
        if sigma2 is None:
            raise ValueError("sigma2 is required for the gaussian projection")
        if terms:
            # Least squares for every row at once (multi-output)
            reg = LinearRegression().fit(X_sub, mu.T)
            coef = np.atleast_2d(reg.coef_)
            intercept = np.atleast_1d(reg.intercept_)
        else:
            coef = np.zeros((n_rows, 0))
            intercept = mu.mean(axis=1)
        fitted = intercept[:, None] + coef @ X_sub.T
        sigma = np.sqrt(np.asarray(sigma2, dtype=float) + np.mean((mu - fitted) ** 2, axis=1))
        return Projection(terms, intercept, coef, sigma, weights)

    if family != 'bernoulli':
        raise ValueError(f"Unknown family {family!r}; expected one of {FAMILIES}")

    coef = np.zeros((n_rows, len(terms)))
    if not terms:
        intercept = logit(np.clip(mu.mean(axis=1), 1e-9, 1 - 1e-9))
        return Projection(terms, intercept, coef, None, weights)

    # Bernoulli KL projection = logistic regression on fractional outcomes,
    # written as duplicated rows weighted by mu and 1 - mu
    intercept = np.zeros(n_rows)
    X_dup = np.vstack([X_sub, X_sub])
    y_dup = np.r_[np.ones(n_obs), np.zeros(n_obs)]
    model = LogisticRegression(C=1.0 / regularization, solver='lbfgs', max_iter=1000)
    for k in range(n_rows):
        model.fit(X_dup, y_dup, sample_weight=np.r_[mu[k], 1.0 - mu[k]])
        coef[k] = model.coef_[0]
        intercept[k] = model.intercept_[0]
    return Projection(terms, intercept, coef, None, weights)


def _divergence(family, projection, X, mu):
    # KL from the reference up to terms that do not depend on the submodel
    linear_pred = projection.linpred(X)
    if family == 'gaussian':
        per_row = np.mean((mu - linear_pred) ** 2, axis=1)
    else:
        log_p = -np.logaddexp(0.0, -linear_pred)
        log_1mp = -np.logaddexp(0.0, linear_pred)
        per_row = -np.mean(mu * log_p + (1.0 - mu) * log_1mp, axis=1)
    return float(np.sum(projection.weights * per_row))


def cluster_draws(mu, sigma2=None, nclusters=PROJ_NCLUSTERS, seed=0):
    '''
    Summarize reference draws by k-means clusters of their predictions
    :return: cluster means (C, n), cluster residual variances (C,) or None, cluster weights (C,)
    '''
    n_draws = mu.shape[0]
    if nclusters is None or nclusters >= n_draws:
        return mu, sigma2, np.full(n_draws, 1.0 / n_draws)
    if nclusters < 1:
        raise ValueError("nclusters must be at least 1")

    if nclusters == 1:
        labels = np.zeros(n_draws, dtype=int)
    else:
        labels = KMeans(n_clusters=nclusters, n_init=10, random_state=seed).fit_predict(mu)

    centres, variances, weights = [], [], []
    for label in np.unique(labels):
        members = labels == label
        centres.append(mu[members].mean(axis=0))
        if sigma2 is not None:
            # within-cluster spread of the means adds to the residual variance
            variances.append(sigma2[members].mean() + mu[members].var(axis=0).mean())
        weights.append(members.mean())

    return np.array(centres), (np.array(variances) if sigma2 is not None else None), np.array(weights)


def forward_search(family, X, mu, sigma2, weights, nterms_max, regularization=1e-4):
    '''
    Greedy forward search: at each step add the column whose projection is closest to the reference
    :return: solution path (column indices) and the projection at each size 0..len(path)
    '''
    selected = []
    remaining = list(range(X.shape[1]))
    projections = [project_submodel(family, X, [], mu, sigma2, weights, regularization)]

    while remaining and len(selected) < nterms_max:
        best = None
        for j in remaining:
            proj = project_submodel(family, X, selected + [j], mu, sigma2, weights, regularization)
            score = _divergence(family, proj, X, mu)
            if best is None or score < best[0]:
                best = (score, j, proj)
        selected.append(best[1])
        remaining.remove(best[1])
        projections.append(best[2])

    return selected, projections


class ProjectionPredictive:

    def __init__(self, X, y, mu, family, coef_names=None, sigma=None, transformer=None, nclusters=PROJ_NCLUSTERS,
                 ndraws_pred=PROJ_NDRAWS_PRED, regularization=1e-4, n_boot_se=BOOTSTRAP_SE_N, seed=0):
        '''
        Projection predictive variable selection around a reference model

        :param X: (n, p) reference design matrix without intercept
        :param y: (n,) outcome
        :param mu: (S, n) reference posterior draws of the expected outcome
        :param family: 'bernoulli' or 'gaussian'
        :param sigma: (S,) reference residual sd draws (gaussian)
        :param transformer: fitted PatsyTransformer, needed for predictions on new data frames
        :param nclusters: clusters of reference draws used in the search
        :param ndraws_pred: thinned reference draws used to evaluate submodels
        '''
        if family not in FAMILIES:
            raise ValueError(f"Unknown family {family!r}; expected one of {FAMILIES}")
        self.family = family
        self.X = np.asarray(X, dtype=float)
        self.y = np.asarray(y, dtype=float)
        self.mu = np.atleast_2d(np.asarray(mu, dtype=float))
        if self.mu.shape[1] != self.X.shape[0] or self.y.shape[0] != self.X.shape[0]:
            raise ValueError("X, y and mu disagree on the number of observations")

        if family == 'gaussian':
            if sigma is None:
                raise ValueError("sigma draws are required for the gaussian family")
            self.sigma2 = np.asarray(sigma, dtype=float) ** 2
        else:
            self.sigma2 = None

        n_coefs = self.X.shape[1]
        self.coef_names = list(coef_names) if coef_names is not None else [f"x{j + 1}" for j in range(n_coefs)]
        if len(self.coef_names) != n_coefs:
            raise ValueError("coef_names must name every column of X")

        self.transformer = transformer
        self.nclusters = nclusters
        self.ndraws_pred = ndraws_pred
        self.regularization = regularization
        self.n_boot_se = n_boot_se
        self.seed = seed
        self.stat_name = 'pctcorr' if family == 'bernoulli' else 'rmse'
        self._stat_fn = classification_accuracy if family == 'bernoulli' else rmse

        self.solution_path = None
        self.solution_terms = None
        self.summary = None
        self.cv_paths = None
        self.cv_proportions = None
        self.projection = None
        self.projected_draws = None

        self._reference_loo()

    @classmethod
    def from_reference(cls, reference, **kwargs):
        '''
        :param reference: fitted BayesGLM with posterior draws
        '''
        sigma = reference.draws('sigma') if reference.family == 'gaussian' else None
        return cls(reference.X, reference.y, reference.epred(), reference.family, coef_names=reference.coef_names,
                   sigma=sigma, transformer=reference.transformer, **kwargs)

    def _reference_log_lik(self, draw_idx):
        mu = self.mu[draw_idx]
        if self.family == 'bernoulli':
            mu = np.clip(mu, 1e-12, 1 - 1e-12)
            return self.y * np.log(mu) + (1.0 - self.y) * np.log1p(-mu)
        return stats.norm.logpdf(self.y, loc=mu, scale=np.sqrt(self.sigma2[draw_idx])[:, None])

    def _reference_loo(self):
        all_draws = np.arange(self.mu.shape[0])
        log_lik = self._reference_log_lik(all_draws)
        self.ref_loo_weights, self.ref_khat = psis_loo_weights(log_lik)
        with np.errstate(divide='ignore'):
            self.ref_elpd_i = logsumexp(np.log(self.ref_loo_weights) + log_lik.T, axis=1)
        self.ref_mu_loo = loo_expectation(self.mu, self.ref_loo_weights)

        self.reference_stats = elpd_difference(self.ref_elpd_i, self.ref_elpd_i)
        self.reference_stats[self.stat_name] = self._stat_fn(self.y, self.ref_mu_loo)

    def varsel(self, nterms_max=None, validate_search=False, nloo=None):
        '''
        Search the solution path and estimate LOO performance of each submodel size
        :param nterms_max: largest submodel size; all columns by default
        :param validate_search: repeat the search for every left-out observation
        :param nloo: number of left-out observations when validate_search (random subset); all by default
        :return:
        '''
        n_coefs = self.X.shape[1]
        nterms_max = n_coefs if nterms_max is None else min(int(nterms_max), n_coefs)
        if nterms_max < 0:
            raise ValueError("nterms_max must be non-negative")

        mu_c, sigma2_c, weights_c = cluster_draws(self.mu, self.sigma2, self.nclusters, self.seed)
        path, _ = forward_search(self.family, self.X, mu_c, sigma2_c, weights_c, nterms_max, self.regularization)
        self.solution_path = path
        self.solution_terms = [self.coef_names[j] for j in path]
        logger.info("Solution path: %s", ", ".join(self.solution_terms) or "(empty)")

        if validate_search:
            elpd_i, mu_loo, loo_idx = self._validated_performance(nterms_max, nloo)
        else:
            elpd_i, mu_loo = self._path_performance(path)
            loo_idx = np.arange(self.X.shape[0])

        self.summary = self._summarize(elpd_i, mu_loo, loo_idx)
        return self

    def _path_performance(self, path):
        draw_idx = thin_draws(self.mu.shape[0], self.ndraws_pred)
        mu = self.mu[draw_idx]
        sigma2 = self.sigma2[draw_idx] if self.sigma2 is not None else None

        # Importance ratios come from the reference model
        weights, _ = psis_loo_weights(self._reference_log_lik(draw_idx))
        with np.errstate(divide='ignore'):
            log_weights = np.log(weights)

        elpd_i = np.empty((len(path) + 1, self.X.shape[0]))
        mu_loo = np.empty_like(elpd_i)
        for k in range(len(path) + 1):
            proj = project_submodel(self.family, self.X, path[:k], mu, sigma2, regularization=self.regularization)
            linear_pred = proj.linpred(self.X)
            log_lik = _log_lik(self.family, self.y, linear_pred, proj.sigma)
            elpd_i[k] = logsumexp(log_weights + log_lik.T, axis=1)
            mu_loo[k] = loo_expectation(_mean(self.family, linear_pred), weights)
        return elpd_i, mu_loo

    def _validated_performance(self, nterms_max, nloo):
        n_obs = self.X.shape[0]
        if nloo is None or nloo >= n_obs:
            loo_idx = np.arange(n_obs)
        else:
            rng = np.random.default_rng(self.seed)
            loo_idx = np.sort(rng.choice(n_obs, size=int(nloo), replace=False))

        elpd_i = np.full((nterms_max + 1, loo_idx.size), np.nan)
        mu_loo = np.full_like(elpd_i, np.nan)
        paths = []
        for col, i in enumerate(loo_idx):
            # Reference predictive distribution with observation i left out
            w = self.ref_loo_weights[i]
            mu_i = (w @ self.mu)[None, :]
            sigma2_i = None
            if self.sigma2 is not None:
                sigma2_i = np.array([w @ self.sigma2 + w @ np.mean((self.mu - mu_i) ** 2, axis=1)])

            path_i, projections = forward_search(self.family, self.X, mu_i, sigma2_i, np.ones(1), nterms_max,
                                                 self.regularization)
            paths.append([self.coef_names[j] for j in path_i])
            for k, proj in enumerate(projections):
                linear_pred = proj.linpred(self.X[i:i + 1])
                elpd_i[k, col] = _log_lik(self.family, self.y[i:i + 1], linear_pred, proj.sigma)[0, 0]
                mu_loo[k, col] = _mean(self.family, linear_pred)[0, 0]

        self.cv_paths = paths
        self.cv_proportions = self._cv_proportions(paths, nterms_max)
        return elpd_i, mu_loo, loo_idx

    def _cv_proportions(self, paths, nterms_max):
        # Share of validation searches that include each term within the first k steps
        rows = []
        for k in range(1, nterms_max + 1):
            row = {'size': k}
            for name in self.coef_names:
                row[name] = float(np.mean([name in path[:k] for path in paths]))
            rows.append(row)
        return pd.DataFrame(rows, columns=['size'] + self.coef_names)

    def _summarize(self, elpd_i, mu_loo, loo_idx):
        n_obs = self.X.shape[0]
        # Subsampled sums are scaled up to the full data
        scale = n_obs / loo_idx.size
        y = self.y[loo_idx]
        ref_elpd = self.ref_elpd_i[loo_idx]
        ref_mu = self.ref_mu_loo[loo_idx]
        ref_stat = self._stat_fn(y, ref_mu)

        rows = []
        for k in range(elpd_i.shape[0]):
            row = {'size': k, 'solution_term': self.solution_terms[k - 1] if k > 0 else None}
            row.update({key: value * scale for key, value in elpd_difference(elpd_i[k], ref_elpd).items()})

            value = self._stat_fn(y, mu_loo[k])
            row[self.stat_name] = value
            row[f'{self.stat_name}_diff'] = value - ref_stat
            row[f'{self.stat_name}_diff_se'] = bootstrap_stat_diff(y, mu_loo[k], ref_mu, self._stat_fn,
                                                                   n_boot=self.n_boot_se, seed=self.seed)
            rows.append(row)

        return pd.DataFrame(rows)

    def suggest_size(self, stat='elpd', alpha=SUGGEST_SIZE_ALPHA, pct=0.0):
        '''
        Smallest submodel size whose interval bound reaches the reference performance
        :param stat: 'elpd', or 'pctcorr' (bernoulli) / 'rmse' (gaussian)
        :param alpha: the bound is diff +- Phi^-1(1 - alpha/2) * se
        :param pct: fraction of the null-to-reference gap that may remain
        :return: suggested size, or None when no size qualifies
        '''
        if self.summary is None:
            raise ValueError("Run varsel() before suggest_size().")
        if stat not in ('elpd', self.stat_name):
            raise ValueError(f"stat must be 'elpd' or {self.stat_name!r} for the {self.family} family")

        z = stats.norm.ppf(1 - alpha / 2)
        diff = self.summary[f'{stat}_diff'].to_numpy(dtype=float)
        se = np.nan_to_num(self.summary[f'{stat}_diff_se'].to_numpy(dtype=float), nan=0.0)
        threshold = pct * diff[0]

        if stat == 'rmse':
            reached = diff - z * se <= threshold
        else:
            reached = diff + z * se >= threshold

        sizes = self.summary['size'].to_numpy()[reached]
        if sizes.size == 0:
            logger.warning("No submodel size reaches the reference %s; consider a larger nterms_max", stat)
            return None
        return int(sizes[0])

    def project(self, nterms=None, solution_terms=None, ndraws=PROJ_NDRAWS):
        '''
        Projected posterior draws of a submodel
        :param nterms: submodel size along the solution path; the whole path by default
        :param solution_terms: explicit term names, instead of nterms
        :param ndraws: thinned reference draws to project
        :return: DataFrame with intercept, one column per term and, for gaussian, sigma
        '''
        if solution_terms is not None:
            unknown = [name for name in solution_terms if name not in self.coef_names]
            if unknown:
                raise ValueError(f"Unknown terms: {unknown}")
            terms = [self.coef_names.index(name) for name in solution_terms]
        else:
            if self.solution_path is None:
                raise ValueError("Run varsel() or pass solution_terms.")
            nterms = len(self.solution_path) if nterms is None else int(nterms)
            if not 0 <= nterms <= len(self.solution_path):
                raise ValueError(f"nterms must be between 0 and {len(self.solution_path)}")
            terms = self.solution_path[:nterms]

        draw_idx = thin_draws(self.mu.shape[0], ndraws)
        sigma2 = self.sigma2[draw_idx] if self.sigma2 is not None else None
        self.projection = project_submodel(self.family, self.X, terms, self.mu[draw_idx], sigma2,
                                           regularization=self.regularization)

        draws = pd.DataFrame(self.projection.coef, columns=[self.coef_names[j] for j in terms])
        draws.insert(0, 'intercept', self.projection.intercept)
        if self.projection.sigma is not None:
            draws['sigma'] = self.projection.sigma
        self.projected_draws = draws
        return draws

    def proj_linpred(self, data=None):
        '''
        Linear predictor draws (draws, observations) of the projected submodel
        :param data: DataFrame of new observations; the reference data by default
        '''
        if self.projection is None:
            raise ValueError("Run project() first.")
        if data is None:
            return self.projection.linpred(self.X)
        if self.transformer is None:
            raise ValueError("Predictions on new data need the reference model's transformer.")
        return self.projection.linpred(self.transformer.transform(data).to_numpy(dtype=float))

    def proj_epred(self, data=None):
        return _mean(self.family, self.proj_linpred(data))


def bootstrap_selection(data, fit_reference, n_boot=BOOTSTRAP_N, seed=0, stat='elpd', alpha=SUGGEST_SIZE_ALPHA, pct=0.0,
                        nterms_max=None, **projpred_kwargs):
    '''
    Selection stability over bootstrap resamples of the rows of data
    :param fit_reference: callable (data, replicate) -> fitted BayesGLM with posterior draws
    :return: one row per replicate with the suggested size, the selected terms and the full path
    '''
    rng = np.random.default_rng(seed)
    rows = []
    for b in range(n_boot):
        idx = rng.integers(0, len(data), size=len(data))
        boot = data.iloc[idx].reset_index(drop=True)
        reference = fit_reference(boot, b)

        vs = ProjectionPredictive.from_reference(reference, seed=seed + b, **projpred_kwargs)
        vs.varsel(nterms_max=nterms_max)
        size = vs.suggest_size(stat=stat, alpha=alpha, pct=pct)
        selected = tuple(vs.solution_terms[:size]) if size is not None else ()
        rows.append({'replicate': b, 'size': size, 'selected': selected, 'path': tuple(vs.solution_terms)})
        logger.info("Bootstrap %d/%d: size %s, %s", b + 1, n_boot, size, ", ".join(selected) or "(none)")

    return pd.DataFrame(rows, columns=['replicate', 'size', 'selected', 'path'])


def selection_frequencies(boot, terms):
    n_boot = max(len(boot), 1)
    rows = [{'term': term, 'frequency': sum(term in sel for sel in boot['selected']) / n_boot} for term in terms]
    out = pd.DataFrame(rows, columns=['term', 'frequency'])
    return out.sort_values(['frequency', 'term'], ascending=[False, True], kind='mergesort').reset_index(drop=True)


def submodel_frequencies(boot, top=10):
    labels = boot['selected'].map(lambda sel: ' + '.join(sel) if sel else '(intercept only)')
    out = labels.value_counts().rename_axis('submodel').reset_index(name='count')
    out['frequency'] = out['count'] / max(len(boot), 1)
    return out.head(top)
