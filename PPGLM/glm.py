import inspect
import logging

import numpy as np
import pandas as pd
import arviz as az
import jax
import numpyro.distributions as dist
import numpyro.optim as optim
from numpyro.infer import MCMC, NUTS, SVI, Trace_ELBO, Predictive
from numpyro.infer.autoguide import AutoNormal, AutoMultivariateNormal, AutoLaplaceApproximation
from optax import adam, chain, clip
import optax
from scipy.special import expit

from PPGLM import models as mods
from PPGLM.evaluation import psis_loo_weights, loo_expectation
from PPGLM.utils import PatsyTransformer, formula_lhs, credible_bounds

logger = logging.getLogger(__name__)

DEFAULT_FIT_PARAMS = {
    'fittype': 'mcmc',
    'warmup': 500,
    'mcmcsamples': 2000,
    'chains': 1,
    'target_accept': 0.8,
    'progress_bar': False,
}

MODEL_NAMES = ('student_t_prior', 'normal_prior', 'regularized_horseshoe', 'baseline_intercept_model')

GUIDES = {
    'normal': AutoNormal,
    'mvn': AutoMultivariateNormal,
    'lap': AutoLaplaceApproximation,
}


class BayesGLM:

    def __init__(self, family='bernoulli'):
        '''
        Bayesian GLM with a logit (bernoulli) or identity (gaussian) link.

        :param family: 'bernoulli' or 'gaussian'
        '''
        if family not in mods.FAMILIES:
            raise ValueError(f"Unknown family {family!r}; expected one of {mods.FAMILIES}")
        self.family = family
        self.formula = None
        self.transformer = None
        self.coef_names = []
        self.data = None
        self.X = None
        self.y = None
        self.model = None
        self.model_name = None
        self.model_kwargs = {}
        self.mcmc_result = None
        self.svi_result = None
        self.guide = None
        self.fit_params = None
        self._reset_posterior()

    def _reset_posterior(self):
        self.posterior_samples = None
        self.nchains = None
        self.npostsamples = None
        self.point_log_likelihood = {}
        self.idata = None
        self.loo_result = None
        self.posterior_summary = None

    def add_data(self, data, formula):
        '''
        Build the design matrix and outcome for a formula
        :param data: DataFrame holding the outcome and every predictor of the formula
        :param formula: patsy formula, e.g. 'outcome ~ glucose + bmi'
        :return:
        '''
        outcome = formula_lhs(formula)
        if outcome not in data.columns:
            raise ValueError(f"Outcome {outcome!r} is not a column of the data")

        self.formula = formula
        self.data = data.reset_index(drop=True)
        self.transformer = PatsyTransformer(formula).fit(self.data)
        self.coef_names = self.transformer.column_names
        self.X = self.transformer.transform(self.data).to_numpy(dtype=float)

        y = self.data[outcome]
        if y.isna().any():
            raise ValueError(f"Outcome {outcome!r} has missing values")
        y = y.to_numpy(dtype=float)
        if self.family == 'bernoulli' and not np.isin(y, (0.0, 1.0)).all():
            raise ValueError(f"Outcome {outcome!r} must be coded 0/1 for the bernoulli family")
        self.y = y

        return self

    def define_model(self, model='student_t_prior', autoscale=True, **prior):
        '''
        :param model: name of a model function in PPGLM.models
        :param autoscale: scale coefficient priors by 1/sd(x) and, for gaussian, by sd(y)
        :param prior: keyword arguments of the model function; keys the model does not take are logged and ignored
            student_t_prior: prior_df=7.0, prior_scale=2.5, intercept_df=7.0, intercept_scale=2.5
            normal_prior: prior_scale=2.5, intercept_scale=2.5
            regularized_horseshoe: global_scale, slab_scale=2.5, slab_df=4.0
        :return:
        '''
        if self.X is None:
            raise ValueError("Add data before defining a model.")
        if self.X.shape[1] == 0 and model != 'baseline_intercept_model':
            logger.info("Formula %r has no predictors; using the intercept-only model", self.formula)
            model = 'baseline_intercept_model'
        if model not in MODEL_NAMES:
            raise ValueError(f"Unknown model {model!r}; expected one of {MODEL_NAMES}")

        self.model = getattr(mods, model)
        self.model_name = model

        accepted = inspect.signature(self.model).parameters
        kwargs = {k: v for k, v in prior.items() if k in accepted}
        dropped = sorted(set(prior) - set(kwargs))
        if dropped:
            known = set().union(*(inspect.signature(getattr(mods, name)).parameters for name in MODEL_NAMES))
            unknown = [k for k in dropped if k not in known]
            if unknown:
                logger.warning("Ignoring unknown prior arguments %s", unknown)
            if len(unknown) < len(dropped):
                logger.debug("%s does not take %s", model, [k for k in dropped if k in known])
        if autoscale:
            kwargs = self._autoscale(kwargs, accepted)
        self.model_kwargs = kwargs

        return self

    def _autoscale(self, kwargs, accepted):
        defaults = {name: p.default for name, p in accepted.items() if p.default is not inspect.Parameter.empty}
        y_sd = 1.0
        if self.family == 'gaussian':
            y_sd = float(np.std(self.y, ddof=1)) or 1.0

        out = dict(kwargs)
        if self.X.shape[1] > 0:
            x_sd = self.X.std(axis=0, ddof=1)
            x_sd = np.where(x_sd > 0, x_sd, 1.0)
            for name in ('prior_scale', 'slab_scale'):
                if name in accepted:
                    out[name] = np.asarray(out.get(name, defaults[name]) * y_sd / x_sd)

        if self.family == 'gaussian':
            if 'intercept_scale' in accepted:
                out['intercept_scale'] = out.get('intercept_scale', defaults['intercept_scale']) * y_sd
            out.setdefault('intercept_loc', float(np.mean(self.y)))
            out.setdefault('sigma_scale', y_sd)
        return out

    def _model_args(self, y):
        return dict(X=self.X, y=y, family=self.family, **self.model_kwargs)

    def fit(self, PRNGkey=0, params=None):
        '''
        Main call to fit a model
        :param PRNGkey: integer seed for jax.random.PRNGKey
        :param params: overrides of DEFAULT_FIT_PARAMS
            mcmc: warmup, mcmcsamples, chains, target_accept
            vi: guide ('normal', 'mvn', 'lap'), visteps, lrate, optimtype ('fixed', 'scheduled')
        :return:
        '''
        if self.model is None:
            raise ValueError("Define a model before fitting.")
        params = dict(DEFAULT_FIT_PARAMS, **(params or {}))
        params['fittype'] = str.lower(params['fittype'])

        if params['fittype'] == 'mcmc':
            nuts_kernel = NUTS(self.model, target_accept_prob=params['target_accept'])
            mcmc = MCMC(nuts_kernel, num_warmup=params['warmup'], num_samples=params['mcmcsamples'],
                        num_chains=params['chains'], chain_method='sequential', progress_bar=params['progress_bar'])
            mcmc.run(jax.random.PRNGKey(PRNGkey), extra_fields=('diverging',), **self._model_args(self.y))
            self.mcmc_result = mcmc

            n_divergent = int(np.sum(mcmc.get_extra_fields()['diverging']))
            if n_divergent:
                logger.warning("%s: %d divergent transitions after warmup", self.model_name, n_divergent)

        elif params['fittype'] == 'vi':
            guide = params.get('guide', 'normal')
            if guide not in GUIDES:
                raise ValueError(f"Unknown guide {guide!r}; expected one of {tuple(GUIDES)}")
            self.guide = GUIDES[guide](self.model)

            optimtype = params.get('optimtype', 'fixed')
            if optimtype == 'scheduled':
                learning_rate_schedule = optax.exponential_decay(
                    init_value=params.get('lrate', 1e-2),
                    transition_steps=1000,
                    decay_rate=0.9,
                    staircase=True
                )
                optimizer = chain(clip(10.0), adam(learning_rate_schedule))
            elif optimtype == 'fixed':
                optimizer = optim.ClippedAdam(step_size=params.get('lrate', 1e-2))
            else:
                raise ValueError(f"Unknown optimtype {optimtype!r}; expected 'fixed' or 'scheduled'")

            svi = SVI(self.model, self.guide, optimizer, loss=Trace_ELBO())
            self.svi_result = svi.run(jax.random.PRNGKey(PRNGkey), params.get('visteps', 5000),
                                      progress_bar=params['progress_bar'], **self._model_args(self.y))
            self.svi = svi
        else:
            raise ValueError(f"Unknown fittype {params['fittype']!r}; expected 'mcmc' or 'vi'")

        self.fit_params = params
        self._reset_posterior()
        return self

    def sample_posterior(self, nsamples=4000, PRNGkey=1):
        '''
        Collect posterior draws of the model parameters as (chain, draw, ...) arrays
        :param nsamples: number of draws from the variational posterior (vi only)
        :return:
        '''
        if self.fit_params is None:
            raise ValueError("Fit the model before sampling the posterior.")
        self._reset_posterior()

        if self.fit_params['fittype'] == 'mcmc':
            samples = self.mcmc_result.get_samples(group_by_chain=True)
        else:
            predictive = Predictive(self.model, guide=self.guide, params=self.svi_result.params,
                                    num_samples=nsamples, return_sites=list(mods.POSTERIOR_SITES))
            samples = predictive(jax.random.PRNGKey(PRNGkey), **self._model_args(None))
            # Single pseudo-chain
            samples = {key: samples[key][None] for key in samples}

        self.posterior_samples = {key: np.asarray(samples[key], dtype=float) for key in mods.POSTERIOR_SITES
                                  if key in samples}
        self.nchains, self.npostsamples = self.posterior_samples['intercept'].shape[:2]

        return self

    def draws(self, name):
        if self.posterior_samples is None:
            raise ValueError("No posterior draws; call sample_posterior() first.")
        values = self.posterior_samples[name]
        return values.reshape((-1,) + values.shape[2:])

    def design(self, data=None):
        if data is None:
            return self.X
        return self.transformer.transform(data).to_numpy(dtype=float)

    def linpred(self, data=None):
        X = self.design(data)
        intercept = self.draws('intercept')
        linear_pred = np.repeat(intercept[:, None], X.shape[0], axis=1)
        if 'beta' in self.posterior_samples:
            linear_pred = linear_pred + self.draws('beta') @ X.T
        return linear_pred

    def epred(self, data=None):
        linear_pred = self.linpred(data)
        if self.family == 'bernoulli':
            return expit(linear_pred)
        return linear_pred

    def predict(self, data=None, seed=0):
        '''
        Posterior predictive draws of the outcome, (draws, observations)
        '''
        rng = np.random.default_rng(seed)
        mu = self.epred(data)
        if self.family == 'bernoulli':
            return rng.binomial(1, mu)
        return rng.normal(mu, self.draws('sigma')[:, None])

    def pointwise_log_likelihood(self, name='full'):
        '''
        Log-likelihood of every observation under every draw, (chain, draw, observation)
        '''
        if name in self.point_log_likelihood:
            return self.point_log_likelihood[name]

        linear_pred = self.linpred().reshape(self.nchains, self.npostsamples, -1)
        if self.family == 'bernoulli':
            log_likelihood = dist.Bernoulli(logits=linear_pred).log_prob(self.y)
        else:
            sigma = self.posterior_samples['sigma'][..., None]
            log_likelihood = dist.Normal(linear_pred, sigma).log_prob(self.y)

        self.point_log_likelihood[name] = np.asarray(log_likelihood, dtype=float)
        return self.point_log_likelihood[name]

    def compute_idata(self):
        log_likelihood = self.pointwise_log_likelihood()

        coords = {}
        dims = {}
        if 'beta' in self.posterior_samples:
            coords['coef'] = self.coef_names
            dims['beta'] = ['coef']

        self.idata = az.from_dict(
            posterior=dict(self.posterior_samples),
            log_likelihood={'y': log_likelihood},
            observed_data={'y': self.y},
            coords=coords,
            dims=dims,
        )
        return self.idata

    def summarize_posterior(self, credible_interval=90):
        lower, upper = credible_bounds(credible_interval)
        idata = self.idata if self.idata is not None else self.compute_idata()
        sites = [key for key in mods.POSTERIOR_SITES if key in self.posterior_samples]
        rhat = az.rhat(idata, var_names=sites)
        ess = az.ess(idata, var_names=sites, method='bulk')

        rows = []
        for site in sites:
            values = self.draws(site)
            if values.ndim == 1:
                values = values[:, None]
                labels = [site]
            else:
                labels = self.coef_names
            site_rhat = np.atleast_1d(rhat[site].values)
            site_ess = np.atleast_1d(ess[site].values)

            for j, label in enumerate(labels):
                x = values[:, j]
                rows.append({
                    'parameter': label,
                    'mean': float(np.mean(x)),
                    'median': float(np.median(x)),
                    'sd': float(np.std(x)),
                    'ci_lower': float(np.percentile(x, lower)),
                    'ci_upper': float(np.percentile(x, upper)),
                    'r_hat': float(site_rhat[j]),
                    'ess_bulk': float(site_ess[j]),
                })

        self.posterior_summary = pd.DataFrame(rows).set_index('parameter')
        self.credible_interval = credible_interval
        return self

    def coeff_relevance(self):
        '''
        Which coefficients have a central interval that excludes zero
        :return:
        '''
        if self.posterior_summary is None:
            self.summarize_posterior()

        summary = self.posterior_summary.loc[self.coef_names]
        self.coef_keep = {
            name: int(np.logical_xor(row['ci_lower'] > 0, row['ci_upper'] < 0))
            for name, row in summary.iterrows()
        }
        return self

    def loo(self):
        idata = self.idata if self.idata is not None else self.compute_idata()
        self.loo_result = az.loo(idata, pointwise=True)

        n_bad = int(np.sum(self.loo_result.pareto_k.values > 0.7))
        if n_bad:
            logger.warning("%s: %d observations with Pareto k > 0.7", self.model_name, n_bad)
        return self.loo_result

    def waic(self):
        idata = self.idata if self.idata is not None else self.compute_idata()
        return az.waic(idata, pointwise=True)

    def relative_eff(self):
        '''
        Mean relative effective sample size of the posterior, the reff that az.loo smooths with
        '''
        if self.nchains == 1:
            return 1.0
        idata = self.idata if self.idata is not None else self.compute_idata()
        ess_p = az.ess(idata.posterior, method='mean')
        ess_mean = np.hstack([ess_p[v].values.flatten() for v in ess_p.data_vars]).mean()
        return float(ess_mean / (self.nchains * self.npostsamples))

    def loo_weights(self):
        '''
        PSIS-smoothed leave-one-out weights, (observation, draw), and Pareto k per observation
        '''
        log_likelihood = self.pointwise_log_likelihood().reshape(-1, self.X.shape[0])
        return psis_loo_weights(log_likelihood, reff=self.relative_eff())

    def loo_epred(self):
        weights, _ = self.loo_weights()
        return loo_expectation(self.epred(), weights)
