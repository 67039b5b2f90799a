import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist

FAMILIES = ('bernoulli', 'gaussian')

# Sites kept from a fit; deterministic sites included
POSTERIOR_SITES = ('intercept', 'beta', 'sigma', 'tau')


def _coef_prior(df, loc, scale):
    if df is None:
        return dist.Normal(loc, scale)
    return dist.StudentT(df, loc, scale)


def _sample_sigma(family, sigma_scale):
    if family == 'gaussian':
        return numpyro.sample("sigma", dist.Exponential(1.0 / sigma_scale))
    return None


def _likelihood(linear_pred, y, family, sigma=None):
    if family == 'bernoulli':
        numpyro.sample("y", dist.Bernoulli(logits=linear_pred), obs=y)
    elif family == 'gaussian':
        numpyro.sample("y", dist.Normal(linear_pred, sigma), obs=y)
    else:
        raise ValueError(f"Unknown family {family!r}; expected one of {FAMILIES}")


def student_t_prior(X, y=None, family='bernoulli', prior_df=7.0, prior_scale=2.5, intercept_df=7.0,
                    intercept_loc=0.0, intercept_scale=2.5, sigma_scale=1.0):
    """
    GLM with independent Student-t priors on the coefficients and the intercept.

    Parameters:
    - X: Design matrix without an intercept column (n, p).
    - y: Outcome, 0/1 for bernoulli.
    - family: 'bernoulli' (logit link) or 'gaussian' (identity link).
    - prior_df: Degrees of freedom of the coefficient prior; None gives a Normal prior.
    - prior_scale: Scale of the coefficient prior.
    - intercept_df, intercept_loc, intercept_scale: Same for the intercept.
    - sigma_scale: Prior mean of the residual sd (gaussian only).
    """
    intercept = numpyro.sample("intercept", _coef_prior(intercept_df, intercept_loc, intercept_scale))
    beta = numpyro.sample("beta", _coef_prior(prior_df, 0.0, prior_scale).expand([X.shape[1]]))
    sigma = _sample_sigma(family, sigma_scale)

    linear_pred = intercept + jnp.dot(X, beta)
    _likelihood(linear_pred, y, family, sigma)


def normal_prior(X, y=None, family='gaussian', prior_scale=2.5, intercept_loc=0.0, intercept_scale=2.5,
                 sigma_scale=1.0):
    student_t_prior(X, y=y, family=family, prior_df=None, prior_scale=prior_scale, intercept_df=None,
                    intercept_loc=intercept_loc, intercept_scale=intercept_scale, sigma_scale=sigma_scale)


def regularized_horseshoe(X, y=None, family='bernoulli', global_scale=0.01, slab_scale=2.5, slab_df=4.0,
                          local_df=1.0, global_df=1.0, intercept_df=7.0, intercept_loc=0.0, intercept_scale=2.5,
                          sigma_scale=1.0):
    """
    Regularized horseshoe (Piironen & Vehtari, 2017), non-centered.

    Parameters:
    - global_scale: tau0, see utils.horseshoe_global_scale. Multiplied by sigma for gaussian.
    - slab_scale, slab_df: Student-t slab that bounds the largest coefficients.
    - local_df, global_df: Degrees of freedom of the half-t local and global scales (1 = half-Cauchy).
    """
    n_coefs = X.shape[1]

    intercept = numpyro.sample("intercept", _coef_prior(intercept_df, intercept_loc, intercept_scale))
    sigma = _sample_sigma(family, sigma_scale)
    scale = global_scale * sigma if sigma is not None else global_scale

    # Half-t variables as half-normal times sqrt(inverse-gamma)
    aux1_global = numpyro.sample("aux1_global", dist.HalfNormal(1.0))
    aux2_global = numpyro.sample("aux2_global", dist.InverseGamma(0.5 * global_df, 0.5 * global_df))
    tau = numpyro.deterministic("tau", aux1_global * jnp.sqrt(aux2_global) * scale)

    caux = numpyro.sample("caux", dist.InverseGamma(0.5 * slab_df, 0.5 * slab_df))
    c = slab_scale * jnp.sqrt(caux)

    z = numpyro.sample("z", dist.Normal(0.0, 1.0).expand([n_coefs]))
    aux1_local = numpyro.sample("aux1_local", dist.HalfNormal(1.0).expand([n_coefs]))
    aux2_local = numpyro.sample("aux2_local", dist.InverseGamma(0.5 * local_df, 0.5 * local_df).expand([n_coefs]))
    lambda_ = aux1_local * jnp.sqrt(aux2_local)
    lambda_tilde = jnp.sqrt(c ** 2 * lambda_ ** 2 / (c ** 2 + tau ** 2 * lambda_ ** 2))
    beta = numpyro.deterministic("beta", z * lambda_tilde * tau)

    linear_pred = intercept + jnp.dot(X, beta)
    _likelihood(linear_pred, y, family, sigma)


def baseline_intercept_model(X, y=None, family='bernoulli', intercept_df=7.0, intercept_loc=0.0, intercept_scale=2.5,
                             sigma_scale=1.0):
    # Null model for LOO comparisons; X only fixes the number of observations
    intercept = numpyro.sample("intercept", _coef_prior(intercept_df, intercept_loc, intercept_scale))
    sigma = _sample_sigma(family, sigma_scale)

    linear_pred = intercept + jnp.zeros(X.shape[0])
    _likelihood(linear_pred, y, family, sigma)
