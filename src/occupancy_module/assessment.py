from concurrent.futures import ProcessPoolExecutor
from dataclasses import replace

import arviz as az
import numpy as np
import pandas as pd
from scipy.special import logsumexp
from sklearn.model_selection import KFold
import logging

from occupancy_module.core import detection_predictor, fit_model, occupancy_predictor
from occupancy_module.errors import InvalidConfigurationError
from occupancy_module.utils import sigmoid

logger = logging.getLogger(__name__)

FIT_STATS = ('freeman-tukey', 'chi-squared')
GROUPS = ('site', 'replicate')

# ==============================================================================
# Information criteria
# ==============================================================================

def _detection_probabilities(result):
    """(S, N, n_obs) detection probabilities of the surveyed cells for every draw."""
    data = result.data
    return sigmoid(detection_predictor(result, data.X_p, data.X_p_re))


def pointwise_log_likelihood(result):
    """
    (S, N, n_obs) log-likelihood of every surveyed cell under each draw:
    z p^y (1-p)^(1-y) + (1 - z) 1[y = 0].
    """
    data = result.data
    p = _detection_probabilities(result)
    z = result.samples('z')[:, :, data.layout['unit_index']].astype(np.float64)
    y = data.y_obs[np.newaxis]
    log_bern = y * np.log(p) + (1 - y) * np.log1p(-p)
    # z = 0 only where y = 0 for the whole unit, so log(1 - y) never meets y = 1 there
    return np.where(z == 1, log_bern, 0.0)


def waic(result):
    """
    Widely Applicable Information Criterion; lower is better.

    :return: A Dictionary with
         - waic: -2 (lppd - p_waic)
         - lppd: log pointwise predictive density
         - p_waic: effective number of parameters (sum of pointwise variances)
         - deviance: in-sample deviance -2 lppd
       Each is a float for single-species models and a per-species array otherwise.
    """
    ll = pointwise_log_likelihood(result)
    n_draws = ll.shape[0]
    lppd_i = logsumexp(ll, axis=0) - np.log(n_draws)
    p_waic_i = np.var(ll, axis=0, ddof=1)
    lppd = lppd_i.sum(axis=1)
    p_waic = p_waic_i.sum(axis=1)
    out = {
        'waic': -2 * (lppd - p_waic),
        'lppd': lppd,
        'p_waic': p_waic,
        'deviance': -2 * lppd,
    }
    if not result.data.multispecies:
        out = {k: float(v[0]) for k, v in out.items()}
    logger.info(f"WAIC={out['waic']}, p_waic={out['p_waic']}")
    return out


def in_sample_deviance(result):
    """-2 lppd over the surveyed cells; waic = deviance + 2 p_waic."""
    return waic(result)['deviance']

# ==============================================================================
# Posterior predictive checks
# ==============================================================================

def _fit_statistic(observed, expected, fit_stat):
    if fit_stat == 'freeman-tukey':
        return np.sum((np.sqrt(observed) - np.sqrt(expected))**2, axis=-1)
    return np.sum((observed - expected)**2 / (expected + 1e-6), axis=-1)


def posterior_predictive_check(result, fit_stat='freeman-tukey', group='site', seed=None):
    """
    Bayesian p-value comparing the observed data with replicate data simulated
    from each draw. Values near 0.5 indicate adequate fit; below 0.1 or above
    0.9 indicate lack of fit.

    :param fit_stat: 'freeman-tukey' or 'chi-squared'
    :param group: 'site' sums replicates within each occupancy unit,
        'replicate' sums units within each replicate index
    :return: A Dictionary with fit_y, fit_y_rep (S, [N]) and bayes_p ([N])
    """
    if fit_stat not in FIT_STATS:
        raise InvalidConfigurationError(f"fit_stat must be one of {FIT_STATS}, got '{fit_stat}'")
    if group not in GROUPS:
        raise InvalidConfigurationError(f"group must be one of {GROUPS}, got '{group}'")
    rng = np.random.default_rng(seed)
    data = result.data
    layout = data.layout

    p = _detection_probabilities(result)
    z = result.samples('z')[:, :, layout['unit_index']]
    expected = z * p
    y_rep = rng.binomial(1, expected).astype(np.float64)
    y = np.broadcast_to(data.y_obs, expected.shape)

    if group == 'site':
        V = layout['V_unit']
    else:
        rep_index = np.nonzero(layout['obs_mask'])[1]
        V = np.zeros((rep_index.size, layout['n_reps']))
        V[np.arange(rep_index.size), rep_index] = 1.0

    def grouped(a):
        flat = a.reshape(-1, a.shape[-1])
        return np.asarray(V.T @ flat.T).T.reshape(a.shape[:-1] + (-1,))

    fit_y = _fit_statistic(grouped(y), grouped(expected), fit_stat)
    fit_y_rep = _fit_statistic(grouped(y_rep), grouped(expected), fit_stat)
    bayes_p = np.mean(fit_y_rep > fit_y, axis=0)
    logger.info(f"Posterior predictive check ({fit_stat}, grouped by {group}): Bayesian p-value {bayes_p}")
    if not data.multispecies:
        return {'fit_y': fit_y[:, 0], 'fit_y_rep': fit_y_rep[:, 0], 'bayes_p': float(bayes_p[0])}
    return {'fit_y': fit_y, 'fit_y_rep': fit_y_rep, 'bayes_p': bayes_p}

# ==============================================================================
# Cross-validation
# ==============================================================================

def held_out_deviance(result, held_out, seed=None):
    """
    Deviance of held-out sites under the fitted model:
    -2 sum_units log mean_s [psi prod p^y (1-p)^(1-y) + (1 - psi) 1[no detection]].

    :param held_out: OccupancyData for the held-out sites, with random-effect
        levels encoded against the fitted data
    :return: (N,) deviance per species
    """
    rng = np.random.default_rng(seed)
    layout = held_out.layout
    eta_psi, _ = occupancy_predictor(result, held_out.X, held_out.X_re, layout['site_index'],
                                     held_out.n_sites, held_out.coords, rng)
    psi = sigmoid(eta_psi)
    p = sigmoid(detection_predictor(result, held_out.X_p, held_out.X_p_re))
    y = held_out.y_obs[np.newaxis]
    log_cells = y * np.log(p) + (1 - y) * np.log1p(-p)
    S, N, O = log_cells.shape
    log_det = np.asarray(layout['V_unit'].T @ log_cells.reshape(S * N, O).T).T.reshape(S, N, -1)
    like = psi * np.exp(log_det) + (1 - psi) * (~held_out.detected)[np.newaxis]
    return -2 * np.sum(np.log(np.mean(like, axis=0)), axis=1)


def _run_fold(data, config, priors, inits, train, test, fold):
    if inits is not None:
        # site-shaped starting values do not fit a subset of sites
        inits = replace(inits, z=None, w=None)
    fit_data = data.subset_sites(train)
    held_out = data.subset_sites(test, levels_from=fit_data)
    logger.info(f"Cross-validation fold {fold + 1}: fitting {len(train)} sites, holding out {len(test)}")
    result = fit_model(fit_data, config, priors, inits)
    return held_out_deviance(result, held_out, seed=None if config.seed is None else config.seed + fold)


def k_fold_cv(data, config, priors=None, inits=None):
    """
    k-fold cross-validation over sites (every season of a site stays in one fold).

    Each fold is refit with a single chain on the other k - 1 folds. Random
    effects whose levels appear only in the held-out fold contribute nothing
    to its predictions.

    :return: A Dictionary with fold_deviance (k, [N]) and deviance, the mean across folds
    """
    k = config.k_fold
    if k is None:
        raise InvalidConfigurationError("k_fold must be set for cross-validation")
    config.validate(data.n_sites, spatial=data.coords is not None and config.cov_model is not None)
    fold_config = replace(config, k_fold=None, n_chains=1, n_workers=1, verbose=False)
    splits = list(KFold(n_splits=k, shuffle=True, random_state=config.seed).split(np.arange(data.n_sites)))

    if config.n_workers > 1:
        with ProcessPoolExecutor(max_workers=min(config.n_workers, k)) as executor:
            futures = [executor.submit(_run_fold, data, fold_config, priors, inits, train, test, f)
                       for f, (train, test) in enumerate(splits)]
            fold_deviance = np.array([future.result() for future in futures])
    else:
        fold_deviance = np.array([_run_fold(data, fold_config, priors, inits, train, test, f)
                                  for f, (train, test) in enumerate(splits)])

    deviance = fold_deviance.mean(axis=0)
    if not data.multispecies:
        fold_deviance, deviance = fold_deviance[:, 0], float(deviance[0])
    logger.info(f"{k}-fold cross-validated deviance: {deviance}")
    return {'fold_deviance': fold_deviance, 'deviance': deviance}

# ==============================================================================
# Convergence summaries
# ==============================================================================

def to_inference_data(result, names=None):
    """
    ArviZ InferenceData whose posterior group holds each parameter as
    (chain, draw, ...).
    """
    names = [n for n in (names or SUMMARY_PARAMS) if n in result.names]
    return az.from_dict(
        posterior={name: np.stack([result.get(name, chain=c) for c in range(result.n_chains)],
                                  axis=0).astype(np.float64)
                   for name in names}
    )


def rhat(result, name):
    """Rank-normalized potential scale reduction of every element of a parameter, shaped like one draw."""
    shape = result.get(name, chain=0).shape[1:]
    if result.n_chains < 2:
        logger.warning("R-hat requires at least 2 chains. Returning NaN.")
        return np.full(shape, np.nan)
    idata = to_inference_data(result, [name])
    return np.asarray(az.rhat(idata, var_names=[name])[name].values, dtype=np.float64).reshape(shape)


def _labels(result, name, shape):
    data = result.data
    axes = []
    if name in ('beta', 'beta_comm', 'tau_sq_beta'):
        axes.append(data.covariates.occ_names)
    elif name in ('alpha', 'alpha_comm', 'tau_sq_alpha'):
        axes.append(data.covariates.det_names)
    elif name == 'sigma_sq_psi':
        axes.append(list(data.covariates.occ_random))
    elif name == 'sigma_sq_p':
        axes.append(list(data.covariates.det_random))
    if data.multispecies and name in ('beta', 'alpha', 'sigma_sq') or \
            (name in ('phi', 'nu') and result.spec.spatial == 'nngp' and data.multispecies):
        axes.insert(0, data.species)
    if len(axes) != len(shape):
        axes = [list(range(s)) for s in shape]
    return [f"{name}[{', '.join(str(a) for a in idx)}]" for idx in _product(axes)]


def _product(axes):
    if not axes:
        return [()]
    return [(a,) + rest for a in axes[0] for rest in _product(axes[1:])]


SUMMARY_PARAMS = ('beta_comm', 'tau_sq_beta', 'alpha_comm', 'tau_sq_alpha', 'beta', 'alpha',
                  'sigma_sq_psi', 'sigma_sq_p', 'sigma_sq', 'phi', 'nu')


def posterior_summary(result, names=None):
    """
    Posterior mean, sd, 2.5/50/97.5% quantiles, bulk ESS and R-hat of the
    scalar and coefficient parameters, one row per element.

    :return: pandas DataFrame indexed by parameter label
    """
    names = [n for n in (names or SUMMARY_PARAMS) if n in result.names]
    idata = to_inference_data(result, names)
    frames = []
    for name in names:
        stats = az.summary(idata, var_names=[name], round_to='none')
        draws = result.get(name).astype(np.float64)
        shape = draws.shape[1:]
        quantiles = np.quantile(draws.reshape(draws.shape[0], -1), [0.025, 0.5, 0.975], axis=0)
        frames.append(pd.DataFrame({
            'mean': stats['mean'].to_numpy(),
            'sd': stats['sd'].to_numpy(),
            '2.5%': quantiles[0],
            '50%': quantiles[1],
            '97.5%': quantiles[2],
            'ess_bulk': stats['ess_bulk'].to_numpy(),
            'rhat': rhat(result, name).reshape(-1),
        }, index=_labels(result, name, shape)))
    return pd.concat(frames) if frames else pd.DataFrame()
