import numpy as np
from scipy.sparse import coo_matrix
from scipy.stats import invgamma
import logging

from occupancy_module.errors import InvalidInputError, NumericalInstabilityError

# ==============================================================================
# Data layout
# ==============================================================================

def make_occupancy_arrays(y):
    """
    Flatten a detection/non-detection tensor into occupancy units and observed cells.

    :param y: (J, K) or (J, T, K) array with entries 1, 0 or NaN (missing).
    :return: A Dictionary of the following values:
         - y_units: (n_units, K) array, one row per occupancy unit (site-major, then season)
         - obs_mask: (n_units, K) boolean array, True where the cell was surveyed
         - y_obs: Flattened observed cells (row-major over y_units, missing cells dropped)
         - unit_index: Occupancy unit of each observed cell
         - site_index: Site of each occupancy unit
         - V_unit: Sparse (n_obs, n_units) incidence matrix, observed cell -> unit
         - V_site: Sparse (n_units, J) incidence matrix, unit -> site
         - n_sites, n_seasons, n_reps
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim not in (2, 3):
        raise InvalidInputError(f"observation tensor must be (J, K) or (J, T, K), got shape {y.shape}")
    obs = ~np.isnan(y)
    if not np.all(np.isin(y[obs], (0.0, 1.0))):
        raise InvalidInputError("observation tensor may only contain 0, 1 or NaN")

    n_sites = y.shape[0]
    n_seasons = y.shape[1] if y.ndim == 3 else 1
    n_reps = y.shape[-1]
    n_units = n_sites * n_seasons

    # Site-major ordering: unit u = j * T + t
    y_units = y.reshape(n_units, n_reps)
    obs_mask = obs.reshape(n_units, n_reps)
    unit_of_cell = np.repeat(np.arange(n_units), n_reps).reshape(n_units, n_reps)
    unit_index = unit_of_cell[obs_mask]
    y_obs = y_units[obs_mask]
    site_index = np.repeat(np.arange(n_sites), n_seasons)

    n_obs = y_obs.shape[0]
    if n_obs == 0:
        raise InvalidInputError("observation tensor has no surveyed cells")
    V_unit = coo_matrix((np.ones(n_obs), (np.arange(n_obs), unit_index)), shape=(n_obs, n_units)).tocsr()
    V_site = coo_matrix((np.ones(n_units), (np.arange(n_units), site_index)), shape=(n_units, n_sites)).tocsr()

    return {
        'y_units': y_units, 'obs_mask': obs_mask, 'y_obs': y_obs,
        'unit_index': unit_index, 'site_index': site_index,
        'V_unit': V_unit, 'V_site': V_site,
        'n_sites': n_sites, 'n_seasons': n_seasons, 'n_reps': n_reps,
    }

# ==============================================================================
# Linear algebra
# ==============================================================================

def solve_svd(A_svd, b, threshold=1e-12):
    """
    Use SVD to solve a linear system Ax=b

    :param A_svd: SVD of A (Dictionary with u, d, v components)
    :param b: b
    :return: x
    """
    rank = np.sum(A_svd['d'] > threshold)
    Upart = A_svd['u'][:, :rank]
    Vpart = A_svd['v'][:, :rank]
    dpart = A_svd['d'][:rank]

    crossprod_U_b = Upart.T @ b
    if b.ndim > 1:
        inv_dpart = (1.0 / dpart)[:, np.newaxis]
    else:
        inv_dpart = (1.0 / dpart)
    return Vpart @ (inv_dpart * crossprod_U_b)


def mvn_sample_svd(P_svd, mu, rng, threshold=1e-12):
    """
    Use SVD for precision matrix to sample from multivariate normal distribution

    :param P_svd: SVD of precision matrix
    :param mu: Mean of MVN to draw from
    :param rng: numpy Generator owned by the calling chain
    """
    entropy = rng.standard_normal(len(mu))
    # P is a symmetric precision matrix, so u = v
    P_half_svd = {'u': P_svd['u'], 'd': np.sqrt(P_svd['d']), 'v': P_svd['u']}
    varPart = solve_svd(P_half_svd, entropy, threshold=np.sqrt(threshold))
    return mu + varPart


def sample_mvn_precision(precision, rhs, rng, threshold=1e-12):
    """
    Draw from N(P^-1 b, P^-1) given the precision P and the canonical vector b.

    Raises NumericalInstabilityError when P is not finite or not full rank.
    """
    if not (np.all(np.isfinite(precision)) and np.all(np.isfinite(rhs))):
        raise NumericalInstabilityError("non-finite conjugate update")
    precision = (precision + precision.T) / 2
    try:
        u, d, vt = np.linalg.svd(precision, hermitian=True)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"SVD of conjugate precision failed: {e}") from e
    if np.sum(d > threshold * max(1.0, d[0])) < precision.shape[0]:
        raise NumericalInstabilityError("singular conjugate-update covariance")
    svd_vinv = {'u': u, 'd': d, 'v': vt.T}
    m = solve_svd(svd_vinv, rhs, threshold=threshold)
    return mvn_sample_svd(svd_vinv, m, rng, threshold=threshold)

# ==============================================================================
# Distributions
# ==============================================================================

def rinvgamma(shape, scale, rng, n=None):
    """Inverse Gamma sampling with shape/scale parametrisation, drawn from the chain's generator"""
    return invgamma.rvs(a=shape, scale=scale, size=n, random_state=rng)


def logit_bounded(x, a, b):
    """Map x in (a, b) to the real line"""
    return np.log(x - a) - np.log(b - x)


def logit_inv_bounded(z, a, b):
    """Inverse of logit_bounded"""
    return b - (b - a) / (1 + np.exp(z))


def nullcheck(value, default):
    """
    Returns default if value is null

    :param value: Nullable
    :param default: Default value
    """
    if value is None:
        return default
    return value


def sigmoid(eta):
    """
    Compute sigmoid function, clip properly to prevent infinity/nan
    """
    eta = np.clip(eta, -700, 700)

    # Numerically stable implementation of sigmoid
    val = np.where(
        eta >= 0,
        1 / (1 + np.exp(-eta)),
        np.exp(eta) / (1 + np.exp(eta))
    )
    return np.maximum(1e-10, np.minimum(1 - 1e-10, val))


def check_finite(eta, what):
    """Raise NumericalInstabilityError if a linear predictor went non-finite."""
    if not np.all(np.isfinite(eta)):
        logging.getLogger(__name__).debug(f"Non-finite values in {what}: {np.sum(~np.isfinite(eta))}")
        raise NumericalInstabilityError(f"non-finite {what}")
    return eta
