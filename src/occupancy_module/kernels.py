import numpy as np
from scipy.optimize import brentq
from scipy.spatial.distance import pdist
from scipy.special import gamma as gamma_fn, kv
import logging

from occupancy_module.errors import InvalidConfigurationError

# ==============================================================================
# Correlation functions (all equal 1 at d = 0 and decrease in d)
# ==============================================================================

def exponential(d, phi, nu=None):
    """exp(-phi * d)"""
    return np.exp(-phi * np.asarray(d, dtype=np.float64))


def spherical(d, phi, nu=None):
    """1 - 1.5 phi d + 0.5 (phi d)^3 inside the range 1/phi, 0 beyond it."""
    d = np.asarray(d, dtype=np.float64)
    pd = phi * d
    return np.where(d < 1.0 / phi, 1.0 - 1.5 * pd + 0.5 * pd**3, 0.0)


def gaussian(d, phi, nu=None):
    """exp(-(phi * d)^2)"""
    return np.exp(-(phi * np.asarray(d, dtype=np.float64))**2)


def matern(d, phi, nu):
    """
    Matern correlation with decay phi and smoothness nu:
    (phi d)^nu K_nu(phi d) / (2^(nu - 1) Gamma(nu)).
    """
    d = np.asarray(d, dtype=np.float64)
    pd = phi * d
    out = np.ones_like(pd)
    pos = pd > 0
    out[pos] = pd[pos]**nu * kv(nu, pd[pos]) / (2**(nu - 1) * gamma_fn(nu))
    return out


KERNELS = {
    'exponential': exponential,
    'spherical': spherical,
    'gaussian': gaussian,
    'matern': matern,
}


def correlation(d, phi, cov_model='exponential', nu=None):
    """Evaluate the correlation function of the given family at distance(s) d."""
    return KERNELS[cov_model](d, phi, nu)


def covariance(d, sigma_sq, phi, cov_model='exponential', nu=None):
    """cov(d, sigma_sq, phi) = sigma_sq * corr(d, phi)"""
    return sigma_sq * correlation(d, phi, cov_model, nu)


def effective_range(phi, cov_model='exponential', nu=None):
    """
    Distance at which the correlation drops to 0.05 (to 0 for the spherical family).

    The exponential family gives 3 / phi. Accepts an array of phi draws.
    """
    phi = np.asarray(phi, dtype=np.float64)
    if cov_model == 'exponential':
        return 3.0 / phi
    if cov_model == 'gaussian':
        return np.sqrt(3.0) / phi
    if cov_model == 'spherical':
        # correlation reaches exactly 0 at the range
        return 1.0 / phi
    if cov_model == 'matern':
        nu = np.broadcast_to(np.asarray(nu, dtype=np.float64), phi.shape)
        out = np.empty(phi.shape)
        for idx in np.ndindex(phi.shape):
            # solve on the unit-decay scale, then rescale
            x = brentq(lambda x: matern(np.array([x]), 1.0, nu[idx])[0] - 0.05, 1e-8, 100.0)
            out[idx] = x / phi[idx]
        return out if out.ndim else float(out)
    raise InvalidConfigurationError(f"unknown cov_model '{cov_model}', expected one of {sorted(KERNELS)}")


def decay_prior_bounds(coords):
    """
    Default Uniform bounds for the spatial decay: (3 / max distance, 3 / min distance).

    Args:
        coords (np.ndarray): Site coordinates (n_sites, 2).

    Returns:
        tuple: (lower, upper) bounds for phi.
    """
    dists = pdist(np.asarray(coords, dtype=np.float64))
    dists = dists[dists > 0]
    max_dist, min_dist = dists.max(), dists.min()
    logging.getLogger(__name__).info(
        f"Decay prior bounds from inter-site distances [{min_dist:.4f}, {max_dist:.4f}]: "
        f"({3 / max_dist:.4f}, {3 / min_dist:.4f})"
    )
    return 3.0 / max_dist, 3.0 / min_dist
