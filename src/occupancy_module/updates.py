import numpy as np
from polyagamma import random_polyagamma
import logging

from occupancy_module.errors import NumericalInstabilityError
from occupancy_module.utils import check_finite, rinvgamma, sample_mvn_precision

logger = logging.getLogger(__name__)

# ==============================================================================
# Latent occupancy state
# ==============================================================================

def sample_latent_state(psi, p, V_unit, detected, rng):
    """
    Draw z for every occupancy unit from its zero-inflated full conditional.

    :param psi: (N, n_units) occupancy probabilities
    :param p: (N, n_obs) detection probabilities of the surveyed cells
    :param V_unit: Sparse (n_obs, n_units) incidence matrix, cell -> unit
    :param detected: (N, n_units) True where any replicate is a detection
    :return: (N, n_units) array of 0/1
    """
    # log prod_k (1 - p_k) over surveyed replicates; 0 (product 1) for units with none
    log_q = np.asarray((V_unit.T @ np.log1p(-p).T).T)
    num = psi * np.exp(log_q)
    prob = num / (num + 1.0 - psi)
    z = rng.binomial(1, prob).astype(np.float64)
    z[detected] = 1.0
    return z

# ==============================================================================
# Polya-Gamma augmentation
# ==============================================================================

def sample_polya_gamma(eta, rng, what="linear predictor"):
    """
    Draw omega ~ PG(1, eta) elementwise using the chain's generator.

    Raises NumericalInstabilityError for a non-finite eta or a degenerate draw.
    """
    check_finite(eta, what)
    omega = random_polyagamma(1, np.asarray(eta, dtype=np.float64), random_state=rng)
    omega = np.asarray(omega, dtype=np.float64)
    if not np.all(np.isfinite(omega)) or np.any(omega <= 0):
        raise NumericalInstabilityError(f"degenerate Polya-Gamma draw for {what}")
    return omega

# ==============================================================================
# Regression coefficients
# ==============================================================================

def sample_coefficients(X, omega, kappa, offset, prior_mean, prior_prec, rng):
    """
    Draw coefficients from their conjugate multivariate normal full conditional.

    precision = X' Omega X + prior_prec
    mean      = precision^-1 (X' (kappa - Omega offset) + prior_prec prior_mean)
    """
    precision = (X * omega[:, np.newaxis]).T @ X + prior_prec
    rhs = X.T @ (kappa - omega * offset) + prior_prec @ prior_mean
    return sample_mvn_precision(precision, rhs, rng)


def sample_random_effects(codes, n_levels, omega, kappa, offset, sigma_sq, rng):
    """
    Draw the levels of one unstructured random intercept.

    :param codes: Level of each row (all >= 0)
    :param offset: Linear predictor without this random effect
    :param sigma_sq: Variance of the random intercept
    """
    prec = np.bincount(codes, weights=omega, minlength=n_levels) + 1.0 / sigma_sq
    lin = np.bincount(codes, weights=kappa - omega * offset, minlength=n_levels)
    return lin / prec + rng.standard_normal(n_levels) / np.sqrt(prec)


def sample_variance(values, a, b, rng):
    """Inverse-Gamma(a, b) conjugate draw for the variance of zero-mean normal values."""
    values = np.asarray(values)
    return float(rinvgamma(a + values.size / 2.0, b + np.sum(values**2) / 2.0, rng))

# ==============================================================================
# Community level
# ==============================================================================

def sample_community_mean(coefs, tau_sq, prior_mean, prior_var, rng):
    """
    Draw community-level means given species coefficients (N, p) and
    community variances (p,). Componentwise normal conjugate update.
    """
    n_species = coefs.shape[0]
    prec = n_species / tau_sq + 1.0 / prior_var
    mean = (np.sum(coefs, axis=0) / tau_sq + prior_mean / prior_var) / prec
    return mean + rng.standard_normal(len(mean)) / np.sqrt(prec)


def sample_community_variance(coefs, comm_mean, a, b, rng):
    """Componentwise Inverse-Gamma conjugate draw for community variances."""
    n_species = coefs.shape[0]
    ss = np.sum((coefs - comm_mean)**2, axis=0)
    return np.asarray(rinvgamma(a + n_species / 2.0, b + ss / 2.0, rng), dtype=np.float64)

# ==============================================================================
# Factor loadings
# ==============================================================================

def loading_mask(n_species, n_factors):
    """
    Identifiability structure of the loadings matrix.

    :return: (free (N, q) boolean, fixed values (N, q)); the upper triangle is
        fixed at 0 and the diagonal at 1
    """
    rows, cols = np.indices((n_species, n_factors))
    free = rows > cols
    fixed = np.where(rows == cols, 1.0, 0.0)
    return free, fixed


def constrain_loadings(lam):
    """Apply the identifiability mask to a loadings matrix, returning a new array."""
    free, fixed = loading_mask(*lam.shape)
    return np.where(free, lam, fixed)


def sample_loadings(lam, factors_unit, omega, kappa, offset, rng):
    """
    Draw the free loadings of every species conjugately, then reapply the mask.

    :param lam: Current loadings (N, q)
    :param factors_unit: Factor scores at each occupancy unit (n_units, q)
    :param omega, kappa, offset: (N, n_units) occupancy weights, centred
        responses and linear predictor without the factor term
    """
    free, _ = loading_mask(*lam.shape)
    lam = constrain_loadings(lam)
    for i in range(lam.shape[0]):
        f = free[i]
        if not np.any(f):
            continue
        fixed_part = factors_unit[:, ~f] @ lam[i, ~f]
        Ff = factors_unit[:, f]
        n_free = Ff.shape[1]
        lam[i, f] = sample_coefficients(Ff, omega[i], kappa[i], offset[i] + fixed_part,
                                        np.zeros(n_free), np.eye(n_free), rng)
    return constrain_loadings(lam)
