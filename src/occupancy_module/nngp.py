import numpy as np
import logging

from occupancy_module.errors import NumericalInstabilityError
from occupancy_module.kernels import correlation

logger = logging.getLogger(__name__)

# ==============================================================================
# NNGP structure
# ==============================================================================

def nngp_factors(index, phi, cov_model='exponential', nu=None):
    """
    Compute the NNGP regression weights B and conditional variances F on the
    correlation scale (multiply F by sigma_sq for the covariance scale).

    :param index: NeighborIndex
    :param phi: Spatial decay
    :return: (B (N, M) with zero padding, F (N,))
    """
    n_sites, M = index.n_sites, index.n_neighbors
    B = np.zeros((n_sites, M))
    F = np.ones(n_sites)
    for m in np.unique(index.counts):
        if m == 0:
            continue
        sites = np.flatnonzero(index.counts == m)
        C_NN = correlation(index.dist_among_neighbors[sites, :m, :m], phi, cov_model, nu)
        c_iN = correlation(index.dist_to_neighbors[sites, :m], phi, cov_model, nu)
        try:
            b = np.linalg.solve(C_NN, c_iN[..., np.newaxis])[..., 0]
        except np.linalg.LinAlgError as e:
            raise NumericalInstabilityError(f"singular neighbor correlation block (phi={phi:.4g})") from e
        B[sites, :m] = b
        F[sites] = 1.0 - np.sum(b * c_iN, axis=1)
    if not np.all(np.isfinite(F)) or np.any(F <= 0):
        raise NumericalInstabilityError(f"non-positive NNGP conditional variance (phi={phi:.4g})")
    return B, F


def _neighbor_values(w, index):
    # -1 padding reads the appended zero
    w_pad = np.append(w, 0.0)
    return w_pad[index.neighbors]


def nngp_residuals(w, index, B):
    """e_i = w_i - B_i w_N(i)"""
    return w - np.sum(B * _neighbor_values(w, index), axis=1)


def nngp_quadratic(w, index, B, F):
    """sum_i e_i^2 / F_i, the quadratic form of w under the unit-variance NNGP prior"""
    e = nngp_residuals(w, index, B)
    return np.sum(e**2 / F)


def nngp_logdens(w, index, B, F, sigma_sq=1.0):
    """Log density of w under the NNGP prior with variance sigma_sq (up to the 2 pi constant)."""
    e = nngp_residuals(w, index, B)
    var = sigma_sq * F
    return -0.5 * np.sum(np.log(var)) - 0.5 * np.sum(e**2 / var)

# ==============================================================================
# Gibbs updates
# ==============================================================================

def _prior_terms(i, w, index, B, F, sigma_sq):
    """Precision and canonical mean contributions of the NNGP prior for site i."""
    m = index.counts[i]
    nn = index.neighbors[i, :m]
    prec = 1.0 / (sigma_sq * F[i])
    lin = np.dot(B[i, :m], w[nn]) * prec
    users, pos = index.users_of(i)
    for u, l in zip(users, pos):
        mu = index.counts[u]
        nn_u = index.neighbors[u, :mu]
        b_u = B[u, :mu]
        resid = w[u] - np.dot(b_u, w[nn_u]) + b_u[l] * w[i]
        prec_u = 1.0 / (sigma_sq * F[u])
        prec += b_u[l]**2 * prec_u
        lin += b_u[l] * resid * prec_u
    return prec, lin


def sample_nngp_field(w, index, B, F, sigma_sq, data_prec, data_lin, rng):
    """
    Sequentially draw each w_i from its NNGP full conditional.

    Only site i's neighbors and the sites that use i as a neighbor enter the
    update, never the full site set.

    :param w: Current field (N,), updated in place and returned
    :param data_prec: Per-site sum of Polya-Gamma weights
    :param data_lin: Per-site sum of (kappa - omega * offset)
    """
    for i in range(index.n_sites):
        prec, lin = _prior_terms(i, w, index, B, F, sigma_sq)
        prec += data_prec[i]
        lin += data_lin[i]
        w[i] = lin / prec + rng.standard_normal() / np.sqrt(prec)
    return w


def sample_factors(factors, lam, index, B_list, F_list, omega_site, lin_site, rng):
    """
    Draw the (J, q) spatial factor scores, one site at a time as a q-vector.

    :param factors: Current factor scores (J, q), updated in place
    :param lam: Loadings (n_species, q)
    :param index: NeighborIndex, or None for iid standard-normal factors
    :param B_list, F_list: Per-factor NNGP weights/variances (ignored without index)
    :param omega_site: (n_species, J) per-site sums of occupancy Polya-Gamma weights
    :param lin_site: (n_species, J) per-site sums of (z - 1/2 - omega * offset)
    """
    n_sites, q = factors.shape
    data_P = np.einsum('iq,ij,ir->jqr', lam, omega_site, lam)
    data_b = lin_site.T @ lam
    for j in range(n_sites):
        prec = data_P[j].copy()
        lin = data_b[j].copy()
        for r in range(q):
            if index is None:
                prec[r, r] += 1.0
            else:
                p_r, l_r = _prior_terms(j, factors[:, r], index, B_list[r], F_list[r], 1.0)
                prec[r, r] += p_r
                lin[r] += l_r
        try:
            L = np.linalg.cholesky(prec)
        except np.linalg.LinAlgError as e:
            raise NumericalInstabilityError(f"factor precision at site {j} is not positive definite") from e
        mean = np.linalg.solve(L.T, np.linalg.solve(L, lin))
        factors[j] = mean + np.linalg.solve(L.T, rng.standard_normal(q))
    return factors

# ==============================================================================
# Prediction at new locations
# ==============================================================================

def krige_nngp(w_samples, sigma_sq_samples, phi_samples, nu_samples, cov_model,
               nn_idx, dist_to, dist_among, rng):
    """
    Draw the spatial field at new locations from the NNGP predictive,
    conditioning each new site on its nearest fitted sites.

    :param w_samples: (S, J) fitted-site draws
    :return: (S, n_new) draws at the new locations
    """
    n_draws = w_samples.shape[0]
    n_new = nn_idx.shape[0]
    out = np.empty((n_draws, n_new))
    for s in range(n_draws):
        nu = None if nu_samples is None else nu_samples[s]
        C_NN = sigma_sq_samples[s] * correlation(dist_among, phi_samples[s], cov_model, nu)
        c_iN = sigma_sq_samples[s] * correlation(dist_to, phi_samples[s], cov_model, nu)
        b = np.linalg.solve(C_NN, c_iN[..., np.newaxis])[..., 0]
        mean = np.sum(b * w_samples[s][nn_idx], axis=1)
        var = np.maximum(sigma_sq_samples[s] - np.sum(b * c_iN, axis=1), 0.0)
        out[s] = mean + np.sqrt(var) * rng.standard_normal(n_new)
    return out
