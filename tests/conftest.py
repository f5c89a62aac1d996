"""
pytest fixtures: simulated detection/non-detection data and short sampler settings.
"""
import numpy as np
import pytest

from occupancy_module import Covariates, SamplerConfig


def expit(x):
    return 1.0 / (1.0 + np.exp(-x))


def exponential_field(coords, sigma_sq, phi, rng):
    """Exact draw of a Gaussian process with exponential covariance."""
    d = np.sqrt(((coords[:, None, :] - coords[None, :, :])**2).sum(-1))
    C = sigma_sq * np.exp(-phi * d) + 1e-8 * np.eye(len(coords))
    return np.linalg.cholesky(C) @ rng.standard_normal(len(coords))


def simulate_occupancy(n_sites=50, n_reps=4, n_seasons=None, beta=(0.3, 0.8), alpha=(0.2, -0.5),
                       spatial=False, sigma_sq=1.0, phi=3.0, missing=0.0, seed=1):
    """
    Single-species detection/non-detection data from the occupancy model.

    :return: A Dictionary with y, covariates, coords and the true z/psi
    """
    rng = np.random.default_rng(seed)
    beta, alpha = np.asarray(beta), np.asarray(alpha)
    season_shape = (n_sites,) if n_seasons is None else (n_sites, n_seasons)
    obs_shape = season_shape + (n_reps,)

    occ_x = rng.standard_normal((n_sites, len(beta) - 1))
    det_x = rng.standard_normal(obs_shape + (len(alpha) - 1,))
    coords = rng.uniform(0, 1, (n_sites, 2))

    eta = beta[0] + occ_x @ beta[1:]
    if spatial:
        eta = eta + exponential_field(coords, sigma_sq, phi, rng)
    if n_seasons is not None:
        eta = np.repeat(eta[:, None], n_seasons, axis=1)
    psi = expit(eta)
    z = rng.binomial(1, psi)
    p = expit(alpha[0] + det_x @ alpha[1:])
    y = rng.binomial(1, p * z[..., None]).astype(np.float64)
    if missing > 0:
        y[rng.uniform(size=y.shape) < missing] = np.nan
        # keep at least one surveyed replicate per unit
        y[..., 0] = rng.binomial(1, p[..., 0] * z)

    covariates = Covariates(
        occ_site={f"occ{k + 1}": occ_x[:, k] for k in range(occ_x.shape[1])},
        det_obs={f"det{k + 1}": det_x[..., k] for k in range(det_x.shape[-1])},
    )
    return {'y': y, 'covariates': covariates, 'coords': coords, 'z': z, 'psi': psi}


def simulate_community(n_species=4, n_sites=40, n_reps=3, n_factors=0, seed=2):
    """Multi-species data with species coefficients drawn around community means."""
    rng = np.random.default_rng(seed)
    occ_x = rng.standard_normal(n_sites)
    det_x = rng.standard_normal((n_sites, n_reps))
    coords = rng.uniform(0, 1, (n_sites, 2))

    beta = np.column_stack([rng.normal(0.3, 0.5, n_species), rng.normal(0.5, 0.5, n_species)])
    alpha = np.column_stack([rng.normal(0.0, 0.5, n_species), rng.normal(-0.3, 0.5, n_species)])
    eta = beta[:, :1] + beta[:, 1:] * occ_x
    if n_factors:
        factors = np.column_stack([exponential_field(coords, 1.0, 3.0, rng) for _ in range(n_factors)])
        lam = np.tril(rng.normal(0, 0.5, (n_species, n_factors)), -1)
        lam[np.arange(n_factors), np.arange(n_factors)] = 1.0
        eta = eta + lam @ factors.T
    z = rng.binomial(1, expit(eta))
    p = expit(alpha[:, 0, None, None] + alpha[:, 1, None, None] * det_x)
    y = rng.binomial(1, p * z[..., None]).astype(np.float64)

    covariates = Covariates(occ_site={'occ1': occ_x}, det_obs={'det1': det_x})
    return {'y': y, 'covariates': covariates, 'coords': coords, 'z': z}


@pytest.fixture
def single_species():
    return simulate_occupancy()


@pytest.fixture
def spatial_species():
    return simulate_occupancy(n_sites=30, n_reps=3, spatial=True, seed=3)


@pytest.fixture
def community():
    return simulate_community()


@pytest.fixture
def quick_config():
    """Short chains: 30 x 10 iterations, 100 burn-in, thin 4 -> 50 draws per chain."""
    return SamplerConfig(n_batch=30, batch_length=10, n_burn=100, n_thin=4, n_chains=2,
                         n_neighbors=5, seed=11)
