import numpy as np
import pytest

from occupancy_module.errors import InvalidConfigurationError
from occupancy_module.kernels import KERNELS, correlation, covariance, decay_prior_bounds, effective_range
from occupancy_module.neighbors import build_neighbor_index
from occupancy_module.nngp import nngp_factors, nngp_logdens


@pytest.mark.parametrize("cov_model", sorted(KERNELS))
def test_correlation_is_one_at_zero_and_decreasing(cov_model):
    d = np.linspace(0, 2, 50)
    c = correlation(d, 2.0, cov_model, nu=1.0)
    assert c[0] == pytest.approx(1.0)
    assert np.all(np.diff(c) <= 1e-12)
    assert np.all(c >= 0)


def test_covariance_scales_correlation():
    d = np.array([0.0, 0.5, 1.0])
    assert np.allclose(covariance(d, 2.5, 3.0), 2.5 * np.exp(-3.0 * d))


def test_spherical_vanishes_beyond_range():
    assert correlation(np.array([0.6]), 2.0, 'spherical')[0] == 0.0


def test_matern_half_is_exponential():
    d = np.linspace(0.01, 3, 20)
    assert np.allclose(correlation(d, 1.7, 'matern', nu=0.5), np.exp(-1.7 * d))


@pytest.mark.parametrize("cov_model", ["exponential", "gaussian", "matern"])
def test_effective_range_hits_five_percent(cov_model):
    phi = 4.0
    r = effective_range(phi, cov_model, nu=1.5)
    assert correlation(np.array([r]), phi, cov_model, nu=1.5)[0] == pytest.approx(0.05, abs=1e-3)


def test_spherical_range_is_where_correlation_vanishes():
    assert effective_range(2.0, 'spherical') == pytest.approx(0.5)
    assert correlation(np.array([0.4999]), 2.0, 'spherical')[0] > 0


def test_effective_range_exponential_draws():
    assert np.allclose(effective_range(np.array([1.0, 3.0])), [3.0, 1.0])


def test_decay_prior_bounds():
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 4.0]])
    lower, upper = decay_prior_bounds(coords)
    assert lower == pytest.approx(3.0 / np.sqrt(17.0))
    assert upper == pytest.approx(3.0)


def test_nngp_density_matches_full_gp_for_full_neighbor_sets():
    # With every previous site as a neighbor the NNGP is the exact GP
    rng = np.random.default_rng(4)
    coords = rng.uniform(size=(8, 2))
    index = build_neighbor_index(coords, 7)
    B, F = nngp_factors(index, 2.0)
    w = rng.standard_normal(8)
    d = np.linalg.norm(coords[:, None] - coords[None], axis=-1)
    C = 1.3 * np.exp(-2.0 * d)
    _, logdet = np.linalg.slogdet(C)
    exact = -0.5 * logdet - 0.5 * w @ np.linalg.solve(C, w)
    assert nngp_logdens(w, index, B, F, 1.3) == pytest.approx(exact)


def implied_precision(index, B, F):
    """Dense (I - A)' F^-1 (I - A) of the NNGP with unit variance."""
    n = index.n_sites
    A = np.zeros((n, n))
    for i in range(n):
        A[i, index.neighbors_of(i)] = B[i, :index.counts[i]]
    L = np.eye(n) - A
    return L.T @ np.diag(1.0 / F) @ L


def test_more_neighbors_never_lose_expected_log_density():
    rng = np.random.default_rng(5)
    coords = rng.uniform(size=(30, 2))
    d = np.linalg.norm(coords[:, None] - coords[None], axis=-1)
    C = np.exp(-3.0 * d)
    _, logdet = np.linalg.slogdet(C)
    exact = -0.5 * logdet - 0.5 * len(coords)

    w = rng.standard_normal(30)
    expected = []
    for M in (1, 2, 5, 10, 29):
        index = build_neighbor_index(coords, M)
        B, F = nngp_factors(index, 3.0)
        Q = implied_precision(index, B, F)
        assert nngp_logdens(w, index, B, F) == pytest.approx(-0.5 * np.sum(np.log(F)) - 0.5 * w @ Q @ w)
        # E[log q_M(w)] for w drawn from the exact GP
        expected.append(-0.5 * np.sum(np.log(F)) - 0.5 * np.trace(Q @ C))
    assert np.all(np.diff(expected) >= -1e-8)
    assert expected[-1] == pytest.approx(exact)
    assert expected[0] < exact


def test_effective_range_rejects_unknown_family():
    with pytest.raises(InvalidConfigurationError):
        effective_range(2.0, 'linear')
