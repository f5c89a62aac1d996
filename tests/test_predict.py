import logging

import numpy as np
import pytest

from occupancy_module import Covariates, InvalidInputError, fit_ms_occupancy, fit_occupancy, predict, predict_detection

from conftest import simulate_occupancy


@pytest.fixture
def fitted(single_species, quick_config):
    return fit_occupancy(single_species['y'], single_species['covariates'], quick_config)


def test_predict_new_sites(fitted):
    new = Covariates(occ_site={'occ1': np.array([-2.0, 0.0, 2.0])})
    out = predict(fitted, new, seed=1)
    assert out['psi'].shape == (100, 3)
    assert set(np.unique(out['z'])) <= {0, 1}
    assert 'w' not in out
    # psi equals the logistic of X beta for a non-spatial model
    beta = fitted.get('beta')
    expected = 1 / (1 + np.exp(-(beta[:, 0, None] + beta[:, 1, None] * np.array([-2.0, 0.0, 2.0]))))
    assert np.allclose(out['psi'], expected)


def test_predict_requires_matching_covariates(fitted):
    with pytest.raises(InvalidInputError):
        predict(fitted, Covariates(occ_site={'elevation': np.zeros(3)}))
    with pytest.raises(InvalidInputError):
        predict(fitted, Covariates())


def test_predict_spatial_sites(spatial_species, quick_config):
    result = fit_occupancy(spatial_species['y'], spatial_species['covariates'], quick_config,
                           coords=spatial_species['coords'])
    coords_0 = np.array([[0.5, 0.5], [0.1, 0.9]])
    new = Covariates(occ_site={'occ1': np.zeros(2)})
    out = predict(result, new, coords_0=coords_0, seed=2)
    assert out['w'].shape == (100, 2)
    assert np.all(np.isfinite(out['w']))
    assert np.all((out['psi'] > 0) & (out['psi'] < 1))
    with pytest.raises(InvalidInputError):
        predict(result, new)


def test_predict_at_fitted_location_tracks_fitted_field(spatial_species, quick_config):
    result = fit_occupancy(spatial_species['y'], spatial_species['covariates'], quick_config,
                           coords=spatial_species['coords'])
    coords_0 = spatial_species['coords'][:1] + 1e-9
    out = predict(result, Covariates(occ_site={'occ1': np.zeros(1)}), coords_0=coords_0, seed=3)
    assert np.allclose(out['w'][:, 0], result.get('w')[:, 0], atol=1e-2)


def test_unseen_random_effect_level_contributes_zero(quick_config, caplog):
    sim = simulate_occupancy(n_sites=40, n_reps=3, seed=10)
    cov = Covariates(occ_site=sim['covariates'].occ_site, det_obs=sim['covariates'].det_obs,
                     occ_random={'region': np.repeat(np.arange(4), 10)})
    result = fit_occupancy(sim['y'], cov, quick_config)
    new = Covariates(occ_site={'occ1': np.zeros(2)}, occ_random={'region': np.array([1, 99])})
    with caplog.at_level(logging.WARNING):
        out = predict(result, new, seed=4)
    assert "not in the fitted data" in caplog.text
    beta = result.get('beta')
    star = result.get('beta_star')
    assert np.allclose(out['psi'][:, 1], 1 / (1 + np.exp(-beta[:, 0])))
    assert np.allclose(out['psi'][:, 0], 1 / (1 + np.exp(-(beta[:, 0] + star[:, 1]))))


def test_predict_detection(fitted):
    det = np.array([[0.0, 1.0], [-1.0, 2.0]])
    p = predict_detection(fitted, Covariates(det_obs={'det1': det}), obs_shape=(2, 2))
    assert p.shape == (100, 2, 2)
    alpha = fitted.get('alpha')
    assert np.allclose(p[:, 1, 0], 1 / (1 + np.exp(-(alpha[:, 0] - alpha[:, 1]))))


def test_predict_community(community, quick_config):
    result = fit_ms_occupancy(community['y'], community['covariates'], quick_config)
    out = predict(result, Covariates(occ_site={'occ1': np.linspace(-1, 1, 5)}), seed=5)
    assert out['psi'].shape == (100, 4, 5)
