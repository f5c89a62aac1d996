from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from occupancy_module import (
    InvalidConfigurationError, SamplerConfig, fit_ms_occupancy, fit_occupancy, in_sample_deviance,
    k_fold_cv, posterior_predictive_check, posterior_summary, rhat, to_inference_data, waic,
)
from occupancy_module.data import prepare_data

from conftest import simulate_occupancy


@pytest.fixture
def fitted(single_species, quick_config):
    return fit_occupancy(single_species['y'], single_species['covariates'], quick_config)


def test_waic_is_deviance_plus_twice_p_waic(fitted):
    out = waic(fitted)
    assert np.isfinite(out['waic'])
    assert out['p_waic'] > 0
    assert out['waic'] == pytest.approx(out['deviance'] + 2 * out['p_waic'])
    assert in_sample_deviance(fitted) == pytest.approx(out['deviance'])


def test_waic_per_species(community, quick_config):
    result = fit_ms_occupancy(community['y'], community['covariates'], quick_config)
    out = waic(result)
    assert out['waic'].shape == (4,)
    assert np.all(np.isfinite(out['waic']))
    assert np.allclose(out['waic'], out['deviance'] + 2 * out['p_waic'])


@pytest.mark.parametrize("fit_stat", ["freeman-tukey", "chi-squared"])
@pytest.mark.parametrize("group", ["site", "replicate"])
def test_posterior_predictive_check(fitted, fit_stat, group):
    out = posterior_predictive_check(fitted, fit_stat=fit_stat, group=group, seed=1)
    assert out['fit_y'].shape == (100,)
    assert out['fit_y_rep'].shape == (100,)
    assert 0.0 <= out['bayes_p'] <= 1.0


def test_well_specified_model_passes_predictive_check():
    sim = simulate_occupancy(n_sites=100, n_reps=4, seed=9)
    config = SamplerConfig(n_batch=40, batch_length=25, n_burn=400, n_thin=2, n_chains=1, seed=4)
    result = fit_occupancy(sim['y'], sim['covariates'], config)
    out = posterior_predictive_check(result, seed=2)
    assert 0.1 <= out['bayes_p'] <= 0.9


def test_bad_check_arguments(fitted):
    with pytest.raises(InvalidConfigurationError):
        posterior_predictive_check(fitted, fit_stat="deviance")
    with pytest.raises(InvalidConfigurationError):
        posterior_predictive_check(fitted, group="season")


def test_k_fold_cross_validation(single_species, quick_config):
    data = prepare_data(single_species['y'], single_species['covariates'])
    out = k_fold_cv(data, replace(quick_config, k_fold=3))
    assert out['fold_deviance'].shape == (3,)
    assert np.all(out['fold_deviance'] > 0)
    assert out['deviance'] == pytest.approx(out['fold_deviance'].mean())


def test_k_fold_through_fit(spatial_species, quick_config):
    config = replace(quick_config, k_fold=2, n_chains=1)
    result = fit_occupancy(spatial_species['y'], spatial_species['covariates'], config,
                           coords=spatial_species['coords'])
    assert np.isfinite(result.k_fold['deviance'])


def test_k_fold_bounds(single_species, quick_config):
    data = prepare_data(single_species['y'], single_species['covariates'])
    with pytest.raises(InvalidConfigurationError):
        k_fold_cv(data, replace(quick_config, k_fold=1))
    with pytest.raises(InvalidConfigurationError):
        k_fold_cv(data, replace(quick_config, k_fold=50))


class StoredChains:
    names = ['beta']

    def __init__(self, chains):
        self.chains = chains
        self.n_chains = len(chains)

    def get(self, name, chain=None):
        return self.chains[chain]


def test_rhat_detects_disagreeing_chains():
    rng = np.random.default_rng(0)
    same = StoredChains([rng.standard_normal((500, 2)) for _ in range(3)])
    assert np.allclose(rhat(same, 'beta'), 1.0, atol=0.05)
    apart = StoredChains([rng.standard_normal((500, 1)) + shift for shift in (0.0, 5.0)])
    assert rhat(apart, 'beta')[0] > 2.0


def test_inference_data_keeps_chain_and_draw_axes(fitted):
    idata = to_inference_data(fitted)
    assert idata.posterior['beta'].shape == (2, 50, 2)
    assert set(idata.posterior.data_vars) == {'beta', 'alpha'}


def test_rhat_needs_two_chains(single_species, quick_config):
    result = fit_occupancy(single_species['y'], single_species['covariates'], replace(quick_config, n_chains=1))
    assert np.all(np.isnan(rhat(result, 'beta')))


def test_posterior_summary(fitted):
    table = posterior_summary(fitted)
    assert isinstance(table, pd.DataFrame)
    assert list(table.columns) == ['mean', 'sd', '2.5%', '50%', '97.5%', 'ess_bulk', 'rhat']
    assert list(table.index) == ['beta[(Intercept)]', 'beta[occ1]', 'alpha[(Intercept)]', 'alpha[det1]']
    assert np.all(table['2.5%'] <= table['97.5%'])
    assert np.all(np.isfinite(table['rhat']))


@pytest.mark.slow
def test_fifty_site_scenario():
    rng = np.random.default_rng(12)
    sim = simulate_occupancy(n_sites=50, n_reps=4, beta=(0.2, 0.7, -0.4), alpha=(0.1, 0.5, -0.3, 0.2), seed=12)
    assert not np.any(np.isnan(sim['y']))
    config = SamplerConfig(n_batch=400, batch_length=25, n_burn=5000, n_thin=5, n_chains=3, seed=int(rng.integers(1e6)))
    result = fit_occupancy(sim['y'], sim['covariates'], config)
    assert result.n_samples == 1000
    assert all(c.samples['beta'].shape[0] == 1000 for c in result.chains)
    assert result.get('beta').shape == (3000, 3)
    assert np.isfinite(waic(result)['waic'])
    assert not np.any(np.isnan(rhat(result, 'beta')))
    assert not np.any(np.isnan(rhat(result, 'alpha')))
