import pickle

import numpy as np
import pytest

from occupancy_module.config import Priors, SamplerConfig
from occupancy_module.errors import (
    InvalidConfigurationError, NeighborCountError, NumericalInstabilityError, OccupancyError,
    SamplingCancelledError,
)


def test_retained_draw_count():
    config = SamplerConfig(n_batch=400, batch_length=25, n_burn=5000, n_thin=5, n_chains=3)
    assert config.n_iter == 10000
    assert config.n_samples == 1000
    # floor division
    assert SamplerConfig(n_batch=10, batch_length=10, n_burn=3, n_thin=4).n_samples == 24


@pytest.mark.parametrize("kwargs", [
    dict(n_batch=200, batch_length=25, n_burn=5000),
    dict(n_batch=10, batch_length=10, n_burn=200),
    dict(n_thin=0),
    dict(n_chains=0),
    dict(n_neighbors=0),
    dict(cov_model="linear"),
    dict(accept_rate=1.5),
    dict(k_fold=1),
    dict(tuning={'phi': -1.0}),
])
def test_invalid_configuration(kwargs):
    with pytest.raises(InvalidConfigurationError):
        SamplerConfig(**kwargs).validate()


def test_k_fold_must_be_below_site_count():
    config = SamplerConfig(k_fold=10)
    config.validate(n_sites=11)
    with pytest.raises(InvalidConfigurationError):
        config.validate(n_sites=10)


def test_prior_expansion():
    mean, prec = Priors(beta_normal=(1.0, 4.0)).normal('beta_normal', 3)
    assert np.allclose(mean, 1.0)
    assert np.allclose(prec, np.eye(3) / 4.0)
    with pytest.raises(InvalidConfigurationError):
        Priors(beta_normal=(0.0, -1.0)).normal('beta_normal', 2)


@pytest.mark.parametrize("kwargs", [
    dict(sigma_sq_ig=(0.0, 1.0)),
    dict(phi_unif=(3.0, 1.0)),
    dict(nu_unif=(-1.0, 2.0)),
])
def test_invalid_priors(kwargs):
    with pytest.raises(InvalidConfigurationError):
        Priors(**kwargs).validate()


def test_error_hierarchy():
    assert issubclass(InvalidConfigurationError, ValueError)
    assert issubclass(NumericalInstabilityError, ArithmeticError)
    assert issubclass(SamplingCancelledError, OccupancyError)


def test_numerical_error_keeps_chain_and_iteration_when_pickled():
    err = NumericalInstabilityError("non-finite occupancy linear predictor", chain=2, iteration=37)
    restored = pickle.loads(pickle.dumps(err))
    assert restored.chain == 2 and restored.iteration == 37
    assert "chain 2, iteration 37" in str(restored)


def test_neighbor_count_must_fit_smallest_training_fold():
    # 20 sites in 3 folds hold out at most 7, leaving 13 to fit
    config = SamplerConfig(k_fold=3, n_neighbors=12)
    config.validate(n_sites=20, spatial=True)
    config.validate(n_sites=20)
    with pytest.raises(NeighborCountError):
        SamplerConfig(k_fold=3, n_neighbors=13).validate(n_sites=20, spatial=True)
    with pytest.raises(NeighborCountError):
        SamplerConfig(k_fold=2, n_neighbors=10).validate(n_sites=20, spatial=True)
