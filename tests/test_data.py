import numpy as np
import pytest

from occupancy_module.data import INTERCEPT, Covariates, encode_levels, prepare_data
from occupancy_module.errors import InvalidInputError
from occupancy_module.utils import make_occupancy_arrays


def test_occupancy_arrays_drop_missing_cells():
    y = np.array([[1.0, 0.0, np.nan], [0.0, np.nan, np.nan]])
    layout = make_occupancy_arrays(y)
    assert layout['y_obs'].tolist() == [1.0, 0.0, 0.0]
    assert layout['unit_index'].tolist() == [0, 0, 1]
    assert layout['V_unit'].shape == (3, 2)
    assert layout['n_reps'] == 3


def test_multi_season_units_are_site_major():
    y = np.zeros((3, 2, 4))
    layout = make_occupancy_arrays(y)
    assert layout['site_index'].tolist() == [0, 0, 1, 1, 2, 2]
    assert layout['V_site'].shape == (6, 3)


@pytest.mark.parametrize("y", [np.full((3, 2), 2.0), np.zeros(4), np.full((2, 2), np.nan)])
def test_bad_observation_tensor(y):
    with pytest.raises(InvalidInputError):
        make_occupancy_arrays(y)


def test_design_matrices(single_species):
    data = prepare_data(single_species['y'], single_species['covariates'])
    assert data.X.shape == (50, 2)
    assert data.X_p.shape == (200, 2)
    assert np.all(data.X[:, 0] == 1.0)
    assert data.covariates.occ_names == [INTERCEPT, 'occ1']
    assert data.covariates.det_names == [INTERCEPT, 'det1']
    assert data.n_species == 1 and not data.multispecies


def test_site_season_covariates_and_random_effects():
    rng = np.random.default_rng(0)
    y = rng.binomial(1, 0.4, (6, 2, 3)).astype(float)
    cov = Covariates(
        occ_site_season={'year': np.tile([0.0, 1.0], (6, 1))},
        det_site={'effort': rng.standard_normal(6)},
        occ_random={'region': np.array(['a', 'a', 'b', 'b', 'c', 'c'])},
        det_random={'observer': rng.integers(0, 2, (6, 2, 3))},
    )
    data = prepare_data(y, cov)
    assert data.X[:, 1].tolist() == [0.0, 1.0] * 6
    assert data.X_re[:, 0].tolist() == [0, 0, 0, 0, 1, 1, 1, 1, 2, 2, 2, 2]
    assert data.X_p_re.shape == (36, 1)
    assert [list(lv) for lv in data.re_levels] == [['a', 'b', 'c']]


def test_covariate_shapes_are_checked():
    y = np.zeros((5, 3))
    with pytest.raises(InvalidInputError):
        prepare_data(y, Covariates(occ_site={'x': np.zeros(4)}))
    with pytest.raises(InvalidInputError):
        prepare_data(y, Covariates(det_obs={'x': np.zeros((5, 2))}))
    with pytest.raises(InvalidInputError):
        Covariates(occ_site={'x': np.zeros((5, 2))})
    with pytest.raises(InvalidInputError):
        Covariates(occ_site={INTERCEPT: np.zeros(5)})


def test_missing_covariate_only_matters_at_surveyed_cells():
    y = np.array([[1.0, np.nan], [0.0, 0.0]])
    det = np.array([[0.5, np.nan], [1.0, -1.0]])
    data = prepare_data(y, Covariates(det_obs={'x': det}))
    assert data.X_p[:, 1].tolist() == [0.5, 1.0, -1.0]
    det[1, 1] = np.nan
    with pytest.raises(InvalidInputError):
        prepare_data(y, Covariates(det_obs={'x': det}))


def test_coordinates_are_validated():
    y = np.zeros((3, 2))
    with pytest.raises(InvalidInputError):
        prepare_data(y, coords=np.zeros((2, 2)))
    with pytest.raises(InvalidInputError):
        prepare_data(y, coords=np.array([[0.0, 0.0], [1.0, 1.0], [0.0, 0.0]]))


def test_multispecies_missingness_must_agree(community):
    y = community['y'].copy()
    data = prepare_data(y, community['covariates'], multispecies=True)
    assert data.n_species == 4 and data.species == ['sp1', 'sp2', 'sp3', 'sp4']
    y[0, 0, 0] = np.nan
    with pytest.raises(InvalidInputError):
        prepare_data(y, community['covariates'], multispecies=True)


def test_subset_sites_encodes_against_fitted_levels():
    y = np.zeros((4, 2))
    cov = Covariates(occ_random={'g': np.array([1, 1, 2, 3])})
    data = prepare_data(y, cov)
    train = data.subset_sites([0, 1, 2])
    held = data.subset_sites([3], levels_from=train)
    assert held.X_re.tolist() == [[-1]]
    assert encode_levels(np.array([2, 5]), np.array([1, 2])).tolist() == [1, -1]
