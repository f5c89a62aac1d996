from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import logging

from occupancy_module.errors import InvalidInputError
from occupancy_module.neighbors import check_coords
from occupancy_module.utils import make_occupancy_arrays

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"

# ==============================================================================
# Covariates
# ==============================================================================

@dataclass
class Covariates:
    """
    Named covariates, validated at construction.

    occ_site: name -> (J,) vector
    occ_site_season: name -> (J, T) matrix
    det_site: name -> (J,) vector
    det_obs: name -> array shaped like one species' observation tensor
    occ_random: name -> (J,) or (J, T) random-intercept levels
    det_random: name -> (J,) or observation-shaped random-intercept levels
    """

    occ_site: dict = field(default_factory=dict)
    occ_site_season: dict = field(default_factory=dict)
    det_site: dict = field(default_factory=dict)
    det_obs: dict = field(default_factory=dict)
    occ_random: dict = field(default_factory=dict)
    det_random: dict = field(default_factory=dict)

    def __post_init__(self):
        for kind, ndim in (("occ_site", 1), ("occ_site_season", 2), ("det_site", 1)):
            group = getattr(self, kind)
            for name, arr in group.items():
                arr = np.asarray(arr, dtype=np.float64)
                if arr.ndim != ndim:
                    raise InvalidInputError(f"{kind} covariate '{name}' must be {ndim}-D, got shape {arr.shape}")
                group[name] = arr
        for name, arr in self.det_obs.items():
            arr = np.asarray(arr, dtype=np.float64)
            if arr.ndim not in (2, 3):
                raise InvalidInputError(f"det_obs covariate '{name}' must be 2-D or 3-D, got shape {arr.shape}")
            self.det_obs[name] = arr
        for group in (self.occ_random, self.det_random):
            for name, arr in group.items():
                group[name] = np.asarray(arr)

        occ = list(self.occ_site) + list(self.occ_site_season)
        det = list(self.det_site) + list(self.det_obs)
        for label, names in (("occupancy", occ + list(self.occ_random)), ("detection", det + list(self.det_random))):
            if len(set(names)) != len(names) or INTERCEPT in names:
                raise InvalidInputError(f"duplicate or reserved {label} covariate names: {names}")

    @property
    def occ_names(self):
        return [INTERCEPT] + list(self.occ_site) + list(self.occ_site_season)

    @property
    def det_names(self):
        return [INTERCEPT] + list(self.det_site) + list(self.det_obs)

    def subset_sites(self, sites):
        """Covariates restricted to the given site indices (first axis of every array)."""
        return Covariates(
            occ_site={k: v[sites] for k, v in self.occ_site.items()},
            occ_site_season={k: v[sites] for k, v in self.occ_site_season.items()},
            det_site={k: v[sites] for k, v in self.det_site.items()},
            det_obs={k: v[sites] for k, v in self.det_obs.items()},
            occ_random={k: v[sites] for k, v in self.occ_random.items()},
            det_random={k: v[sites] for k, v in self.det_random.items()},
        )


def occupancy_design(cov, n_sites, n_seasons):
    """Occupancy design matrix (n_units, p_occ), intercept first, site-major unit order."""
    cols = [np.ones(n_sites * n_seasons)]
    for name, x in cov.occ_site.items():
        if x.shape != (n_sites,):
            raise InvalidInputError(f"occ_site covariate '{name}' has shape {x.shape}, expected ({n_sites},)")
        cols.append(np.repeat(x, n_seasons))
    for name, x in cov.occ_site_season.items():
        if x.shape != (n_sites, n_seasons):
            raise InvalidInputError(
                f"occ_site_season covariate '{name}' has shape {x.shape}, expected ({n_sites}, {n_seasons})"
            )
        cols.append(x.reshape(-1))
    X = np.column_stack(cols)
    if not np.all(np.isfinite(X)):
        raise InvalidInputError("occupancy covariates contain non-finite values")
    return X


def detection_design(cov, layout, obs_shape):
    """Detection design matrix, one row per surveyed cell, intercept first."""
    n_obs = layout['y_obs'].shape[0]
    n_sites = layout['n_sites']
    site_of_obs = layout['site_index'][layout['unit_index']]
    cols = [np.ones(n_obs)]
    for name, x in cov.det_site.items():
        if x.shape != (n_sites,):
            raise InvalidInputError(f"det_site covariate '{name}' has shape {x.shape}, expected ({n_sites},)")
        cols.append(x[site_of_obs])
    for name, x in cov.det_obs.items():
        if x.shape != obs_shape:
            raise InvalidInputError(f"det_obs covariate '{name}' has shape {x.shape}, expected {obs_shape}")
        cols.append(x.reshape(layout['obs_mask'].shape)[layout['obs_mask']])
    X_p = np.column_stack(cols)
    if not np.all(np.isfinite(X_p)):
        raise InvalidInputError("detection covariates contain non-finite values at surveyed cells")
    return X_p


def encode_levels(values, levels):
    """Integer codes of values within levels; values not among the levels get -1."""
    pos = np.searchsorted(levels, values)
    pos = np.clip(pos, 0, len(levels) - 1)
    return np.where(levels[pos] == values, pos, -1)


def _random_effect_values(group, layout, obs_shape, per_obs):
    n_sites, n_seasons = layout['n_sites'], layout['n_seasons']
    out = []
    for name, arr in group.items():
        if arr.shape == (n_sites,):
            unit_vals = np.repeat(arr, n_seasons)
            vals = unit_vals[layout['unit_index']] if per_obs else unit_vals
        elif not per_obs and n_seasons > 1 and arr.shape == (n_sites, n_seasons):
            vals = arr.reshape(-1)
        elif per_obs and arr.shape == obs_shape:
            vals = arr.reshape(layout['obs_mask'].shape)[layout['obs_mask']]
        else:
            raise InvalidInputError(f"random effect '{name}' has unsupported shape {arr.shape}")
        out.append(vals)
    return out


@dataclass
class OccupancyData:
    """Validated arrays the sampler works on. Species axis is always present (size 1 for one species)."""

    y: np.ndarray
    covariates: Covariates
    layout: dict
    y_units: np.ndarray
    y_obs: np.ndarray
    X: np.ndarray
    X_p: np.ndarray
    X_re: np.ndarray
    re_levels: list
    X_p_re: np.ndarray
    p_re_levels: list
    coords: Optional[np.ndarray]
    species: list
    multispecies: bool

    @property
    def n_species(self):
        return self.y_units.shape[0]

    @property
    def n_units(self):
        return self.X.shape[0]

    @property
    def n_obs(self):
        return self.X_p.shape[0]

    @property
    def n_sites(self):
        return self.layout['n_sites']

    @property
    def detected(self):
        """(N, n_units) boolean, True where any replicate is a detection."""
        return np.nansum(self.y_units, axis=2) > 0

    def subset_sites(self, sites, levels_from=None):
        """
        The same data restricted to a set of sites.

        :param levels_from: OccupancyData whose random-effect levels are used to
            encode this subset (levels unseen there are coded -1)
        """
        sites = np.asarray(sites)
        y = self.y[:, sites] if self.multispecies else self.y[sites]
        coords = None if self.coords is None else self.coords[sites]
        return prepare_data(y, self.covariates.subset_sites(sites), coords=coords,
                            multispecies=self.multispecies, species=self.species,
                            levels_from=levels_from)


def prepare_data(y, covariates=None, coords=None, multispecies=False, species=None, levels_from=None):
    """
    Validate an observation tensor with its covariates and build design matrices.

    :param y: (J, K), (J, T, K); or with a leading species axis when multispecies
    :param covariates: Covariates (None means intercept-only)
    :param coords: Optional (J, 2) coordinates
    :return: OccupancyData
    """
    covariates = covariates if covariates is not None else Covariates()
    y = np.asarray(y, dtype=np.float64)
    if multispecies:
        if y.ndim not in (3, 4):
            raise InvalidInputError(f"multi-species observation tensor must be 3-D or 4-D, got shape {y.shape}")
        layers = y
    else:
        layers = y[np.newaxis]

    missing = np.isnan(layers)
    if not np.all(missing == missing[0]):
        raise InvalidInputError("missingness pattern must be identical across species")

    obs_shape = layers.shape[1:]
    layout = make_occupancy_arrays(layers[0])
    for layer in layers[1:]:
        make_occupancy_arrays(layer)
    n_units = layout['obs_mask'].shape[0]
    y_units = layers.reshape(layers.shape[0], n_units, layout['n_reps'])
    y_obs = y_units[:, layout['obs_mask']]

    X = occupancy_design(covariates, layout['n_sites'], layout['n_seasons'])
    X_p = detection_design(covariates, layout, obs_shape)

    occ_vals = _random_effect_values(covariates.occ_random, layout, obs_shape, per_obs=False)
    det_vals = _random_effect_values(covariates.det_random, layout, obs_shape, per_obs=True)
    if levels_from is None:
        re_levels = [np.unique(v) for v in occ_vals]
        p_re_levels = [np.unique(v) for v in det_vals]
    else:
        re_levels, p_re_levels = levels_from.re_levels, levels_from.p_re_levels
    X_re = np.column_stack([encode_levels(v, lv) for v, lv in zip(occ_vals, re_levels)]).astype(np.int64) \
        if occ_vals else np.zeros((n_units, 0), dtype=np.int64)
    X_p_re = np.column_stack([encode_levels(v, lv) for v, lv in zip(det_vals, p_re_levels)]).astype(np.int64) \
        if det_vals else np.zeros((X_p.shape[0], 0), dtype=np.int64)

    if coords is not None:
        coords = check_coords(coords)
        if coords.shape[0] != layout['n_sites']:
            raise InvalidInputError(f"got {coords.shape[0]} coordinates for {layout['n_sites']} sites")
        if np.unique(coords, axis=0).shape[0] != coords.shape[0]:
            raise InvalidInputError("coordinates contain duplicated locations")

    n_species = layers.shape[0]
    species = list(species) if species is not None else [f"sp{i + 1}" for i in range(n_species)]
    if len(species) != n_species:
        raise InvalidInputError(f"got {len(species)} species names for {n_species} species")

    logger.debug(
        f"Prepared data: species={n_species}, sites={layout['n_sites']}, seasons={layout['n_seasons']}, "
        f"replicates={layout['n_reps']}, observed cells={X_p.shape[0]}, p_occ={X.shape[1]}, p_det={X_p.shape[1]}"
    )
    return OccupancyData(
        y=y, covariates=covariates, layout=layout, y_units=y_units, y_obs=y_obs,
        X=X, X_p=X_p, X_re=X_re, re_levels=re_levels, X_p_re=X_p_re, p_re_levels=p_re_levels,
        coords=coords, species=species, multispecies=multispecies,
    )
