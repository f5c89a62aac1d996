from dataclasses import dataclass

import numpy as np
from scipy.spatial.distance import cdist
import logging

from occupancy_module.errors import InvalidConfigurationError, InvalidInputError, NeighborCountError

logger = logging.getLogger(__name__)

# ==============================================================================
# Neighbor index
# ==============================================================================

@dataclass(frozen=True)
class NeighborIndex:
    """
    Immutable neighbor structure, indexed by the original site numbers.

    neighbors[i, :counts[i]] are the neighbor sites of site i (padding is -1).
    users[user_ptr[j]:user_ptr[j + 1]] are the sites that have j as a neighbor,
    and user_pos holds the position of j in each of those neighbor lists.
    """

    coords: np.ndarray
    order: np.ndarray
    neighbors: np.ndarray
    counts: np.ndarray
    dist_to_neighbors: np.ndarray
    dist_among_neighbors: np.ndarray
    user_ptr: np.ndarray
    users: np.ndarray
    user_pos: np.ndarray

    @property
    def n_sites(self) -> int:
        return self.neighbors.shape[0]

    @property
    def n_neighbors(self) -> int:
        return self.neighbors.shape[1]

    def neighbors_of(self, i):
        return self.neighbors[i, :self.counts[i]]

    def users_of(self, j):
        sl = slice(self.user_ptr[j], self.user_ptr[j + 1])
        return self.users[sl], self.user_pos[sl]


def check_coords(coords):
    coords = np.asarray(coords, dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise InvalidInputError(f"coordinates must be an (n_sites, 2) array, got shape {coords.shape}")
    if not np.all(np.isfinite(coords)):
        raise InvalidInputError("coordinates contain non-finite values")
    return coords


def build_neighbor_index(coords, n_neighbors, order_by=0):
    """
    Build the ordered M-nearest-previous-neighbor index.

    :param coords: (N, 2) projected site coordinates
    :param n_neighbors: M, the maximum number of neighbors per site
    :param order_by: Coordinate axis used to order the sites
    :return: NeighborIndex
    """
    coords = check_coords(coords)
    n_sites = coords.shape[0]
    if n_neighbors < 1:
        raise InvalidConfigurationError(f"n_neighbors must be positive, got {n_neighbors}")
    if n_neighbors >= n_sites:
        raise NeighborCountError(f"n_neighbors ({n_neighbors}) must be smaller than the number of sites ({n_sites})")
    if order_by not in (0, 1):
        raise InvalidConfigurationError(f"order_by must be 0 or 1, got {order_by}")

    # lexsort sorts by the last key first: primary order_by axis, ties by the other axis
    order = np.lexsort((coords[:, 1 - order_by], coords[:, order_by]))
    M = n_neighbors

    neighbors = np.full((n_sites, M), -1, dtype=np.int64)
    counts = np.zeros(n_sites, dtype=np.int64)
    dist_to = np.zeros((n_sites, M))
    dist_among = np.zeros((n_sites, M, M))

    for r in range(1, n_sites):
        s = order[r]
        prev = order[:r]
        d = cdist(coords[s:s + 1], coords[prev])[0]
        # stable sort keeps earlier-ordered sites first on distance ties
        nearest = np.argsort(d, kind='stable')[:min(M, r)]
        m = len(nearest)
        nn = prev[nearest]
        neighbors[s, :m] = nn
        counts[s] = m
        dist_to[s, :m] = d[nearest]
        dist_among[s, :m, :m] = cdist(coords[nn], coords[nn])

    # Reverse index: which sites use j as a neighbor, and at which position
    users_per_site = [[] for _ in range(n_sites)]
    for i in range(n_sites):
        for pos in range(counts[i]):
            users_per_site[neighbors[i, pos]].append((i, pos))
    user_ptr = np.zeros(n_sites + 1, dtype=np.int64)
    user_ptr[1:] = np.cumsum([len(u) for u in users_per_site])
    flat = [pair for u in users_per_site for pair in u]
    users = np.array([pair[0] for pair in flat], dtype=np.int64)
    user_pos = np.array([pair[1] for pair in flat], dtype=np.int64)

    for arr in (coords, order, neighbors, counts, dist_to, dist_among, user_ptr, users, user_pos):
        arr.setflags(write=False)

    logger.debug(f"Built neighbor index for {n_sites} sites with M={M} (ordered by axis {order_by})")
    return NeighborIndex(
        coords=coords, order=order, neighbors=neighbors, counts=counts,
        dist_to_neighbors=dist_to, dist_among_neighbors=dist_among,
        user_ptr=user_ptr, users=users, user_pos=user_pos,
    )


def nearest_fitted_neighbors(coords_fit, coords_new, n_neighbors):
    """
    For each new location, the n_neighbors nearest fitted sites.

    :return: (indices (n_new, M), distances to them (n_new, M), distances among them (n_new, M, M))
    """
    coords_fit = check_coords(coords_fit)
    coords_new = check_coords(coords_new)
    M = min(n_neighbors, coords_fit.shape[0])
    d = cdist(coords_new, coords_fit)
    idx = np.argsort(d, axis=1, kind='stable')[:, :M]
    dist_to = np.take_along_axis(d, idx, axis=1)
    dist_among = np.stack([cdist(coords_fit[row], coords_fit[row]) for row in idx])
    return idx, dist_to, dist_among
