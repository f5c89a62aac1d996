from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from occupancy_module.errors import InvalidConfigurationError, NeighborCountError
from occupancy_module.kernels import KERNELS

# ==============================================================================
# Sampler settings
# ==============================================================================

@dataclass
class SamplerConfig:
    """Settings for one call to fit_occupancy or fit_ms_occupancy."""

    # Batched MCMC
    n_batch: int = 400
    batch_length: int = 25
    n_burn: int = 5000
    n_thin: int = 5
    n_chains: int = 1

    # Spatial structure (only used when coordinates are given)
    n_neighbors: int = 15
    cov_model: Optional[str] = "exponential"
    order_by: int = 0

    # Multi-species factor count (0 = no latent factors)
    n_factors: int = 0

    # Cross-validation
    k_fold: Optional[int] = None

    # Adaptive Metropolis
    accept_rate: float = 0.43
    max_delta: float = 0.01
    tuning: dict = field(default_factory=dict)

    # Chain dispatch and reproducibility
    seed: Optional[int] = None
    n_workers: int = 1
    init_jitter: float = 0.5
    verbose: bool = False

    @property
    def n_iter(self) -> int:
        return self.n_batch * self.batch_length

    @property
    def n_samples(self) -> int:
        """Retained draws per chain."""
        return (self.n_iter - self.n_burn) // self.n_thin

    def validate(self, n_sites: Optional[int] = None, spatial: bool = False) -> "SamplerConfig":
        """
        Raise InvalidConfigurationError for settings that cannot produce a run.

        :param n_sites: Number of sites, when known
        :param spatial: Whether the model builds a neighbor index over the sites
        """
        if self.n_batch < 1 or self.batch_length < 1:
            raise InvalidConfigurationError(
                f"n_batch and batch_length must be positive, got {self.n_batch} and {self.batch_length}"
            )
        if self.n_burn < 0:
            raise InvalidConfigurationError(f"n_burn must be non-negative, got {self.n_burn}")
        if self.n_thin < 1:
            raise InvalidConfigurationError(f"n_thin must be positive, got {self.n_thin}")
        if self.n_samples <= 0:
            raise InvalidConfigurationError(
                f"(n_batch * batch_length - n_burn) / n_thin = "
                f"({self.n_iter} - {self.n_burn}) / {self.n_thin} leaves no retained draws"
            )
        if self.n_chains < 1:
            raise InvalidConfigurationError(f"n_chains must be positive, got {self.n_chains}")
        if self.n_workers < 1:
            raise InvalidConfigurationError(f"n_workers must be positive, got {self.n_workers}")
        if self.n_neighbors < 1:
            raise InvalidConfigurationError(f"n_neighbors must be positive, got {self.n_neighbors}")
        if self.n_factors < 0:
            raise InvalidConfigurationError(f"n_factors must be non-negative, got {self.n_factors}")
        if self.cov_model is not None and self.cov_model not in KERNELS:
            raise InvalidConfigurationError(
                f"unknown cov_model '{self.cov_model}', expected one of {sorted(KERNELS)}"
            )
        if not 0.0 < self.accept_rate < 1.0:
            raise InvalidConfigurationError(f"accept_rate must be in (0, 1), got {self.accept_rate}")
        if self.max_delta <= 0:
            raise InvalidConfigurationError(f"max_delta must be positive, got {self.max_delta}")
        if self.k_fold is not None:
            if self.k_fold < 2:
                raise InvalidConfigurationError(f"k_fold must be at least 2, got {self.k_fold}")
            if n_sites is not None and self.k_fold >= n_sites:
                raise InvalidConfigurationError(
                    f"k_fold ({self.k_fold}) must be smaller than the number of sites ({n_sites})"
                )
            if n_sites is not None and spatial:
                # KFold holds out at most ceil(J / k) sites per fold
                min_train = n_sites - int(np.ceil(n_sites / self.k_fold))
                if self.n_neighbors >= min_train:
                    raise NeighborCountError(
                        f"n_neighbors ({self.n_neighbors}) must be smaller than the smallest "
                        f"training fold ({min_train} of {n_sites} sites with k_fold={self.k_fold})"
                    )
        for name, scale in self.tuning.items():
            if not scale > 0:
                raise InvalidConfigurationError(f"initial tuning for {name} must be positive, got {scale}")
        return self


@dataclass
class Priors:
    """
    Prior hyperparameters.

    Normal priors are (mean, variance), Inverse-Gamma priors are (shape, scale)
    and Uniform priors are (lower, upper). For multi-species models the
    coefficient priors apply to the community means.
    """

    beta_normal: tuple = (0.0, 2.72)
    alpha_normal: tuple = (0.0, 2.72)
    tau_sq_beta_ig: tuple = (0.1, 0.1)
    tau_sq_alpha_ig: tuple = (0.1, 0.1)
    sigma_sq_psi_ig: tuple = (0.1, 0.1)
    sigma_sq_p_ig: tuple = (0.1, 0.1)
    sigma_sq_ig: tuple = (2.0, 1.0)
    phi_unif: Optional[tuple] = None
    nu_unif: tuple = (0.1, 2.0)

    def normal(self, name: str, p: int):
        """Expand a (mean, variance) prior to a mean vector and precision matrix of size p."""
        mean, var = getattr(self, name)
        mean = np.broadcast_to(np.asarray(mean, dtype=np.float64), (p,)).copy()
        var = np.broadcast_to(np.asarray(var, dtype=np.float64), (p,)).copy()
        if np.any(var <= 0):
            raise InvalidConfigurationError(f"{name} variances must be positive")
        return mean, np.diag(1.0 / var)

    def validate(self) -> "Priors":
        for name in ("tau_sq_beta_ig", "tau_sq_alpha_ig", "sigma_sq_psi_ig", "sigma_sq_p_ig", "sigma_sq_ig"):
            a, b = getattr(self, name)
            if a <= 0 or b <= 0:
                raise InvalidConfigurationError(f"{name} shape and scale must be positive, got {(a, b)}")
        for name in ("phi_unif", "nu_unif"):
            bounds = getattr(self, name)
            if bounds is not None and not 0 < bounds[0] < bounds[1]:
                raise InvalidConfigurationError(f"{name} must satisfy 0 < lower < upper, got {bounds}")
        return self


@dataclass
class Inits:
    """Optional starting values, shared by all chains. None means the default is used."""

    beta: Optional[np.ndarray] = None
    alpha: Optional[np.ndarray] = None
    z: Optional[np.ndarray] = None
    sigma_sq_psi: Optional[np.ndarray] = None
    sigma_sq_p: Optional[np.ndarray] = None
    sigma_sq: Optional[float] = None
    phi: Optional[float] = None
    nu: Optional[float] = None
    w: Optional[np.ndarray] = None
    beta_comm: Optional[np.ndarray] = None
    alpha_comm: Optional[np.ndarray] = None
    tau_sq_beta: Optional[np.ndarray] = None
    tau_sq_alpha: Optional[np.ndarray] = None
    lambda_: Optional[np.ndarray] = None
