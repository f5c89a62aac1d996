from .assessment import (
    in_sample_deviance, k_fold_cv, posterior_predictive_check, posterior_summary, rhat, to_inference_data, waic,
)
from .config import Inits, Priors, SamplerConfig
from .core import FitResult, fit_ms_occupancy, fit_occupancy, predict, predict_detection
from .data import Covariates, prepare_data
from .errors import (
    InvalidConfigurationError, InvalidInputError, NeighborCountError, NumericalInstabilityError,
    OccupancyError, SamplingCancelledError,
)
from .kernels import effective_range
from .neighbors import build_neighbor_index

__all__ = [
    "fit_occupancy",
    "fit_ms_occupancy",
    "predict",
    "predict_detection",
    "FitResult",
    "SamplerConfig",
    "Priors",
    "Inits",
    "Covariates",
    "prepare_data",
    "waic",
    "in_sample_deviance",
    "posterior_predictive_check",
    "k_fold_cv",
    "rhat",
    "posterior_summary",
    "to_inference_data",
    "effective_range",
    "build_neighbor_index",
    "OccupancyError",
    "InvalidInputError",
    "InvalidConfigurationError",
    "NeighborCountError",
    "NumericalInstabilityError",
    "SamplingCancelledError",
]
