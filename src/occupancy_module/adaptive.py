from dataclasses import dataclass, field

import numpy as np
import logging

from occupancy_module.errors import NumericalInstabilityError
from occupancy_module.utils import logit_bounded, logit_inv_bounded

logger = logging.getLogger(__name__)

# ==============================================================================
# Proposal scale tuning
# ==============================================================================

def tune(scale, acceptance_rate, batch_index, target=0.43, max_delta=0.01):
    """
    Return the proposal scale for the next batch.

    The log scale moves up by min(max_delta, batch_index^-1/2) when the batch
    acceptance rate is above the target and down by the same amount otherwise.

    :param scale: Current proposal standard deviation
    :param acceptance_rate: Fraction of accepted proposals in the finished batch
    :param batch_index: 1-based index of the finished batch
    """
    delta = min(max_delta, 1.0 / np.sqrt(batch_index))
    if acceptance_rate > target:
        return float(np.exp(np.log(scale) + delta))
    return float(np.exp(np.log(scale) - delta))


@dataclass
class AdaptiveParameter:
    """
    A bounded scalar updated by random-walk Metropolis on the logit(a, b) scale.

    :param name: Label used in logs and in the stored acceptance history
    :param value: Current value, strictly inside (lower, upper)
    :param scale: Proposal standard deviation on the transformed scale
    """

    name: str
    value: float
    scale: float
    lower: float
    upper: float
    accepted: int = 0
    batches: int = 0
    acceptance: list = field(default_factory=list)

    def log_jacobian(self, x):
        return np.log(x - self.lower) + np.log(self.upper - x)

    def propose(self, rng):
        z = logit_bounded(self.value, self.lower, self.upper) + self.scale * rng.standard_normal()
        return float(logit_inv_bounded(z, self.lower, self.upper))

    def step(self, log_target, rng):
        """
        One Metropolis update.

        :param log_target: Callable giving the log full conditional at a value
            (up to a constant). A NumericalInstabilityError raised for the
            candidate rejects it.
        :return: True if the candidate was accepted
        """
        candidate = self.propose(rng)
        if not self.lower < candidate < self.upper:
            return False
        try:
            log_ratio = (log_target(candidate) + self.log_jacobian(candidate)
                         - log_target(self.value) - self.log_jacobian(self.value))
        except NumericalInstabilityError:
            logger.debug(f"  - {self.name} proposal {candidate:.4g} is numerically degenerate. Proposal rejected.")
            return False
        if not np.isnan(log_ratio) and np.log(rng.uniform()) < log_ratio:
            self.value = candidate
            self.accepted += 1
            return True
        return False

    def end_batch(self, batch_length, target=0.43, max_delta=0.01):
        """Close the running batch: record its acceptance rate and retune the scale."""
        self.batches += 1
        rate = self.accepted / batch_length
        self.acceptance.append(rate)
        self.scale = tune(self.scale, rate, self.batches, target, max_delta)
        self.accepted = 0
        return rate
