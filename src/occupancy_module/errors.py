# ==============================================================================
# Errors raised before any chain state exists, and from inside a chain
# ==============================================================================

class OccupancyError(Exception):
    """Base class for every error raised by occupancy_module."""


class InvalidInputError(OccupancyError, ValueError):
    """Malformed observation tensor, covariates or coordinates."""


class InvalidConfigurationError(OccupancyError, ValueError):
    """Sampler settings that cannot produce a valid run."""


class NeighborCountError(InvalidConfigurationError, InvalidInputError):
    """The requested neighbor count is not smaller than the number of sites."""


class NumericalInstabilityError(OccupancyError, ArithmeticError):
    """
    Non-finite linear predictor, singular conjugate update or degenerate
    Polya-Gamma draw.

    :param chain: Index of the chain that failed (set by the chain runner)
    :param iteration: 1-based iteration at which the failure happened
    :param completed: Samples of the chains that did finish, attached by the
        orchestrator when re-raising
    """

    def __init__(self, message, chain=None, iteration=None):
        super().__init__(message)
        self.chain = chain
        self.iteration = iteration
        self.completed = []

    def __str__(self):
        msg = super().__str__()
        if self.chain is not None:
            msg = f"chain {self.chain}, iteration {self.iteration}: {msg}"
        return msg

    def __reduce__(self):
        # keep chain/iteration when the error crosses a worker process boundary
        return (self.__class__, (self.args[0], self.chain, self.iteration))


class SamplingCancelledError(OccupancyError):
    """A chain was stopped between iterations; its partial draws are dropped."""

    def __init__(self, chain=None, iteration=None):
        super().__init__(f"chain {chain} cancelled after iteration {iteration}")
        self.chain = chain
        self.iteration = iteration

    def __reduce__(self):
        return (self.__class__, (self.chain, self.iteration))
