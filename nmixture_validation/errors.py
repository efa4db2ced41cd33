"""Error types raised by the simulator, diagnostics and replication harness"""


class NMixtureError(Exception):
    """Base class for all errors raised by this package"""


class ConfigurationError(NMixtureError, ValueError):
    """A coefficient vector, dimension or setting violates a hard constraint.

    Fatal: never retried, and aborts a harness run.
    """


class InsufficientDataError(NMixtureError, ValueError):
    """More sites or visits were requested than the covariate tables hold"""


class InsufficientChainsError(NMixtureError):
    """Fewer than two chains were given to the diagnostics engine"""


class ReplicateFailure(NMixtureError):
    """A single replicate could not be fitted or diagnosed.

    The harness records it and moves on to the next replicate.
    """

    def __init__(self, sim, message):
        super().__init__(f"replicate {sim}: {message}")
        self.sim = sim
        self.message = message
