"""Exception hierarchy of the optimizer."""


class NLCGError(RuntimeError):
    """Base class of all optimizer errors."""


class DescentError(NLCGError):
    """The line search found no step with sufficient decrease.

    Recoverable: the driver stops early and returns the last summary.
    """


class StepError(NLCGError):
    """The quadratic line-search step was rejected; backtracking takes over.

    ``trial_accepted`` records whether the trial step itself passed the
    sufficient-decrease test.
    """

    def __init__(self, message: str, trial_accepted: bool = False):
        super().__init__(message)
        self.trial_accepted = trial_accepted


class InvariantViolation(NLCGError):
    """A descent invariant of the algorithm is broken; the run is aborted."""


class ConfigurationError(NLCGError, ValueError):
    """Requested options or execution placement are not available."""
