"""Custom exception classes for the policysynth library."""


class PolicySynthError(Exception):
    """Base class for all custom exceptions in the policysynth library."""
    pass


class PolicySynthConfigError(PolicySynthError):
    """Exception raised for errors in configuration."""
    pass


class PolicySynthDataError(PolicySynthError):
    """Exception raised for errors related to input data."""
    pass


class PolicySynthEstimationError(PolicySynthError):
    """Exception raised for errors during the estimation process."""
    pass


class MalformedPanelError(PolicySynthDataError):
    """The panel cannot be pivoted or contains no usable observations.

    Fatal: everything downstream of a corrupt panel is meaningless.
    """
    pass


class InfeasibleWeightsError(PolicySynthEstimationError):
    """The donor-weight program has no usable solution.

    Recoverable inside placebo loops, where the offending unit or cutoff is
    recorded as skipped.
    """
    pass


class UndefinedRescaleError(PolicySynthEstimationError):
    """The pre-period mean of a synthetic series is zero or undefined."""
    pass
