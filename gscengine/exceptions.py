"""Custom exception classes for the gscengine library."""

from typing import Any, Optional


class GSCError(Exception):
    """Base class for all custom exceptions in the gscengine library."""
    pass

class GSCConfigError(GSCError):
    """Exception raised for errors in configuration."""
    pass

class GSCDataError(GSCError):
    """Exception raised for errors related to input data."""
    pass

class GSCEstimationError(GSCError):
    """Exception raised for errors during the estimation process."""
    pass


class DataFormatError(GSCDataError):
    """Malformed or unbalanced panel. `key` is the first offending (unit, time) key, if any."""

    def __init__(self, message: str, key: Optional[Any] = None) -> None:
        super().__init__(message)
        self.key = key

class InvalidTreatmentPatternError(GSCDataError):
    """A unit's treatment status reverts from treated to untreated."""

    def __init__(self, message: str, unit: Any = None, time: Any = None) -> None:
        super().__init__(message)
        self.unit = unit
        self.time = time

class InsufficientDataError(GSCDataError):
    """Too few pre-treatment periods or control units for the requested factor range."""
    pass


class SingularMatrixError(GSCEstimationError):
    """A least-squares sub-step of the factor model fit has a rank-deficient design."""

    def __init__(self, message: str, step: Optional[str] = None, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.step = step
        self.index = index

class ConvergenceError(GSCEstimationError):
    """The alternating least squares fit did not converge within its iteration budget."""

    def __init__(self, message: str, n_iter: int, ssr: float) -> None:
        super().__init__(message)
        self.n_iter = n_iter
        self.ssr = ssr

class ReplicateTimeoutError(ConvergenceError):
    """A fit exceeded its wall-clock deadline."""
    pass

class InsufficientReplicatesError(GSCEstimationError):
    """Too few bootstrap replicates succeeded to report intervals."""

    def __init__(self, message: str, n_successful: int, n_failed: int, required: int) -> None:
        super().__init__(message)
        self.n_successful = n_successful
        self.n_failed = n_failed
        self.required = required

class EstimationCancelledError(GSCEstimationError):
    """The estimation was cancelled before the primary fit completed."""
    pass
