from .estimators.gsc import GSC
from .config_models import GSCConfig, GSCResults, PanelData, FactorModel
from .exceptions import (
    GSCError,
    GSCConfigError,
    GSCDataError,
    GSCEstimationError,
    DataFormatError,
    InvalidTreatmentPatternError,
    InsufficientDataError,
    SingularMatrixError,
    ConvergenceError,
    ReplicateTimeoutError,
    InsufficientReplicatesError,
    EstimationCancelledError,
)

# Define __all__ to specify the public API of the gscengine package
__all__ = [
    "GSC",
    "GSCConfig",
    "GSCResults",
    "PanelData",
    "FactorModel",
    "GSCError",
    "GSCConfigError",
    "GSCDataError",
    "GSCEstimationError",
    "DataFormatError",
    "InvalidTreatmentPatternError",
    "InsufficientDataError",
    "SingularMatrixError",
    "ConvergenceError",
    "ReplicateTimeoutError",
    "InsufficientReplicatesError",
    "EstimationCancelledError",
]
