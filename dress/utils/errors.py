"""
Error taxonomy shared by every model and evaluation routine.
"""

from typing import Optional


class ModelingError(Exception):
    """Base class for failures raised while fitting or evaluating models."""


class InsufficientDataError(ModelingError):
    """Too few usable subjects (or features) for the requested fit."""

    def __init__(self, message: str, required: Optional[int] = None, available: Optional[int] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class MissingFeatureError(ModelingError):
    """A feature path never resolves to a usable value across the sample."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(message or f"Feature '{path}' does not resolve for any subject")
        self.path = path


class DegenerateFitError(ModelingError):
    """The data admits no well-defined fit (zero variance, empty fold, single class...)."""


class InvalidConfigurationError(ModelingError, ValueError):
    """Bad hyperparameters, ranges or fold counts."""
