"""Model-agnostic evaluation, selection and tuning procedures."""

from .validation import (
    CrossValidationResult,
    FoldRecord,
    MetricSummary,
    cross_validate,
    partition,
)

from .stepwise import (
    StepRecord,
    StepwiseResult,
    backward,
    eliminate,
    forward,
)

from .importance import FeatureImportance, permutation_importance
from .tuning import TuningResult, parameter_grid, tune

__all__ = [
    'CrossValidationResult',
    'FoldRecord',
    'MetricSummary',
    'cross_validate',
    'partition',
    'StepRecord',
    'StepwiseResult',
    'backward',
    'eliminate',
    'forward',
    'FeatureImportance',
    'permutation_importance',
    'TuningResult',
    'parameter_grid',
    'tune',
]
