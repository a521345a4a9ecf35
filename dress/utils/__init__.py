"""Utility modules: feature access, configuration, errors, metrics and tracking."""

from .accessor import (
    FeatureKind,
    FeatureSpec,
    resolve,
    numeric,
    categoric,
    replace,
    infer_features,
)
from .config import RuntimeConfig, load_config
from .errors import (
    ModelingError,
    InsufficientDataError,
    MissingFeatureError,
    DegenerateFitError,
    InvalidConfigurationError,
)
from .experiment_tracking import ExperimentTracker, setup_experiment_tracking
from .model_utils import (
    Performance,
    ModelEvaluator,
    ModelComparator,
    calculate_statistical_significance
)
from .parallel import run_tasks

__all__ = [
    'FeatureKind',
    'FeatureSpec',
    'resolve',
    'numeric',
    'categoric',
    'replace',
    'infer_features',
    'RuntimeConfig',
    'load_config',
    'ModelingError',
    'InsufficientDataError',
    'MissingFeatureError',
    'DegenerateFitError',
    'InvalidConfigurationError',
    'ExperimentTracker',
    'setup_experiment_tracking',
    'Performance',
    'ModelEvaluator',
    'ModelComparator',
    'calculate_statistical_significance',
    'run_tasks',
]
