"""
DRESS Modeling Toolkit

Supervised learning and model evaluation over clinical research subjects held
as nested records: a uniform fit / predict / performance / export contract for
regression, tree, ensemble, nearest-neighbour and neural models, with
cross-validation, stepwise selection, permutation importance and
hyperparameter tuning that work identically on any of them.
"""

__version__ = "1.0.0"

from .models import (
    Model,
    get_model_class,
    Linear,
    Logistic,
    Polynomial,
    KNN,
    DecisionTree,
    RandomForest,
    GradientBoosting,
    MultilayerPerceptron,
)
from .pipeline import (
    cross_validate,
    backward,
    forward,
    eliminate,
    permutation_importance,
    tune,
)
from .utils import RuntimeConfig, FeatureSpec, ModelingError

__all__ = [
    'Model',
    'get_model_class',
    'Linear',
    'Logistic',
    'Polynomial',
    'KNN',
    'DecisionTree',
    'RandomForest',
    'GradientBoosting',
    'MultilayerPerceptron',
    'cross_validate',
    'backward',
    'forward',
    'eliminate',
    'permutation_importance',
    'tune',
    'RuntimeConfig',
    'FeatureSpec',
    'ModelingError',
]
