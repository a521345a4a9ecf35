"""Predictive models sharing the fit / predict / performance / export contract."""

from .base import Model, MODEL_REGISTRY, get_model_class, register_model
from .regression import Linear, Logistic, Polynomial, ordinary_least_squares
from .knn import KNN
from .tree import DecisionTree, Leaf, Split, TreeLearner
from .ensemble import RandomForest, GradientBoosting
from .neural import MultilayerPerceptron

__all__ = [
    'Model',
    'MODEL_REGISTRY',
    'get_model_class',
    'register_model',
    'Linear',
    'Logistic',
    'Polynomial',
    'ordinary_least_squares',
    'KNN',
    'DecisionTree',
    'Leaf',
    'Split',
    'TreeLearner',
    'RandomForest',
    'GradientBoosting',
    'MultilayerPerceptron',
]
