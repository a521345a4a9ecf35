"""
Common contract for every predictive model.

A model is built by the ``fit`` classmethod, is never mutated afterwards and
can be flattened with ``export`` into a JSON-compatible snapshot that
``Model.from_export`` turns back into a model with identical predictions.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

import numpy as np

from dress.utils.accessor import FeatureSpec, categoric, infer_features, numeric, resolve, truthy
from dress.utils.config import RuntimeConfig
from dress.utils.errors import InsufficientDataError, InvalidConfigurationError
from dress.utils.model_utils import ModelEvaluator, Performance

logger = logging.getLogger(__name__)

Target = Union[str, Tuple[str, ...]]

MODEL_REGISTRY: Dict[str, Type["Model"]] = {}


def register_model(cls: Type["Model"]) -> Type["Model"]:
    """Class decorator adding a model variant to the registry under its ``kind``."""
    MODEL_REGISTRY[cls.kind] = cls
    return cls


def get_model_class(kind: str) -> Type["Model"]:
    try:
        return MODEL_REGISTRY[kind]
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown model kind '{kind}'. Available: {sorted(MODEL_REGISTRY)}"
        ) from None


def merge_hyperparameters(defaults: Dict[str, Any], given: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overlay ``given`` on ``defaults``; unknown names are rejected, values cast to the default's type."""
    params = dict(defaults)
    for key, value in (given or {}).items():
        if key not in defaults:
            raise InvalidConfigurationError(
                f"Unknown hyperparameter '{key}'. Expected one of {sorted(defaults)}"
            )
        default = defaults[key]
        if value is None or default is None:
            params[key] = value
            continue
        try:
            if isinstance(default, bool):
                params[key] = bool(value)
            elif isinstance(default, int):
                params[key] = int(value)
            elif isinstance(default, float):
                params[key] = float(value)
            elif isinstance(default, (list, tuple)):
                params[key] = list(value)
            else:
                params[key] = type(default)(value)
        except (TypeError, ValueError) as e:
            raise InvalidConfigurationError(f"Invalid value for hyperparameter '{key}': {value!r}") from e
    return params


def require(condition: bool, message: str):
    if not condition:
        raise InvalidConfigurationError(message)


def to_jsonable(value: Any) -> Any:
    """Convert numpy containers and scalars into plain Python values."""
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


class Model(ABC):
    """Polymorphic predictive model over nested subjects."""

    kind: str = ""
    # Supported values of ``classification`` and the default one
    tasks: Tuple[bool, ...] = (False, True)
    default_classification: bool = False
    # Single-path targets are read as an event flag (logistic regression)
    event_target: bool = False
    # Only numerical/boolean features are accepted
    numeric_only: bool = False

    def __init__(self,
                 target: Target,
                 features: Sequence[FeatureSpec],
                 classification: bool,
                 classes: Optional[Sequence[Any]],
                 hyperparameters: Dict[str, Any],
                 seed: Optional[int]):
        self.target = target
        self.features = tuple(features)
        self.classification = classification
        self.classes = tuple(classes) if classes is not None else None
        self.hyperparameters = dict(hyperparameters)
        self.seed = seed

    # ---------- Construction ----------
    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        """Default hyperparameters for the task."""
        return {}

    @classmethod
    def minimum_subjects(cls, n_features: int) -> int:
        """Smallest number of usable subjects accepted by ``fit``."""
        return 2

    @classmethod
    def fit(cls,
            subjects: Iterable[Any],
            target: Union[str, Sequence[str]],
            features: Union[str, Sequence[Union[str, FeatureSpec]]],
            classification: Optional[bool] = None,
            hyperparameters: Optional[Dict[str, Any]] = None,
            config: Optional[RuntimeConfig] = None) -> "Model":
        """
        Train a model on ``subjects``.

        Args:
            subjects: Nested records
            target: Outcome path, or several paths whose conjunction is the event
            features: Feature paths (or prebuilt specs)
            classification: Task; ``None`` uses the variant's default
            hyperparameters: Overrides of ``defaults``
            config: Seed, significance and scheduler

        Returns:
            Fitted model
        """
        config = (config or RuntimeConfig()).resolved()
        classification = cls.default_classification if classification is None else bool(classification)
        require(classification in cls.tasks,
                f"{cls.__name__} does not support {'classification' if classification else 'regression'}")

        subjects = list(subjects)
        if isinstance(features, (str, FeatureSpec)):
            features = [features]
        if not features:
            raise InsufficientDataError("At least one feature is required", required=1, available=0)
        if not isinstance(target, str):
            target = tuple(target)
            require(classification and len(target) > 0, "Multiple target paths are only valid for classification")

        specs = infer_features(subjects, features)
        if cls.numeric_only:
            categorical = [spec.path for spec in specs if spec.categorical]
            require(not categorical, f"{cls.__name__} needs numerical features; categorical: {categorical}")

        params = merge_hyperparameters(cls.defaults(classification, len(specs)), hyperparameters)
        model = cls(target, specs, classification, None, params, config.seed)
        outcomes = [model.outcome(subject) for subject in subjects]
        if classification:
            model.classes = model._discover_classes(outcomes)

        model._train(subjects, outcomes, config)
        logger.info(f"Fitted {model!r} (seed={config.seed})")
        return model

    def _discover_classes(self, outcomes: List[Any]) -> Tuple[Any, ...]:
        if self.event:
            return (0, 1)
        labels = {outcome for outcome in outcomes if outcome is not None}
        return tuple(sorted(labels, key=lambda label: (isinstance(label, str), label)))

    @abstractmethod
    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        """Learn parameters from subjects and their resolved outcomes."""

    def _check_count(self, available: int, required: Optional[int] = None):
        required = required if required is not None else self.minimum_subjects(len(self.features))
        if available < required:
            raise InsufficientDataError(
                f"{type(self).__name__} needs at least {required} usable subjects, got {available}",
                required=required, available=available,
            )

    # ---------- Reading subjects ----------
    @property
    def event(self) -> bool:
        return self.classification and (not isinstance(self.target, str) or self.event_target)

    @property
    def target_paths(self) -> Tuple[str, ...]:
        return (self.target,) if isinstance(self.target, str) else tuple(self.target)

    def outcome(self, subject: Any) -> Any:
        """Resolved outcome of a subject, ``None`` when missing."""
        paths = self.target_paths
        if not self.classification:
            return numeric(resolve(subject, paths[0]))
        if self.event:
            flags = [truthy(resolve(subject, path)) for path in paths]
            if any(flag is None for flag in flags):
                return None
            return int(all(flags))
        value = resolve(subject, paths[0])
        # Integer and boolean labels stay numeric so 0/1 outcomes keep 0/1 classes
        if isinstance(value, (bool, int, np.integer)):
            return int(value)
        return categoric(value)

    def row(self, subject: Any) -> Tuple[Any, ...]:
        return tuple(spec.read(subject) for spec in self.features)

    def numeric_matrix(self, subjects: Sequence[Any]) -> np.ndarray:
        """Feature matrix with NaN marking missing values."""
        rows = [[np.nan if v is None else v for v in self.row(subject)] for subject in subjects]
        return np.asarray(rows, dtype=float).reshape(len(rows), len(self.features))

    # ---------- Queries ----------
    @abstractmethod
    def _estimate_row(self, row: Tuple[Any, ...]) -> Any:
        """Regression value, or class-probability array aligned with ``classes``; ``None`` if not computable."""

    def _label(self, probabilities: np.ndarray) -> Any:
        return self.classes[int(np.argmax(probabilities))]

    def estimate(self, subject: Any) -> Any:
        """Probability per class (classification) or the predicted value (regression)."""
        value = self._estimate_row(self.row(subject))
        if value is None:
            return None
        if not self.classification:
            return float(value)
        return {cls: float(p) for cls, p in zip(self.classes, value)}

    def predict(self, subject: Any) -> Any:
        value = self._estimate_row(self.row(subject))
        if value is None:
            return None
        return self._label(value) if self.classification else float(value)

    def performance(self, subjects: Iterable[Any]) -> Performance:
        """Held-out metrics; subjects with a missing truth or prediction are left out."""
        truths, predictions, scores = [], [], []
        for subject in subjects:
            truth = self.outcome(subject)
            if truth is None:
                continue
            value = self._estimate_row(self.row(subject))
            if value is None:
                continue
            truths.append(truth)
            if self.classification:
                predictions.append(self._label(value))
                scores.append(value)
            else:
                predictions.append(float(value))

        evaluator = ModelEvaluator()
        if self.classification:
            y_score = np.vstack(scores) if scores else None
            return evaluator.calculate_metrics(truths, predictions, y_score, self.classes)
        return evaluator.calculate_regression_metrics(truths, predictions, len(self.features))

    def validate(self, subjects: Iterable[Any]) -> Performance:
        return self.performance(subjects)

    def importance(self, subjects: Sequence[Any], metric: Optional[str] = None, repeats: int = 1,
                   config: Optional[RuntimeConfig] = None):
        """Permutation importance of each feature on ``subjects``."""
        from dress.pipeline.importance import permutation_importance
        return permutation_importance(self, subjects, metric=metric, repeats=repeats, config=config)

    @property
    def feature_paths(self) -> List[str]:
        return [spec.path for spec in self.features]

    # ---------- Snapshot ----------
    @abstractmethod
    def _export_parameters(self) -> Dict[str, Any]:
        """Learned parameters as plain JSON-compatible values."""

    @abstractmethod
    def _load_parameters(self, parameters: Dict[str, Any]):
        """Inverse of ``_export_parameters``."""

    def export(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "target": self.target if isinstance(self.target, str) else list(self.target),
            "features": [spec.to_dict() for spec in self.features],
            "classification": self.classification,
            "classes": list(self.classes) if self.classes is not None else None,
            "hyperparameters": to_jsonable(self.hyperparameters),
            "seed": self.seed,
            "parameters": to_jsonable(self._export_parameters()),
        }

    @staticmethod
    def from_export(blob: Dict[str, Any]) -> "Model":
        """Rebuild any registered model from its ``export()`` snapshot."""
        cls = get_model_class(blob["kind"])
        target = blob["target"] if isinstance(blob["target"], str) else tuple(blob["target"])
        model = cls(
            target,
            [FeatureSpec.from_dict(f) for f in blob["features"]],
            bool(blob["classification"]),
            blob.get("classes"),
            blob.get("hyperparameters", {}),
            blob.get("seed"),
        )
        model._load_parameters(blob["parameters"])
        return model

    def __repr__(self) -> str:
        target = " & ".join(self.target_paths)
        return f"{type(self).__name__}[{target} = {' + '.join(self.feature_paths)}]"
