"""
Stepwise feature selection driven by any model factory.

Both directions fit one model per candidate per round, so a full run costs
O(features^2) fits. When the criterion itself cross-validates, multiply that
by the number of folds.
"""

import logging
import math
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from dress.models.base import Model
from dress.utils.config import RuntimeConfig
from dress.utils.errors import InvalidConfigurationError, ModelingError
from dress.utils.parallel import run_tasks
from .validation import fit_with

logger = logging.getLogger(__name__)

Criterion = Union[str, Callable[[Model], float]]


@dataclass(frozen=True)
class StepRecord:
    round: int
    action: str
    feature: str
    score: float


@dataclass(frozen=True)
class StepwiseResult:
    features: List[str]
    model: Optional[Model]
    score: float
    history: List[StepRecord] = field(default_factory=list)

    @property
    def rounds(self) -> int:
        return len(self.history)


def _score(model: Model, criterion: Criterion) -> float:
    if callable(criterion):
        return float(criterion(model))
    if not hasattr(model, criterion):
        raise InvalidConfigurationError(f"{type(model).__name__} has no criterion '{criterion}'")
    return float(getattr(model, criterion))


def _better(candidate: float, current: float, greater_is_better: bool) -> bool:
    if math.isnan(candidate):
        return False
    return candidate > current if greater_is_better else candidate < current


class _Selector:
    """Fits and scores feature subsets for one selection run."""

    def __init__(self, factory, subjects, target, args, kwargs, criterion, greater_is_better, config):
        self.factory = factory
        self.subjects = list(subjects)
        self.target = target
        self.args = args
        self.kwargs = kwargs
        self.criterion = criterion
        self.greater_is_better = greater_is_better
        self.config = (config or RuntimeConfig()).resolved()

    def fit(self, features: Sequence[str]) -> Tuple[Model, float]:
        model = fit_with(self.factory, self.subjects, (self.target, list(features)) + tuple(self.args),
                         self.kwargs, self.config)
        return model, _score(model, self.criterion)

    def best(self, candidates: List[Tuple[str, List[str]]], current: float):
        """Evaluate candidate subsets in parallel; failing ones are skipped."""
        results = run_tasks([partial(self.fit, subset) for _, subset in candidates], self.config,
                            capture=(ModelingError,))
        best = None
        for (feature, subset), result in zip(candidates, results):
            if isinstance(result, ModelingError):
                logger.warning(f"Skipping candidate '{feature}': {result}")
                continue
            model, score = result
            reference = best[3] if best else current
            if _better(score, reference, self.greater_is_better):
                best = (feature, subset, model, score)
        return best


def backward(factory: Any,
             subjects: Sequence[Any],
             target: Any,
             features: Sequence[str],
             *args,
             criterion: Criterion = "aic",
             greater_is_better: bool = False,
             config: Optional[RuntimeConfig] = None,
             **kwargs) -> StepwiseResult:
    """
    Backward elimination.

    Starts from all ``features`` and, each round, drops the feature whose removal
    gives the best criterion, as long as that improves on the current model.
    Terminates after at most ``len(features) - 1`` rounds.
    """
    selector = _Selector(factory, subjects, target, args, kwargs, criterion, greater_is_better, config)
    current = list(features)
    model, score = selector.fit(current)
    history = []

    while len(current) > 1:
        candidates = [(f, [g for g in current if g != f]) for f in current]
        best = selector.best(candidates, score)
        if best is None:
            break
        feature, current, model, score = best
        history.append(StepRecord(len(history) + 1, "remove", feature, score))
        logger.info(f"Round {len(history)}: removed '{feature}' ({criterion if isinstance(criterion, str) else 'score'}={score:.4f})")

    return StepwiseResult(current, model, score, history)


def forward(factory: Any,
            subjects: Sequence[Any],
            target: Any,
            features: Sequence[str],
            *args,
            criterion: Criterion = "aic",
            greater_is_better: bool = False,
            config: Optional[RuntimeConfig] = None,
            **kwargs) -> StepwiseResult:
    """
    Forward selection.

    Starts from no features and, each round, adds the feature that gives the best
    criterion, as long as that improves on the current model.
    """
    selector = _Selector(factory, subjects, target, args, kwargs, criterion, greater_is_better, config)
    current: List[str] = []
    remaining = list(features)
    model = None
    score = -math.inf if greater_is_better else math.inf
    history = []

    while remaining:
        candidates = [(f, current + [f]) for f in remaining]
        best = selector.best(candidates, score)
        if best is None:
            break
        feature, current, model, score = best
        remaining.remove(feature)
        history.append(StepRecord(len(history) + 1, "add", feature, score))
        logger.info(f"Round {len(history)}: added '{feature}' (score={score:.4f})")

    return StepwiseResult(current, model, score, history)


def eliminate(factory: Any,
              subjects: Sequence[Any],
              target: Any,
              features: Sequence[str],
              *args,
              config: Optional[RuntimeConfig] = None,
              **kwargs) -> StepwiseResult:
    """
    Backward elimination by significance for regression models exposing ``coefficients``.

    Each round refits and removes the feature with the largest p-value while it
    exceeds ``config.significance``.
    """
    config = (config or RuntimeConfig()).resolved()
    selector = _Selector(factory, subjects, target, args, kwargs, "aic", False, config)
    current = list(features)
    model, _ = selector.fit(current)
    history = []

    while len(current) > 1:
        p_values = {f: model.coefficients[f]["p"] for f in current if f in model.coefficients}
        p_values = {f: p for f, p in p_values.items() if not math.isnan(p)}
        if not p_values:
            break
        feature = max(p_values, key=p_values.get)
        if p_values[feature] <= config.significance:
            break
        current = [f for f in current if f != feature]
        model, _ = selector.fit(current)
        history.append(StepRecord(len(history) + 1, "remove", feature, p_values[feature]))
        logger.info(f"Round {len(history)}: removed '{feature}' (p={p_values[feature]:.4f})")

    return StepwiseResult(current, model, _score(model, "aic") if hasattr(model, "aic") else math.nan, history)
