"""
k-fold cross-validation over any model factory.
"""

import inspect
import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from dress.models.base import Model
from dress.utils.config import RuntimeConfig
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError
from dress.utils.model_utils import Performance
from dress.utils.parallel import run_tasks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FoldRecord:
    """Performance of the model trained without fold ``index`` and evaluated on it."""

    index: int
    train_indices: np.ndarray
    validation_indices: np.ndarray
    performance: Performance


@dataclass(frozen=True)
class MetricSummary:
    mean: float
    std: float
    lower: float
    upper: float
    count: int


@dataclass(frozen=True)
class CrossValidationResult:
    folds: Tuple[FoldRecord, ...]
    summary: Dict[str, MetricSummary]

    def mean(self, metric: str) -> float:
        return self.summary[metric].mean

    def std(self, metric: str) -> float:
        return self.summary[metric].std

    def scores(self, metric: str) -> List[float]:
        """Per-fold values of ``metric`` (NaN where undefined)."""
        return [fold.performance.get(metric, float("nan")) for fold in self.folds]

    def summary_metrics(self, prefix: str = "cv_") -> Dict[str, float]:
        metrics = {f"{prefix}{m}": s.mean for m, s in self.summary.items()}
        metrics.update({f"{prefix}{m}_std": s.std for m, s in self.summary.items()})
        return metrics

    def to_frame(self) -> pd.DataFrame:
        """One row per fold, one column per metric."""
        frame = pd.DataFrame([dict(fold.performance) for fold in self.folds])
        frame.index = pd.Index([fold.index for fold in self.folds], name="fold")
        return frame

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folds": [
                {"index": fold.index, "validation_size": int(len(fold.validation_indices)),
                 "performance": fold.performance.to_dict()}
                for fold in self.folds
            ],
            "summary": {m: vars(s).copy() for m, s in self.summary.items()},
        }


def partition(n: int, folds: int, rng: Optional[np.random.Generator] = None) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Split ``range(n)`` into ``folds`` contiguous, near-equal validation sets.

    Returns:
        ``(train_indices, validation_indices)`` per fold; validation sets are a
        partition of the (optionally shuffled) indices
    """
    if folds < 2:
        raise InvalidConfigurationError(f"Cross-validation needs at least 2 folds, got {folds}")
    if folds > n:
        raise DegenerateFitError(f"{folds} folds over {n} subjects would leave empty validation folds")
    indices = rng.permutation(n) if rng is not None else np.arange(n)
    splits = np.array_split(indices, folds)
    return [
        (np.concatenate([s for j, s in enumerate(splits) if j != i]), validation)
        for i, validation in enumerate(splits)
    ]


def _accepts_config(fn: Callable) -> bool:
    try:
        parameters = inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False
    return "config" in parameters or any(p.kind == p.VAR_KEYWORD for p in parameters.values())


def model_factory(factory: Any) -> Callable[..., Model]:
    """Model classes are fitted through ``fit``; any other callable is used as-is."""
    if isinstance(factory, type) and issubclass(factory, Model):
        return factory.fit
    if not callable(factory):
        raise InvalidConfigurationError(f"Model factory must be callable, got {factory!r}")
    return factory


def fit_with(factory: Any, subjects: Sequence[Any], args: Sequence[Any], kwargs: Dict[str, Any],
             config: RuntimeConfig) -> Model:
    """Call a factory, forwarding ``config`` when it takes one."""
    fn = model_factory(factory)
    if _accepts_config(fn) and "config" not in kwargs:
        return fn(subjects, *args, config=config, **kwargs)
    return fn(subjects, *args, **kwargs)


def summarize(performances: Sequence[Performance], z: float) -> Dict[str, MetricSummary]:
    """Mean, sample standard deviation and normal confidence bounds per metric."""
    metrics: List[str] = []
    for performance in performances:
        metrics.extend(m for m in performance if m not in metrics)

    summary = {}
    for metric in metrics:
        values = np.array([p.get(metric, np.nan) for p in performances], dtype=float)
        values = values[~np.isnan(values)]
        count = len(values)
        if count == 0:
            summary[metric] = MetricSummary(math.nan, math.nan, math.nan, math.nan, 0)
            continue
        mean = float(values.mean())
        std = float(values.std(ddof=1)) if count > 1 else 0.0
        half = z * std / math.sqrt(count)
        summary[metric] = MetricSummary(mean, std, mean - half, mean + half, count)
    return summary


def cross_validate(factory: Any,
                   subjects: Sequence[Any],
                   *args,
                   folds: int = 5,
                   shuffle: bool = False,
                   config: Optional[RuntimeConfig] = None,
                   **kwargs) -> CrossValidationResult:
    """
    Retrain ``factory(train, *args, **kwargs)`` on k-1 folds and evaluate on the held-out fold.

    Args:
        factory: Model class or callable returning a fitted model
        subjects: Subjects to partition (order preserved unless ``shuffle``)
        folds: Number of folds (2 <= folds <= len(subjects))
        shuffle: Permute subjects with the config seed before partitioning
        config: Seed, significance and scheduler; each fold gets a spawned child

    Returns:
        Per-fold records plus per-metric mean, std and confidence bounds
    """
    config = (config or RuntimeConfig()).resolved()
    subjects = list(subjects)
    splits = partition(len(subjects), folds, config.rng() if shuffle else None)
    children = config.spawn(folds)

    def evaluate(index: int, train: np.ndarray, validation: np.ndarray, child: RuntimeConfig) -> FoldRecord:
        model = fit_with(factory, [subjects[i] for i in train], args, kwargs, child)
        performance = model.performance([subjects[i] for i in validation])
        logger.info(f"Fold {index + 1}/{folds}: {performance}")
        return FoldRecord(index, train, validation, performance)

    tasks = [partial(evaluate, i, train, validation, children[i])
             for i, (train, validation) in enumerate(splits)]
    records = tuple(run_tasks(tasks, config))
    return CrossValidationResult(records, summarize([r.performance for r in records], config.z))
