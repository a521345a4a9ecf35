"""
Permutation feature importance for any fitted model.
"""

import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Any, List, Optional, Sequence

import numpy as np

from dress.models.base import Model
from dress.utils.accessor import replace, resolve
from dress.utils.config import RuntimeConfig
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError
from dress.utils.parallel import run_tasks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureImportance:
    feature: str
    importance: float
    share: float
    std: float
    repeats: int


def _permuted_scores(model: Model, subjects: List[Any], path: str, metric: str,
                     repeats: int, config: RuntimeConfig) -> List[float]:
    """Metric after shuffling ``path`` across subjects, once per repeat."""
    rng = config.rng()
    values = [resolve(subject, path) for subject in subjects]
    scores = []
    for _ in range(repeats):
        permutation = rng.permutation(len(subjects))
        perturbed = [replace(subject, path, values[j]) for subject, j in zip(subjects, permutation)]
        score = model.performance(perturbed).get(metric, math.nan)
        if math.isnan(score):
            logger.debug(f"Permutation of '{path}' gave an undefined {metric}; skipped")
            continue
        scores.append(score)
    return scores


def permutation_importance(model: Model,
                           subjects: Sequence[Any],
                           metric: Optional[str] = None,
                           repeats: int = 1,
                           config: Optional[RuntimeConfig] = None) -> List[FeatureImportance]:
    """
    Performance drop when each feature's values are shuffled across subjects.

    Args:
        model: Any fitted model
        subjects: Reference subjects (not modified)
        metric: Performance key; ``accuracy`` for classification, ``r2`` otherwise
        repeats: Permutations per feature; each feature has its own fixed seed
        config: Seed and scheduler

    Returns:
        Importances sorted by absolute value, descending, with relative shares
    """
    if repeats < 1:
        raise InvalidConfigurationError(f"repeats must be >= 1, got {repeats}")
    config = (config or RuntimeConfig()).resolved()
    subjects = list(subjects)
    metric = metric or ("accuracy" if model.classification else "r2")

    baseline = model.performance(subjects)
    if metric not in baseline:
        raise InvalidConfigurationError(f"Unknown metric '{metric}'. Available: {sorted(baseline)}")
    if math.isnan(baseline[metric]):
        raise DegenerateFitError(f"Baseline {metric} is undefined on these subjects")

    paths = model.feature_paths
    children = config.spawn(len(paths))
    tasks = [partial(_permuted_scores, model, subjects, path, metric, repeats, child)
             for path, child in zip(paths, children)]

    drops = []
    for path, scores in zip(paths, run_tasks(tasks, config)):
        if not scores:
            logger.warning(f"No defined {metric} after permuting '{path}'; feature omitted")
            continue
        delta = baseline[metric] - np.asarray(scores)
        drops.append((path, float(delta.mean()), float(delta.std()), len(scores)))

    total = sum(abs(importance) for _, importance, _, _ in drops)
    results = [
        FeatureImportance(path, importance, importance / total if total > 0 else 0.0, std, n)
        for path, importance, std, n in drops
    ]
    return sorted(results, key=lambda r: abs(r.importance), reverse=True)
