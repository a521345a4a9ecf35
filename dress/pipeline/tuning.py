"""
Hyperparameter tuning by grid or coordinate-wise line search with optuna.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import optuna
import pandas as pd

from dress.utils.config import RuntimeConfig
from dress.utils.errors import DegenerateFitError, InvalidConfigurationError, ModelingError
from .validation import CrossValidationResult, cross_validate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TuningResult:
    params: Dict[str, Any]
    score: float
    cross_validation: CrossValidationResult
    trials: pd.DataFrame
    # Line search only: parameters and score after every improving move
    steps: Tuple[Dict[str, Any], ...] = ()


def parameter_grid(lower: Dict[str, Any], upper: Dict[str, Any],
                   steps: Union[int, Dict[str, int]] = 4) -> Dict[str, List[Any]]:
    """
    Evenly spaced candidate values per parameter.

    ``steps`` intervals give ``steps + 1`` points from lower to upper bound;
    integer bounds produce (deduplicated) integers.
    """
    if set(lower) != set(upper):
        raise InvalidConfigurationError(
            f"Lower and upper bounds name different parameters: {sorted(lower)} vs {sorted(upper)}"
        )
    grid = {}
    for name in lower:
        lo, hi = lower[name], upper[name]
        if isinstance(lo, bool) or isinstance(hi, bool):
            grid[name] = sorted({bool(lo), bool(hi)})
            continue
        if lo > hi:
            raise InvalidConfigurationError(f"Lower bound of '{name}' exceeds upper bound ({lo} > {hi})")
        n = steps.get(name, 4) if isinstance(steps, dict) else steps
        if n < 1:
            raise InvalidConfigurationError(f"steps for '{name}' must be >= 1, got {n}")
        values = np.linspace(lo, hi, int(n) + 1)
        if isinstance(lo, int) and isinstance(hi, int):
            grid[name] = sorted({int(round(v)) for v in values})
        else:
            grid[name] = [float(v) for v in values]
    return grid


def _key(params: Dict[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    return tuple(sorted(params.items()))


class _Search:
    """Runs cross-validated grid studies and keeps every point's result."""

    def __init__(self, metric, factory, subjects, args, kwargs, fixed, greater_is_better, folds, config):
        self.metric = metric
        self.factory = factory
        self.subjects = list(subjects)
        self.args = args
        self.kwargs = kwargs
        self.fixed = dict(fixed or {})
        self.greater_is_better = greater_is_better
        self.folds = folds
        self.config = config
        self.results: List[Tuple[Dict[str, Any], float, CrossValidationResult]] = []
        # Every evaluated point; None when it failed or its metric is undefined
        self.scored: Dict[Tuple, Optional[Tuple[float, CrossValidationResult]]] = {}
        self.frames: List[pd.DataFrame] = []

    def better(self, score: float, than: Optional[float]) -> bool:
        if than is None:
            return True
        return score > than if self.greater_is_better else score < than

    def evaluate(self, params: Dict[str, Any]) -> float:
        key = _key(params)
        self.scored[key] = None
        result = cross_validate(
            self.factory, self.subjects, *self.args,
            folds=self.folds, config=self.config,
            hyperparameters={**self.fixed, **params}, **self.kwargs,
        )
        if self.metric not in result.summary:
            raise KeyError(f"Unknown metric '{self.metric}'. Available: {sorted(result.summary)}")
        score = result.mean(self.metric)
        if not math.isnan(score):
            self.results.append((params, score, result))
            self.scored[key] = (score, result)
        return score

    def study(self, space: Dict[str, List[Any]], context: Dict[str, Any], label: str) -> optuna.Study:
        sampler = optuna.samplers.GridSampler(space, seed=self.config.seed % (2 ** 32))
        study = optuna.create_study(
            direction="maximize" if self.greater_is_better else "minimize",
            sampler=sampler,
            study_name=label,
        )

        def objective(trial: optuna.Trial) -> float:
            params = dict(context)
            params.update({name: trial.suggest_categorical(name, values) for name, values in space.items()})
            score = self.evaluate(params)
            logger.info(f"[{label}] {params} -> {self.metric}={score:.4f}")
            return score

        n_trials = int(np.prod([len(values) for values in space.values()]))
        study.optimize(objective, n_trials=n_trials, n_jobs=1, catch=(ModelingError,), show_progress_bar=False)

        frame = study.trials_dataframe(attrs=("number", "value", "params", "state"))
        frame.insert(0, "search", label)
        self.frames.append(frame)
        return study

    def best(self) -> Optional[Tuple[Dict[str, Any], float, CrossValidationResult]]:
        if not self.results:
            return None
        pick = max if self.greater_is_better else min
        return pick(self.results, key=lambda r: r[1])

    def line(self, space: Dict[str, List[Any]]) -> List[Dict[str, Any]]:
        """
        Coordinate-wise search starting from the lower bounds.

        Parameters are tuned in turn, each over its values with the others held
        at their current best, cycling until a full round of parameters moves
        nothing. Points already scored are not cross-validated again.

        Returns:
            One entry per improving move with the parameters and score after it
        """
        names = list(space)
        current = {name: values[0] for name, values in space.items()}
        current_score: Optional[float] = None
        steps: List[Dict[str, Any]] = []
        unchanged = 0
        index = 0
        while unchanged < len(names):
            name = names[index % len(names)]
            context = {k: v for k, v in current.items() if k != name}
            fresh = [v for v in space[name] if _key({**context, name: v}) not in self.scored]
            if fresh:
                self.study({name: fresh}, context, f"line:{name}")

            best_value, best_score = current[name], current_score
            for value in space[name]:
                scored = self.scored.get(_key({**context, name: value}))
                if scored is not None and self.better(scored[0], best_score):
                    best_value, best_score = value, scored[0]

            if best_score is not None and (not steps or best_value != current[name]):
                current[name] = best_value
                current_score = best_score
                steps.append({"params": dict(current), "score": best_score})
                logger.info(f"[line] {name} -> {best_value} ({self.metric}={best_score:.4f})")
                unchanged = 0
            unchanged += 1
            index += 1
        return steps


def tune(lower: Dict[str, Any],
         upper: Dict[str, Any],
         metric: str,
         factory: Any,
         subjects: Sequence[Any],
         *args,
         steps: Union[int, Dict[str, int]] = 4,
         strategy: str = "grid",
         greater_is_better: bool = True,
         folds: int = 5,
         hyperparameters: Optional[Dict[str, Any]] = None,
         config: Optional[RuntimeConfig] = None,
         tracker=None,
         **kwargs) -> TuningResult:
    """
    Search hyperparameters between ``lower`` and ``upper`` by cross-validated ``metric``.

    Every point uses the same seed so that points are compared on identical folds
    and sampling. A point whose fit raises a ``ModelingError`` is marked failed and
    skipped.

    Args:
        lower: Starting value per hyperparameter
        upper: Final value per hyperparameter
        metric: Performance key to optimize
        factory: Model class or callable, called as ``factory(subjects, *args, hyperparameters=...)``
        subjects: Subjects to cross-validate on
        steps: Intervals per parameter (int or per-name dict)
        strategy: ``"grid"`` (Cartesian product) or ``"line"`` (one parameter at a
            time, repeated until no parameter moves)
        hyperparameters: Fixed hyperparameters merged under every point
        tracker: Optional ExperimentTracker receiving the best point

    Returns:
        Best parameters, their score and cross-validation, all trials and, for
        line search, the history of improving moves
    """
    if strategy not in ("grid", "line"):
        raise InvalidConfigurationError(f"Unknown tuning strategy '{strategy}'")
    space = parameter_grid(lower, upper, steps)
    config = (config or RuntimeConfig()).resolved()
    optuna.logging.set_verbosity(optuna.logging.WARNING)

    search = _Search(metric, factory, subjects, args, kwargs, hyperparameters,
                     greater_is_better, folds, config)

    history: List[Dict[str, Any]] = []
    if strategy == "grid":
        search.study(space, {}, "grid")
        best = search.best()
    else:
        history = search.line(space)
        best = None
        if history:
            params = history[-1]["params"]
            score, result = search.scored[_key(params)]
            best = (params, score, result)

    if best is None:
        raise DegenerateFitError("No hyperparameter configuration could be fitted and scored")
    params, score, result = best
    logger.info(f"[Tuning] Best params: {params} ({metric}={score:.4f})")

    if tracker is not None:
        tracker.log_params(params, prefix="tuning")
        tracker.log_metrics({f"best_{metric}": score})

    trials = pd.concat(search.frames, ignore_index=True)
    return TuningResult(params, score, result, trials, tuple(history))
