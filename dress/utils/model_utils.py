"""
Performance records, metric computation and model comparison.
"""

import logging
import math
from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.metrics import (
    accuracy_score, balanced_accuracy_score, confusion_matrix, f1_score,
    mean_absolute_error, mean_squared_error, r2_score, recall_score, roc_auc_score
)

logger = logging.getLogger(__name__)

NAN = float("nan")


class Performance(Mapping):
    """Immutable metric-name to value record. Always carries ``count``."""

    def __init__(self, metrics: Dict[str, float]):
        if "count" not in metrics:
            raise ValueError("Performance records must include 'count'")
        self._metrics = {key: float(value) for key, value in metrics.items()}

    def __getitem__(self, key: str) -> float:
        return self._metrics[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._metrics)

    def __len__(self) -> int:
        return len(self._metrics)

    def __repr__(self) -> str:
        body = ", ".join(f"{key}={value:.4g}" for key, value in self._metrics.items())
        return f"Performance({body})"

    @property
    def count(self) -> int:
        return int(self._metrics["count"])

    def to_dict(self, nan_as_none: bool = False) -> Dict[str, Optional[float]]:
        if nan_as_none:
            return {k: (None if math.isnan(v) else v) for k, v in self._metrics.items()}
        return dict(self._metrics)


class ModelEvaluator:
    """Compute performance metrics from paired truths and predictions."""

    def calculate_regression_metrics(self,
                                     y_true: Sequence[float],
                                     y_pred: Sequence[float],
                                     n_features: int = 0) -> Performance:
        """
        Regression metrics.

        Args:
            y_true: Observed values (missing rows already excluded)
            y_pred: Predicted values
            n_features: Number of predictors, for the adjusted R-squared

        Returns:
            Performance with count, r2, adjusted_r2, rmse and mae
        """
        y_true = np.asarray(y_true, dtype=float)
        y_pred = np.asarray(y_pred, dtype=float)
        n = len(y_true)
        if n == 0:
            return Performance({"count": 0, "r2": NAN, "adjusted_r2": NAN, "rmse": NAN, "mae": NAN})

        r2 = float(r2_score(y_true, y_pred)) if n > 1 else NAN
        dof = n - n_features - 1
        adjusted = 1 - (1 - r2) * (n - 1) / dof if dof > 0 else NAN
        return Performance({
            "count": n,
            "r2": r2,
            "adjusted_r2": adjusted,
            "rmse": float(np.sqrt(mean_squared_error(y_true, y_pred))),
            "mae": float(mean_absolute_error(y_true, y_pred)),
        })

    def calculate_metrics(self,
                          y_true: Sequence[Any],
                          y_pred: Sequence[Any],
                          y_score: Optional[np.ndarray] = None,
                          classes: Optional[Sequence[Any]] = None) -> Performance:
        """
        Classification metrics.

        Args:
            y_true: True labels
            y_pred: Predicted labels
            y_score: Class probabilities, one column per entry of ``classes``
            classes: Ordered class labels; the last one is the positive class
                when there are two

        Returns:
            Performance with count, accuracy, balanced_accuracy, f1, auc,
            sensitivity, specificity (and ppv/npv for binary tasks)
        """
        y_true = list(y_true)
        y_pred = list(y_pred)
        classes = list(classes) if classes is not None else sorted(set(y_true) | set(y_pred))
        n = len(y_true)
        if n == 0:
            return Performance({
                "count": 0, "accuracy": NAN, "balanced_accuracy": NAN, "f1": NAN,
                "auc": NAN, "sensitivity": NAN, "specificity": NAN,
            })

        # Truths unseen in training still count as their own row of the confusion matrix
        labels = classes + [label for label in dict.fromkeys(y_true) if label not in classes]
        cm = confusion_matrix(y_true, y_pred, labels=labels)
        tp = np.diag(cm).astype(float)
        fn = cm.sum(axis=1) - tp
        fp = cm.sum(axis=0) - tp
        tn = cm.sum() - tp - fn - fp

        metrics = {
            "count": n,
            "accuracy": float(accuracy_score(y_true, y_pred)),
            "balanced_accuracy": _safe(lambda: balanced_accuracy_score(y_true, y_pred)),
        }

        if len(labels) == 2:
            positive = labels[1]
            metrics["f1"] = _safe(lambda: f1_score(y_true, y_pred, labels=labels, pos_label=positive,
                                                   average="binary", zero_division=0))
            metrics["sensitivity"] = _ratio(tp[1], tp[1] + fn[1])
            metrics["specificity"] = _ratio(tn[1], tn[1] + fp[1])
            metrics["ppv"] = _ratio(tp[1], tp[1] + fp[1])
            metrics["npv"] = _ratio(tn[1], tn[1] + fn[1])
        else:
            metrics["f1"] = _safe(lambda: f1_score(y_true, y_pred, labels=labels, average="macro", zero_division=0))
            metrics["sensitivity"] = _safe(lambda: recall_score(y_true, y_pred, labels=labels,
                                                                average="macro", zero_division=0))
            specificities = [_ratio(tn[i], tn[i] + fp[i]) for i in range(len(labels))]
            metrics["specificity"] = NAN if all(map(math.isnan, specificities)) else float(np.nanmean(specificities))

        metrics["auc"] = self._auc(y_true, y_score, classes)
        return Performance(metrics)

    def _auc(self, y_true: List[Any], y_score: Optional[np.ndarray], classes: List[Any]) -> float:
        if y_score is None or len(set(y_true)) < 2 or not set(y_true) <= set(classes):
            return NAN
        y_score = np.asarray(y_score, dtype=float)
        if len(classes) == 2:
            truth = [1 if label == classes[1] else 0 for label in y_true]
            return _safe(lambda: roc_auc_score(truth, y_score[:, 1]))
        if set(y_true) != set(classes):
            return NAN
        normalized = y_score / np.clip(y_score.sum(axis=1, keepdims=True), 1e-12, None)
        return _safe(lambda: roc_auc_score(y_true, normalized, multi_class="ovr", labels=classes))


def _ratio(numerator: float, denominator: float) -> float:
    return float(numerator / denominator) if denominator > 0 else NAN


def _safe(compute) -> float:
    try:
        return float(compute())
    except ValueError as e:
        logger.debug(f"Metric undefined: {e}")
        return NAN


class ModelComparator:
    """Compare multiple models on their cross-validated summaries."""

    def __init__(self):
        """Initialize comparator."""
        self.results = {}

    def add_model(self, name: str, metrics: Mapping):
        """Add a model's metric record (``Performance`` or plain mapping)."""
        self.results[name] = {key: float(value) for key, value in metrics.items()}

    def compare_models(self, metric: Optional[str] = None, greater_is_better: bool = True) -> pd.DataFrame:
        """Create comparison table sorted by ``metric``."""
        if not self.results:
            return pd.DataFrame()

        comparison_df = pd.DataFrame(self.results).T

        if metric is not None and metric in comparison_df.columns:
            comparison_df = comparison_df.sort_values(metric, ascending=not greater_is_better)

        return comparison_df

    def get_best_model(self, metric: str, greater_is_better: bool = True) -> Optional[str]:
        """Get name of best performing model."""
        best_model = None
        best_score = None

        for model_name, metrics in self.results.items():
            score = metrics.get(metric)
            if score is None or math.isnan(score):
                continue
            if best_score is None or (score > best_score if greater_is_better else score < best_score):
                best_score = score
                best_model = model_name

        return best_model


def calculate_statistical_significance(scores1: Sequence[float],
                                       scores2: Sequence[float],
                                       significance: float = 0.05) -> Dict[str, float]:
    """
    Paired t-test between two models' per-fold scores on the same folds.

    Returns:
        Mean difference, t statistic, p value and whether it is significant
    """
    a = np.asarray(scores1, dtype=float)
    b = np.asarray(scores2, dtype=float)
    if len(a) != len(b):
        raise ValueError("Fold score sequences must have equal length")
    mask = ~(np.isnan(a) | np.isnan(b))
    a, b = a[mask], b[mask]
    if len(a) < 2:
        return {"difference": float(np.mean(a - b)) if len(a) else NAN, "t": NAN, "p_value": NAN, "significant": False}

    diff = a - b
    if np.allclose(diff, diff[0]):
        # Constant difference: t is undefined
        return {"difference": float(diff.mean()), "t": NAN, "p_value": NAN, "significant": False}

    result = stats.ttest_rel(a, b)
    p_value = float(result.pvalue)
    return {
        "difference": float(diff.mean()),
        "t": float(result.statistic),
        "p_value": p_value,
        "significant": bool(p_value < significance),
    }
