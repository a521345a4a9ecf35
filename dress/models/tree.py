"""
Decision tree learner shared by the single tree, random forest and gradient boosting.

Missing-value policy: a subject whose split feature is missing follows the
child that received more training rows with the feature present (ties go
left). The same rule is applied while growing and while predicting.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

import numpy as np

from dress.utils.accessor import FeatureSpec
from dress.utils.config import RuntimeConfig
from .base import Model, register_model, require


@dataclass(frozen=True)
class Leaf:
    """Terminal node: ``(mean,)`` for regression, class probabilities for classification."""

    value: Tuple[float, ...]
    count: int


@dataclass(frozen=True)
class Split:
    """Internal node routing on one feature."""

    feature: int
    threshold: Optional[float]
    categories: Optional[FrozenSet[str]]
    missing_left: bool
    decrease: float
    left: "Node"
    right: "Node"

    def goes_left(self, value: Any) -> bool:
        if value is None:
            return self.missing_left
        if self.categories is not None:
            return value in self.categories
        return value <= self.threshold


Node = Union[Leaf, Split]


def traverse(node: Node, row: Sequence[Any]) -> Leaf:
    while isinstance(node, Split):
        node = node.left if node.goes_left(row[node.feature]) else node.right
    return node


def column_outputs(node: Node, columns: List[np.ndarray], size: int) -> np.ndarray:
    """First leaf value for every tabulated row, routing exactly as ``traverse`` does."""
    out = np.zeros(size)
    stack = [(node, np.arange(size))]
    while stack:
        current, index = stack.pop()
        if len(index) == 0:
            continue
        if isinstance(current, Leaf):
            out[index] = current.value[0]
            continue
        column = columns[current.feature][index]
        if current.categories is not None:
            present = np.array([v is not None for v in column], dtype=bool)
            left = present & np.array([v in current.categories for v in column], dtype=bool)
        else:
            present = ~np.isnan(column)
            with np.errstate(invalid="ignore"):
                left = present & (column <= current.threshold)
        if current.missing_left:
            left |= ~present
        stack.append((current.left, index[left]))
        stack.append((current.right, index[~left]))
    return out


def node_to_dict(node: Node) -> Dict[str, Any]:
    if isinstance(node, Leaf):
        return {"value": list(node.value), "count": node.count}
    return {
        "feature": node.feature,
        "threshold": node.threshold,
        "categories": sorted(node.categories) if node.categories is not None else None,
        "missing_left": node.missing_left,
        "decrease": node.decrease,
        "left": node_to_dict(node.left),
        "right": node_to_dict(node.right),
    }


def node_from_dict(data: Dict[str, Any]) -> Node:
    if "value" in data:
        return Leaf(tuple(float(v) for v in data["value"]), int(data["count"]))
    categories = data.get("categories")
    return Split(
        feature=int(data["feature"]),
        threshold=None if data.get("threshold") is None else float(data["threshold"]),
        categories=frozenset(categories) if categories is not None else None,
        missing_left=bool(data["missing_left"]),
        decrease=float(data["decrease"]),
        left=node_from_dict(data["left"]),
        right=node_from_dict(data["right"]),
    )


def impurity_decreases(node: Node, n_features: int) -> np.ndarray:
    """Sum of weighted impurity decrease per feature over all splits of a tree."""
    totals = np.zeros(n_features)
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, Split):
            totals[current.feature] += current.decrease
            stack.extend((current.left, current.right))
    return totals


def default_max_features(n_features: int, classification: bool) -> int:
    if classification:
        return max(1, int(math.ceil(math.sqrt(n_features))))
    return max(1, n_features // 3)


def feature_columns(features: Sequence[FeatureSpec], subjects: Sequence[Any]) -> List[np.ndarray]:
    """Column-wise feature values: float with NaN, or object with None for categorical."""
    columns = []
    for spec in features:
        values = [spec.read(subject) for subject in subjects]
        if spec.categorical:
            columns.append(np.array(values, dtype=object))
        else:
            columns.append(np.array([np.nan if v is None else v for v in values], dtype=float))
    return columns


class TreeLearner:
    """
    Grow one tree by recursive binary splitting.

    At every node ``max_features`` features are drawn at random and scanned in
    index order; the first split with the largest impurity decrease wins.
    """

    def __init__(self,
                 columns: List[np.ndarray],
                 categorical: Sequence[bool],
                 y: np.ndarray,
                 classification: bool,
                 n_classes: int = 0,
                 size: int = 1,
                 depth: int = 5,
                 max_features: Optional[int] = None,
                 rng: Optional[np.random.Generator] = None):
        self.columns = columns
        self.categorical = list(categorical)
        self.y = y
        self.classification = classification
        self.n_classes = n_classes
        self.size = size
        self.depth = depth
        n_features = len(columns)
        self.max_features = min(n_features, int(max_features or default_max_features(n_features, classification)))
        self.rng = rng if rng is not None else np.random.default_rng()

    def grow(self, rows: Optional[np.ndarray] = None) -> Node:
        rows = np.arange(len(self.y)) if rows is None else np.asarray(rows)
        return self._node(rows, 0)

    # ---------- Impurity ----------
    def _impurity(self, y: np.ndarray) -> float:
        if len(y) == 0:
            return 0.0
        if self.classification:
            p = np.bincount(y, minlength=self.n_classes) / len(y)
            return float(1 - np.sum(p * p))
        return float(np.var(y))

    def _prefix_scores(self, y: np.ndarray) -> np.ndarray:
        """``n_left * imp_left + n_right * imp_right`` for a cut after each position."""
        n = len(y)
        left_n = np.arange(1, n)
        right_n = n - left_n
        if self.classification:
            counts = np.cumsum(np.eye(self.n_classes)[y], axis=0)
            left = counts[:-1]
            right = counts[-1] - left
            return (left_n - (left ** 2).sum(axis=1) / left_n) + (right_n - (right ** 2).sum(axis=1) / right_n)
        s1 = np.cumsum(y)
        s2 = np.cumsum(y * y)
        left = s2[:-1] - s1[:-1] ** 2 / left_n
        right = (s2[-1] - s2[:-1]) - (s1[-1] - s1[:-1]) ** 2 / right_n
        return left + right

    # ---------- Split search ----------
    def _numeric_candidate(self, values: np.ndarray, y: np.ndarray):
        order = np.argsort(values, kind="mergesort")
        v, yy = values[order], y[order]
        boundaries = np.nonzero(v[:-1] < v[1:])[0]
        if len(boundaries) == 0:
            return None
        scores = self._prefix_scores(yy)[boundaries]
        j = int(np.argmin(scores))
        i = boundaries[j]
        threshold = (v[i] + v[i + 1]) / 2
        if threshold >= v[i + 1]:
            threshold = v[i]
        return float(scores[j]), float(threshold), None

    def _categorical_candidate(self, values: np.ndarray, y: np.ndarray):
        categories = sorted(set(values))
        if len(categories) < 2:
            return None
        if self.classification:
            majority = int(np.argmax(np.bincount(y, minlength=self.n_classes)))
            statistic = {c: float(np.mean(y[values == c] == majority)) for c in categories}
        else:
            statistic = {c: float(np.mean(y[values == c])) for c in categories}
        ranked = sorted(categories, key=lambda c: (statistic[c], c))
        rank = {c: r for r, c in enumerate(ranked)}
        ranks = np.array([rank[v] for v in values], dtype=float)

        order = np.argsort(ranks, kind="mergesort")
        r, yy = ranks[order], y[order]
        boundaries = np.nonzero(r[:-1] < r[1:])[0]
        scores = self._prefix_scores(yy)[boundaries]
        j = int(np.argmin(scores))
        cut = int(r[boundaries[j]])
        return float(scores[j]), None, frozenset(ranked[:cut + 1])

    def _best_split(self, rows: np.ndarray):
        n_node = len(rows)
        features = np.sort(self.rng.choice(len(self.columns), size=self.max_features, replace=False))
        best = None
        best_gain = 0.0
        for feature in features:
            column = self.columns[feature][rows]
            if self.categorical[feature]:
                present = np.array([v is not None for v in column], dtype=bool)
            else:
                present = ~np.isnan(column)
            n_present = int(present.sum())
            if n_present < 2:
                continue
            values, y = column[present], self.y[rows][present]
            if self.categorical[feature]:
                candidate = self._categorical_candidate(values, y)
            else:
                candidate = self._numeric_candidate(values.astype(float), y)
            if candidate is None:
                continue
            score, threshold, categories = candidate
            gain = (n_present / n_node) * (self._impurity(y) - score / n_present)
            if gain > best_gain + 1e-12:
                best_gain = gain
                best = (int(feature), threshold, categories, present)
        if best is None:
            return None
        return best + (best_gain,)

    def _node(self, rows: np.ndarray, depth: int) -> Node:
        y = self.y[rows]
        if self.classification:
            leaf = Leaf(tuple(float(p) for p in np.bincount(y, minlength=self.n_classes) / len(y)), len(rows))
        else:
            leaf = Leaf((float(np.mean(y)),), len(rows))

        if self._impurity(y) <= 0 or len(rows) <= self.size or depth >= self.depth:
            return leaf
        best = self._best_split(rows)
        if best is None:
            return leaf

        feature, threshold, categories, present, gain = best
        column = self.columns[feature][rows]
        if categories is not None:
            left_present = present & np.array([v in categories for v in column], dtype=bool)
        else:
            with np.errstate(invalid="ignore"):
                left_present = present & (column <= threshold)
        right_present = present & ~left_present
        missing_left = int(left_present.sum()) >= int(right_present.sum())
        missing = ~present
        left_mask = left_present | (missing & missing_left)
        right_mask = right_present | (missing & (not missing_left))

        return Split(
            feature=feature,
            threshold=threshold,
            categories=categories,
            missing_left=missing_left,
            decrease=gain * len(rows),
            left=self._node(rows[left_mask], depth + 1),
            right=self._node(rows[right_mask], depth + 1),
        )


def tree_defaults(classification: bool, size: Tuple[int, int], depth: int) -> Dict[str, Any]:
    return {"size": size[0] if classification else size[1], "depth": depth, "max_features": None}


def check_tree_hyperparameters(params: Dict[str, Any]):
    require(params["size"] >= 1, f"size must be >= 1, got {params['size']}")
    require(params["depth"] >= 0, f"depth must be >= 0, got {params['depth']}")
    require(params["max_features"] is None or int(params["max_features"]) >= 1,
            f"max_features must be >= 1, got {params['max_features']}")


class TreeModel(Model):
    """Helpers for models that train on tabulated feature columns."""

    def _tabulate(self, subjects: List[Any], outcomes: List[Any]):
        usable = [i for i, outcome in enumerate(outcomes) if outcome is not None]
        self._check_count(len(usable))
        columns = feature_columns(self.features, [subjects[i] for i in usable])
        if self.classification:
            index = {cls: i for i, cls in enumerate(self.classes)}
            y = np.array([index[outcomes[i]] for i in usable], dtype=int)
        else:
            y = np.array([outcomes[i] for i in usable], dtype=float)
        return columns, y

    def _learner(self, columns: List[np.ndarray], y: np.ndarray, rng: np.random.Generator,
                 regression_trees: bool = False) -> TreeLearner:
        params = self.hyperparameters
        classification = self.classification and not regression_trees
        # Feature sampling follows the model's task even for residual trees
        max_features = params["max_features"] or default_max_features(len(columns), self.classification)
        return TreeLearner(
            columns,
            [spec.categorical for spec in self.features],
            y,
            classification=classification,
            n_classes=len(self.classes) if classification else 0,
            size=params["size"],
            depth=params["depth"],
            max_features=max_features,
            rng=rng,
        )


@register_model
class DecisionTree(TreeModel):
    """A single classification or regression tree over all features."""

    kind = "decision_tree"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        params = tree_defaults(classification, (1, 3), 5)
        params["max_features"] = n_features
        return params

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        check_tree_hyperparameters(self.hyperparameters)
        columns, y = self._tabulate(subjects, outcomes)
        self.root = self._learner(columns, y, config.rng()).grow()

    def impurity_importance(self) -> Dict[str, float]:
        totals = impurity_decreases(self.root, len(self.features))
        total = totals.sum()
        shares = totals / total if total > 0 else totals
        return dict(zip(self.feature_paths, map(float, shares)))

    def _estimate_row(self, row: Tuple[Any, ...]):
        value = traverse(self.root, row).value
        return np.asarray(value) if self.classification else value[0]

    def _export_parameters(self) -> Dict[str, Any]:
        return {"root": node_to_dict(self.root)}

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.root = node_from_dict(parameters["root"])
