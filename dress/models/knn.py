"""
k-nearest-neighbours over mixed numerical and categorical features.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.special import softmax

from dress.utils.config import RuntimeConfig
from .base import Model, register_model, require


@register_model
class KNN(Model):
    """
    Instance-based model.

    Numerical distance is the absolute difference scaled by the feature's
    training range. Categorical distance is zero on a match and otherwise
    ``1/m + (1 - 1/m) * |f(a) - f(b)| / n`` where ``m`` is the number of
    categories and ``f`` their training frequency. Missing components are
    skipped and the sum rescaled by ``features / compared``.
    """

    kind = "knn"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        return {"k": 5, "weighted": True, "importances": None}

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        params = self.hyperparameters
        require(params["k"] >= 1, f"k must be >= 1, got {params['k']}")
        if params["importances"] is not None:
            require(len(params["importances"]) == len(self.features),
                    "importances must have one weight per feature")
        usable = [i for i, outcome in enumerate(outcomes) if outcome is not None]
        self._check_count(len(usable))
        self._store([self.row(subjects[i]) for i in usable], [outcomes[i] for i in usable])

    def _store(self, rows: List[Tuple[Any, ...]], outcomes: List[Any]):
        self.rows = [tuple(row) for row in rows]
        self.outcomes = list(outcomes)
        n = len(self.rows)
        self._numerical = [j for j, spec in enumerate(self.features) if not spec.categorical]
        self._categorical = [j for j, spec in enumerate(self.features) if spec.categorical]

        self._values = {}
        self._ranges = {}
        for j in self._numerical:
            column = np.array([np.nan if row[j] is None else row[j] for row in self.rows], dtype=float)
            present = column[~np.isnan(column)]
            spread = float(present.max() - present.min()) if len(present) else 0.0
            self._values[j] = column
            self._ranges[j] = spread if spread > 0 else 1.0

        self._frequencies = {}
        self._neighbor_frequencies = {}
        for j in self._categorical:
            column = np.array([row[j] for row in self.rows], dtype=object)
            counts: Dict[str, int] = {}
            for value in column:
                if value is not None:
                    counts[value] = counts.get(value, 0) + 1
            self._values[j] = column
            self._frequencies[j] = counts
            self._neighbor_frequencies[j] = np.array([counts.get(v, 0) for v in column], dtype=float)

        if self.classification:
            index = {cls: i for i, cls in enumerate(self.classes)}
            self._targets = np.array([index[o] for o in self.outcomes], dtype=int)
        else:
            self._targets = np.array(self.outcomes, dtype=float)
        self._n = n

    def distances(self, row: Sequence[Any]) -> np.ndarray:
        """Distance from ``row`` to every stored neighbour (inf when nothing is comparable)."""
        weights = self.hyperparameters["importances"] or [1.0] * len(self.features)
        total = np.zeros(self._n)
        compared = np.zeros(self._n)

        for j in self._numerical:
            if row[j] is None:
                continue
            column = self._values[j]
            present = ~np.isnan(column)
            component = weights[j] * np.abs(column - row[j]) / self._ranges[j]
            total += np.where(present, component, 0.0)
            compared += present

        for j in self._categorical:
            if row[j] is None:
                continue
            column = self._values[j]
            present = np.array([v is not None for v in column], dtype=bool)
            mismatch = present & (column != row[j])
            counts = self._frequencies[j]
            m = len(counts)
            component = (1 / m) + (1 - 1 / m) * np.abs(counts.get(row[j], 0) - self._neighbor_frequencies[j]) / self._n
            total += np.where(mismatch, weights[j] * component, 0.0)
            compared += present

        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(compared > 0, total * len(self.features) / compared, np.inf)

    def _nearest_indices(self, row: Sequence[Any], k: int) -> Tuple[np.ndarray, np.ndarray]:
        distances = self.distances(row)
        order = np.argsort(distances, kind="stable")[:k]
        order = order[np.isfinite(distances[order])]
        return order, distances[order]

    def nearest(self, subject: Any, k: Optional[int] = None) -> List[Tuple[Dict[str, Any], Any, float]]:
        """The ``k`` closest stored neighbours as ``(features, outcome, distance)``."""
        k = k or self.hyperparameters["k"]
        order, distances = self._nearest_indices(self.row(subject), k)
        return [
            (dict(zip(self.feature_paths, self.rows[i])), self.outcomes[i], float(d))
            for i, d in zip(order, distances)
        ]

    def _estimate_row(self, row: Tuple[Any, ...]):
        order, distances = self._nearest_indices(row, self.hyperparameters["k"])
        if len(order) == 0:
            return None
        if self.hyperparameters["weighted"]:
            weights = softmax(-distances)
        else:
            weights = np.full(len(order), 1 / len(order))
        if self.classification:
            return np.bincount(self._targets[order], weights=weights, minlength=len(self.classes))
        return float(np.dot(weights, self._targets[order]))

    def train(self, subjects: Sequence[Any]) -> "KNN":
        """A new model whose neighbours also include ``subjects``."""
        subjects = list(subjects)
        outcomes = [self.outcome(subject) for subject in subjects]
        usable = [i for i, outcome in enumerate(outcomes) if outcome is not None]
        classes = self.classes
        if self.classification and not self.event:
            classes = tuple(sorted(set(classes) | {outcomes[i] for i in usable}))
        model = KNN(self.target, self.features, self.classification, classes, self.hyperparameters, self.seed)
        model._store(self.rows + [self.row(subjects[i]) for i in usable],
                     self.outcomes + [outcomes[i] for i in usable])
        return model

    def _export_parameters(self) -> Dict[str, Any]:
        return {"rows": [list(row) for row in self.rows], "outcomes": self.outcomes}

    def _load_parameters(self, parameters: Dict[str, Any]):
        self._store([tuple(row) for row in parameters["rows"]], list(parameters["outcomes"]))
