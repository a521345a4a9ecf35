"""
Tree ensembles: bagged random forests and gradient boosting.
"""

import logging
import math
from functools import partial
from typing import Any, Dict, List, Tuple

import numpy as np
from scipy.special import expit, softmax

from dress.utils.config import RuntimeConfig
from dress.utils.parallel import run_tasks
from .base import register_model, require
from .tree import (
    TreeModel, check_tree_hyperparameters, column_outputs, impurity_decreases,
    node_from_dict, node_to_dict, traverse, tree_defaults
)

logger = logging.getLogger(__name__)


def _normalized(totals: np.ndarray, paths: List[str]) -> Dict[str, float]:
    total = totals.sum()
    shares = totals / total if total > 0 else totals
    return dict(zip(paths, map(float, shares)))


@register_model
class RandomForest(TreeModel):
    """
    Bagged trees with per-node feature sampling.

    Each tree gets its own seed spawned from the fit seed, so trees are built
    independently (and in parallel) yet reproducibly.
    """

    kind = "random_forest"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        params = tree_defaults(classification, (1, 3), 5)
        params.update({"tree": 200, "bootstrap": True})
        return params

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        check_tree_hyperparameters(self.hyperparameters)
        require(self.hyperparameters["tree"] >= 1, "tree must be >= 1")
        columns, y = self._tabulate(subjects, outcomes)
        n = len(y)
        bootstrap = self.hyperparameters["bootstrap"]

        def build(child: RuntimeConfig):
            rng = child.rng()
            rows = rng.integers(0, n, size=n) if bootstrap else np.arange(n)
            return self._learner(columns, y, rng).grow(rows)

        children = config.spawn(self.hyperparameters["tree"])
        self.trees = tuple(run_tasks([partial(build, child) for child in children], config))
        logger.info(f"Built {len(self.trees)} trees on {n} subjects")

    def votes(self, row: Tuple[Any, ...]) -> List[Any]:
        """Per-tree class index (classification) or value (regression)."""
        leaves = [traverse(tree, row).value for tree in self.trees]
        if self.classification:
            return [int(np.argmax(value)) for value in leaves]
        return [value[0] for value in leaves]

    def _estimate_row(self, row: Tuple[Any, ...]):
        votes = self.votes(row)
        if self.classification:
            return np.bincount(votes, minlength=len(self.classes)) / len(votes)
        return float(np.mean(votes))

    def impurity_importance(self) -> Dict[str, float]:
        """Weighted impurity decrease per feature across all trees, summing to 1."""
        totals = sum(impurity_decreases(tree, len(self.features)) for tree in self.trees)
        return _normalized(totals, self.feature_paths)

    def _export_parameters(self) -> Dict[str, Any]:
        return {"trees": [node_to_dict(tree) for tree in self.trees]}

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.trees = tuple(node_from_dict(tree) for tree in parameters["trees"])


@register_model
class GradientBoosting(TreeModel):
    """
    Gradient boosting with regression trees fitted to residuals.

    Classification keeps one score per class (a single logit when binary) and
    fits one tree per score each round. Rounds are strictly sequential.
    """

    kind = "gradient_boosting"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        params = tree_defaults(classification, (1, 5), 5)
        params.update({"tree": 25 if classification else 50, "sampling": 0.75, "learning_rate": 0.4})
        return params

    def _link(self, scores: np.ndarray) -> np.ndarray:
        """Scores -> regression value or class probabilities (last axis)."""
        if not self.classification:
            return scores
        if len(self.classes) == 1:
            return np.ones_like(scores)
        if len(self.classes) == 2:
            p = expit(scores[..., 0])
            return np.stack([1 - p, p], axis=-1)
        return softmax(scores, axis=-1)

    def _fitted(self, scores: np.ndarray) -> np.ndarray:
        """Current predictions aligned with the per-score training targets."""
        if self.classification and len(self.classes) == 2:
            return expit(scores)
        return self._link(scores)

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        params = self.hyperparameters
        check_tree_hyperparameters(params)
        require(params["tree"] >= 0, "tree must be >= 0")
        require(0 < params["sampling"] <= 1, f"sampling must be in (0, 1], got {params['sampling']}")
        require(params["learning_rate"] >= 0, "learning_rate must be >= 0")

        columns, y = self._tabulate(subjects, outcomes)
        n = len(y)
        rng = config.rng()

        if self.classification:
            k = len(self.classes)
            prior = np.clip(np.bincount(y, minlength=k) / n, 1e-6, 1 - 1e-6)
            if k == 2:
                self.base = np.array([math.log(prior[1] / (1 - prior[1]))])
                targets = (y == 1).astype(float)[:, None]
            elif k == 1:
                self.base = np.zeros(1)
                targets = None
            else:
                self.base = np.log(prior)
                targets = np.eye(k)[y]
        else:
            self.base = np.array([float(np.mean(y))])
            targets = y[:, None]

        learning_rate = params["learning_rate"]
        sample_size = max(1, int(math.ceil(params["sampling"] * n)))
        scores = np.tile(self.base, (n, 1))
        rounds = []
        for _ in range(params["tree"] if targets is not None else 0):
            rows = np.sort(rng.choice(n, size=sample_size, replace=False))
            residuals = targets - self._fitted(scores)
            trees = []
            for output in range(scores.shape[1]):
                tree = self._learner(columns, residuals[:, output], rng, regression_trees=True).grow(rows)
                scores[:, output] += learning_rate * column_outputs(tree, columns, n)
                trees.append(tree)
            rounds.append(tuple(trees))
        self.rounds = tuple(rounds)
        logger.info(f"Boosted {len(self.rounds)} rounds on {n} subjects")

    def scores(self, row: Tuple[Any, ...]) -> np.ndarray:
        """Base plus the learning-rate-scaled output of every tree, in training order."""
        learning_rate = self.hyperparameters["learning_rate"]
        scores = np.array(self.base, dtype=float)
        for trees in self.rounds:
            for output, tree in enumerate(trees):
                scores[output] += learning_rate * traverse(tree, row).value[0]
        return scores

    def _estimate_row(self, row: Tuple[Any, ...]):
        linked = self._link(self.scores(row))
        return linked if self.classification else float(linked[0])

    def impurity_importance(self) -> Dict[str, float]:
        totals = np.zeros(len(self.features))
        for trees in self.rounds:
            for tree in trees:
                totals += impurity_decreases(tree, len(self.features))
        return _normalized(totals, self.feature_paths)

    def _export_parameters(self) -> Dict[str, Any]:
        return {
            "base": self.base,
            "rounds": [[node_to_dict(tree) for tree in trees] for trees in self.rounds],
        }

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.base = np.asarray(parameters["base"], dtype=float)
        self.rounds = tuple(tuple(node_from_dict(tree) for tree in trees) for trees in parameters["rounds"])
