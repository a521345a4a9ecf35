"""
Linear, polynomial and logistic regression with inferential statistics.
"""

import logging
from typing import Any, Dict, List, Tuple

import numpy as np
from scipy import stats
from scipy.special import expit
from sklearn.preprocessing import PolynomialFeatures

from dress.utils.config import RuntimeConfig
from dress.utils.errors import DegenerateFitError
from .base import Model, register_model, require

logger = logging.getLogger(__name__)


def _complete_cases(model: Model, subjects: List[Any], outcomes: List[Any]) -> Tuple[np.ndarray, np.ndarray]:
    """Rows where every feature and the outcome are present."""
    X = model.numeric_matrix(subjects)
    y = np.array([np.nan if o is None else float(o) for o in outcomes], dtype=float)
    mask = ~np.isnan(X).any(axis=1) & ~np.isnan(y)
    return X[mask], y[mask]


def _check_variance(model: Model, X: np.ndarray):
    constant = [spec.path for spec, std in zip(model.features, X.std(axis=0)) if std == 0]
    if constant:
        raise DegenerateFitError(f"Zero-variance features prevent the fit: {constant}")


def _expand(X: np.ndarray, powers: np.ndarray) -> np.ndarray:
    """Design matrix with an intercept column followed by one column per power row."""
    terms = np.prod(X[:, None, :] ** powers[None, :, :], axis=2)
    return np.column_stack([np.ones(len(X)), terms])


def _term_name(paths: List[str], power: np.ndarray) -> str:
    parts = []
    for path, exponent in zip(paths, power):
        if exponent == 1:
            parts.append(path)
        elif exponent > 1:
            parts.append(f"{path}^{int(exponent)}")
    return " * ".join(parts)


def ordinary_least_squares(design: np.ndarray, y: np.ndarray, ridge: float = 0.0,
                           significance: float = 0.05) -> Dict[str, Any]:
    """
    Solve ``design @ beta ~ y`` and derive the usual inference.

    Args:
        design: Matrix whose first column is the intercept
        y: Outcomes
        ridge: L2 penalty on the non-intercept coefficients
        significance: Level for the confidence intervals

    Returns:
        Dict with ``beta`` and fit statistics (NaN where degrees of freedom run out)
    """
    n, k = design.shape
    gram = design.T @ design
    if ridge > 0:
        penalty = np.eye(k) * ridge
        penalty[0, 0] = 0.0
        gram = gram + penalty
    if np.linalg.matrix_rank(gram) < k:
        raise DegenerateFitError("Design matrix is rank deficient")

    beta = np.linalg.solve(gram, design.T @ y)
    residuals = y - design @ beta
    sse = float(residuals @ residuals)
    sst = float(((y - y.mean()) ** 2).sum())
    dof = n - k

    r2 = 1 - sse / sst if sst > 0 else float("nan")
    adjusted = 1 - (1 - r2) * (n - 1) / dof if dof > 0 else float("nan")
    aic = n * np.log(sse / n) + 2 * k if sse > 0 else -np.inf
    bic = n * np.log(sse / n) + k * np.log(n) if sse > 0 else -np.inf

    nan = np.full(k, np.nan)
    f_stat = p_model = float("nan")
    se, t, p, lower, upper = nan, nan, nan, nan, nan
    if dof > 0:
        sigma2 = sse / dof
        se = np.sqrt(np.clip(np.diag(sigma2 * np.linalg.inv(gram)), 0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            t = beta / se
        p = 2 * stats.t.sf(np.abs(t), dof)
        margin = stats.t.ppf(1 - significance / 2, dof) * se
        lower, upper = beta - margin, beta + margin
        if k > 1 and sse > 0:
            f_stat = ((sst - sse) / (k - 1)) / sigma2
            p_model = float(stats.f.sf(f_stat, k - 1, dof))

    return {
        "beta": beta, "se": se, "t": t, "p": p, "lower": lower, "upper": upper,
        "n": n, "sse": sse, "r2": r2, "adjusted_r2": adjusted, "aic": float(aic), "bic": float(bic),
        "f": float(f_stat), "p_model": p_model,
    }


class _LeastSquares(Model):
    """Shared machinery for linear models over (possibly expanded) numeric terms."""

    tasks = (False,)
    numeric_only = True

    @classmethod
    def minimum_subjects(cls, n_features: int) -> int:
        return n_features + 1

    def _powers(self, X: np.ndarray) -> np.ndarray:
        return np.eye(X.shape[1], dtype=int)

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        X, y = _complete_cases(self, subjects, outcomes)
        self._check_count(len(y))
        self.powers = self._powers(X)
        self._check_count(len(y), required=len(self.powers) + 1)
        _check_variance(self, X)

        fit = ordinary_least_squares(_expand(X, self.powers), y,
                                     ridge=self.hyperparameters.get("ridge", 0.0),
                                     significance=config.significance)
        self.beta = fit["beta"]
        self.statistics = {key: fit[key] for key in ("n", "sse", "r2", "adjusted_r2", "aic", "bic", "f")}
        self.statistics["p"] = fit["p_model"]
        self.coefficients = {
            name: {"coefficient": float(fit["beta"][i]), "se": float(fit["se"][i]), "t": float(fit["t"][i]),
                   "p": float(fit["p"][i]), "lower": float(fit["lower"][i]), "upper": float(fit["upper"][i])}
            for i, name in enumerate(self.terms)
        }

    @property
    def terms(self) -> List[str]:
        return ["(intercept)"] + [_term_name(self.feature_paths, power) for power in self.powers]

    @property
    def r2(self) -> float:
        return self.statistics["r2"]

    @property
    def aic(self) -> float:
        return self.statistics["aic"]

    def _estimate_row(self, row: Tuple[Any, ...]):
        if any(value is None for value in row):
            return None
        x = np.asarray(row, dtype=float)[None, :]
        return float((_expand(x, self.powers) @ self.beta)[0])

    def _export_parameters(self) -> Dict[str, Any]:
        return {
            "powers": self.powers,
            "beta": self.beta,
            "statistics": self.statistics,
            "coefficients": self.coefficients,
        }

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.powers = np.asarray(parameters["powers"], dtype=int).reshape(-1, len(self.features))
        self.beta = np.asarray(parameters["beta"], dtype=float)
        self.statistics = dict(parameters.get("statistics", {}))
        self.coefficients = dict(parameters.get("coefficients", {}))


@register_model
class Linear(_LeastSquares):
    """Multiple linear regression (ordinary least squares, optional ridge)."""

    kind = "linear"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        return {"ridge": 0.0}


@register_model
class Polynomial(_LeastSquares):
    """Polynomial regression: every product of features up to ``degree``."""

    kind = "polynomial"

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        return {"degree": 2, "ridge": 0.0}

    def _powers(self, X: np.ndarray) -> np.ndarray:
        degree = self.hyperparameters["degree"]
        require(degree >= 1, f"degree must be >= 1, got {degree}")
        return PolynomialFeatures(degree=degree, include_bias=False).fit(X).powers_


def _deviance(design: np.ndarray, y: np.ndarray, beta: np.ndarray) -> float:
    eta = design @ beta
    return float(2 * np.sum(np.logaddexp(0, eta) - y * eta))


@register_model
class Logistic(Model):
    """Binary logistic regression; the event is every target path being truthy."""

    kind = "logistic"
    tasks = (True,)
    default_classification = True
    event_target = True
    numeric_only = True

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        return {"threshold": 0.5, "iterations": 100, "tolerance": 1e-8}

    @classmethod
    def minimum_subjects(cls, n_features: int) -> int:
        return n_features + 1

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        X, y = _complete_cases(self, subjects, outcomes)
        self._check_count(len(y))
        if len(np.unique(y)) < 2:
            raise DegenerateFitError("Logistic regression needs both events and non-events")
        _check_variance(self, X)

        design = np.column_stack([np.ones(len(X)), X])
        beta, hessian, converged = self._newton(design, y)
        if not converged:
            logger.warning(f"{self!r}: Newton iterations did not converge (possible separation)")

        deviance = _deviance(design, y, beta)
        prior = y.mean()
        null_deviance = float(-2 * np.sum(y * np.log(prior) + (1 - y) * np.log(1 - prior)))
        k = design.shape[1]
        chi2 = null_deviance - deviance

        covariance = np.linalg.pinv(hessian)
        se = np.sqrt(np.clip(np.diag(covariance), 0, None))
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            z = beta / se
            p = 2 * stats.norm.sf(np.abs(z))
            margin = config.z * se
            odds = np.exp(beta)
            lower, upper = np.exp(beta - margin), np.exp(beta + margin)

        self.beta = beta
        self.statistics = {
            "n": int(len(y)),
            "deviance": deviance,
            "null_deviance": null_deviance,
            "r2": 1 - deviance / null_deviance if null_deviance > 0 else float("nan"),
            "aic": deviance + 2 * k,
            "chi2": chi2,
            "p": float(stats.chi2.sf(chi2, k - 1)),
            "converged": bool(converged),
        }
        self.coefficients = {
            name: {"coefficient": float(beta[i]), "odds_ratio": float(odds[i]), "se": float(se[i]),
                   "z": float(z[i]), "p": float(p[i]), "lower": float(lower[i]), "upper": float(upper[i])}
            for i, name in enumerate(["(intercept)"] + self.feature_paths)
        }

    def _newton(self, design: np.ndarray, y: np.ndarray):
        """Newton-Raphson with step halving on the deviance."""
        iterations = self.hyperparameters["iterations"]
        tolerance = self.hyperparameters["tolerance"]
        beta = np.zeros(design.shape[1])
        deviance = _deviance(design, y, beta)
        converged = False

        with np.errstate(over="ignore", invalid="ignore"):
            for _ in range(iterations):
                p = expit(design @ beta)
                gradient = design.T @ (y - p)
                hessian = design.T @ (design * (p * (1 - p))[:, None])
                step = np.linalg.pinv(hessian) @ gradient

                scale = 1.0
                candidate = beta + step
                candidate_deviance = _deviance(design, y, candidate)
                while not (np.isfinite(candidate_deviance) and candidate_deviance <= deviance) and scale > 1e-10:
                    scale /= 2
                    candidate = beta + scale * step
                    candidate_deviance = _deviance(design, y, candidate)

                if not (np.isfinite(candidate_deviance) and candidate_deviance <= deviance):
                    converged = True
                    break
                improvement = deviance - candidate_deviance
                beta, deviance = candidate, candidate_deviance
                if improvement < tolerance * (deviance + tolerance):
                    converged = True
                    break

        p = expit(design @ beta)
        hessian = design.T @ (design * (p * (1 - p))[:, None])
        return beta, hessian, converged

    @property
    def r2(self) -> float:
        return self.statistics["r2"]

    @property
    def aic(self) -> float:
        return self.statistics["aic"]

    def probability(self, subject: Any):
        """Probability of the event, ``None`` if a feature is missing."""
        value = self._estimate_row(self.row(subject))
        return None if value is None else float(value[1])

    def _estimate_row(self, row: Tuple[Any, ...]):
        if any(value is None for value in row):
            return None
        p = float(expit(self.beta[0] + np.dot(self.beta[1:], np.asarray(row, dtype=float))))
        return np.array([1 - p, p])

    def _label(self, probabilities: np.ndarray) -> Any:
        return 1 if probabilities[1] >= self.hyperparameters["threshold"] else 0

    def _export_parameters(self) -> Dict[str, Any]:
        return {"beta": self.beta, "statistics": self.statistics, "coefficients": self.coefficients}

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.beta = np.asarray(parameters["beta"], dtype=float)
        self.statistics = dict(parameters.get("statistics", {}))
        self.coefficients = dict(parameters.get("coefficients", {}))
