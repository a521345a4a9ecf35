"""
Multilayer perceptron trained with mini-batch Adam.
"""

import logging
import math
from typing import Any, Callable, Dict, List, Tuple

import numpy as np
from scipy.special import expit, softmax
from sklearn.preprocessing import StandardScaler

from dress.utils.config import RuntimeConfig
from dress.utils.errors import DegenerateFitError
from .base import Model, register_model, require
from .regression import _complete_cases

logger = logging.getLogger(__name__)

ACTIVATORS: Dict[str, Tuple[Callable, Callable]] = {
    "relu": (lambda z: np.maximum(z, 0), lambda z: (z > 0).astype(float)),
    "leaky": (lambda z: np.where(z > 0, z, 0.01 * z), lambda z: np.where(z > 0, 1.0, 0.01)),
    "sigmoid": (expit, lambda z: expit(z) * (1 - expit(z))),
    "tanh": (np.tanh, lambda z: 1 - np.tanh(z) ** 2),
    "linear": (lambda z: z, np.ones_like),
}


@register_model
class MultilayerPerceptron(Model):
    """Fully connected network; softmax output for classification, linear for regression."""

    kind = "multilayer_perceptron"
    numeric_only = True

    @classmethod
    def defaults(cls, classification: bool, n_features: int) -> Dict[str, Any]:
        return {
            "layout": None,
            "activator": "leaky",
            "epoch": 1000,
            "batch": 32,
            "alpha": 0.001,
            "beta1": 0.9,
            "beta2": 0.999,
            "dropout": 0.25,
        }

    def _train(self, subjects: List[Any], outcomes: List[Any], config: RuntimeConfig):
        params = self.hyperparameters
        require(params["activator"] in ACTIVATORS, f"Unknown activator '{params['activator']}'")
        require(0 <= params["dropout"] < 1, "dropout must be in [0, 1)")
        require(params["epoch"] >= 1 and params["batch"] >= 1, "epoch and batch must be >= 1")

        if self.classification:
            index = {cls: i for i, cls in enumerate(self.classes)}
            outcomes = [None if o is None else index[o] for o in outcomes]
        X, y = _complete_cases(self, subjects, outcomes)
        self._check_count(len(y))

        scaler = StandardScaler().fit(X)
        self.mean, self.scale = scaler.mean_, scaler.scale_
        inputs = scaler.transform(X)

        p = X.shape[1]
        if self.classification:
            outputs = len(self.classes)
            targets = np.eye(outputs)[y.astype(int)]
            self.y_mean, self.y_scale = 0.0, 1.0
        else:
            outputs = 1
            self.y_mean = float(y.mean())
            self.y_scale = float(y.std()) or 1.0
            targets = ((y - self.y_mean) / self.y_scale)[:, None]

        layout = params["layout"] or [
            (p + outputs) // 2 + 1,
            int(math.sqrt(p * (outputs + 1))) + 1,
        ]
        self.hyperparameters["layout"] = [int(size) for size in layout]

        rng = config.rng()
        self.weights, self.biases = self._initialize([p] + self.hyperparameters["layout"] + [outputs], rng)
        self._adam(inputs, targets, rng)
        if not all(np.isfinite(w).all() for w in self.weights):
            raise DegenerateFitError("Training diverged to non-finite weights")

    def _initialize(self, sizes: List[int], rng: np.random.Generator):
        gain = 2.0 if self.hyperparameters["activator"] in ("relu", "leaky") else 1.0
        weights, biases = [], []
        for fan_in, fan_out in zip(sizes[:-1], sizes[1:]):
            weights.append(rng.normal(0.0, math.sqrt(gain / fan_in), size=(fan_in, fan_out)))
            biases.append(np.zeros(fan_out))
        return weights, biases

    def _forward(self, inputs: np.ndarray, rng: np.random.Generator = None):
        """Return pre-activations, activations and dropout masks per layer."""
        forward, _ = ACTIVATORS[self.hyperparameters["activator"]]
        dropout = self.hyperparameters["dropout"] if rng is not None else 0.0
        activations, pre_activations, masks = [inputs], [], []
        last = len(self.weights) - 1
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = activations[-1] @ w + b
            pre_activations.append(z)
            if i == last:
                activations.append(softmax(z, axis=1) if self.classification else z)
                break
            a = forward(z)
            if dropout > 0:
                mask = (rng.random(a.shape) >= dropout) / (1 - dropout)
                a = a * mask
                masks.append(mask)
            else:
                masks.append(None)
            activations.append(a)
        return pre_activations, activations, masks

    def _adam(self, inputs: np.ndarray, targets: np.ndarray, rng: np.random.Generator):
        params = self.hyperparameters
        alpha, beta1, beta2, eps = params["alpha"], params["beta1"], params["beta2"], 1e-8
        _, derivative = ACTIVATORS[params["activator"]]
        m = [np.zeros_like(w) for w in self.weights] + [np.zeros_like(b) for b in self.biases]
        v = [np.zeros_like(x) for x in m]
        step = 0
        n = len(inputs)

        for _ in range(params["epoch"]):
            order = rng.permutation(n)
            for start in range(0, n, params["batch"]):
                batch = order[start:start + params["batch"]]
                pre, acts, masks = self._forward(inputs[batch], rng)
                delta = (acts[-1] - targets[batch]) / len(batch)
                grads_w, grads_b = [None] * len(self.weights), [None] * len(self.biases)
                for layer in range(len(self.weights) - 1, -1, -1):
                    grads_w[layer] = acts[layer].T @ delta
                    grads_b[layer] = delta.sum(axis=0)
                    if layer > 0:
                        delta = (delta @ self.weights[layer].T) * derivative(pre[layer - 1])
                        if masks[layer - 1] is not None:
                            delta = delta * masks[layer - 1]

                step += 1
                correction = math.sqrt(1 - beta2 ** step) / (1 - beta1 ** step)
                parameters = self.weights + self.biases
                for i, grad in enumerate(grads_w + grads_b):
                    m[i] = beta1 * m[i] + (1 - beta1) * grad
                    v[i] = beta2 * v[i] + (1 - beta2) * grad * grad
                    parameters[i] -= alpha * correction * m[i] / (np.sqrt(v[i]) + eps)

    def _estimate_row(self, row: Tuple[Any, ...]):
        if any(value is None for value in row):
            return None
        x = ((np.asarray(row, dtype=float) - self.mean) / self.scale)[None, :]
        output = self._forward(x)[1][-1][0]
        if self.classification:
            return output
        return float(output[0] * self.y_scale + self.y_mean)

    def _export_parameters(self) -> Dict[str, Any]:
        return {
            "weights": self.weights,
            "biases": self.biases,
            "mean": self.mean,
            "scale": self.scale,
            "y_mean": self.y_mean,
            "y_scale": self.y_scale,
        }

    def _load_parameters(self, parameters: Dict[str, Any]):
        self.weights = [np.asarray(w, dtype=float) for w in parameters["weights"]]
        self.biases = [np.asarray(b, dtype=float) for b in parameters["biases"]]
        self.mean = np.asarray(parameters["mean"], dtype=float)
        self.scale = np.asarray(parameters["scale"], dtype=float)
        self.y_mean = float(parameters["y_mean"])
        self.y_scale = float(parameters["y_scale"])
