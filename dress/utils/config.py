"""
Runtime configuration threaded through every fit and evaluation entry point.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml
from scipy import stats

from .errors import InvalidConfigurationError

SCHEDULERS = ("threads", "processes", "sync", "synchronous", "single-threaded")


@dataclass(frozen=True)
class RuntimeConfig:
    """Seed, significance level and parallel scheduler for one call tree.

    A ``None`` seed means "freshly random": ``resolved()`` draws entropy once so
    that the model built from it can still record the seed it actually used.
    """

    seed: Optional[int] = None
    significance: float = 0.05
    precision: int = 3
    scheduler: str = "threads"
    num_workers: Optional[int] = None

    def __post_init__(self):
        if not 0 < self.significance < 1:
            raise InvalidConfigurationError(f"significance must be in (0, 1), got {self.significance}")
        if self.scheduler not in SCHEDULERS:
            raise InvalidConfigurationError(f"Unknown scheduler: {self.scheduler}")

    def resolved(self) -> "RuntimeConfig":
        """Return a copy whose seed is fixed."""
        if self.seed is not None:
            return self
        return replace(self, seed=int(np.random.SeedSequence().generate_state(1)[0]))

    def rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    def spawn(self, n: int) -> List["RuntimeConfig"]:
        """Independent child configurations, one per parallel unit."""
        base = self.resolved()
        children = np.random.SeedSequence(base.seed).spawn(n)
        return [replace(base, seed=int(child.generate_state(1)[0])) for child in children]

    @property
    def z(self) -> float:
        """Two-sided critical value of the standard normal at ``significance``."""
        return float(stats.norm.ppf(1 - self.significance / 2))

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RuntimeConfig":
        runtime = config.get("runtime", {}) or {}
        return cls(
            seed=config.get("random_seed", runtime.get("seed")),
            significance=float(runtime.get("significance", 0.05)),
            precision=int(runtime.get("precision", 3)),
            scheduler=runtime.get("scheduler", "threads"),
            num_workers=runtime.get("num_workers"),
        )


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML configuration file."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
