"""
Named-operation dispatch onto a dask.distributed client.

Callers submit work by operation name and get a ``distributed.Future`` back,
so a long fit or tuning run can be started and collected later without
blocking a request handler.
"""

import logging
from typing import Any, Callable, Dict, Optional

from dask.distributed import Client, Future

from dress.models.base import MODEL_REGISTRY
from dress.pipeline.importance import permutation_importance
from dress.pipeline.stepwise import backward, eliminate, forward
from dress.pipeline.tuning import tune
from dress.pipeline.validation import cross_validate
from dress.utils.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

# Operations whose first positional argument is a model factory
FACTORY_OPERATIONS = ("cross_validate", "backward", "forward", "eliminate", "tune")


def default_operations() -> Dict[str, Callable[..., Any]]:
    """Every registered model's ``fit`` under its kind, plus the evaluation procedures."""
    operations: Dict[str, Callable[..., Any]] = {kind: cls.fit for kind, cls in MODEL_REGISTRY.items()}
    operations.update({
        "cross_validate": cross_validate,
        "backward": backward,
        "forward": forward,
        "eliminate": eliminate,
        "permutation_importance": permutation_importance,
        "tune": tune,
    })
    return operations


class AsyncDispatcher:
    """Submit registered operations by name to a dask client."""

    def __init__(self, client: Optional[Client] = None, operations: Optional[Dict[str, Callable[..., Any]]] = None):
        self._owns_client = client is None
        self.client = client if client is not None else Client(processes=False, dashboard_address=None)
        self.operations = dict(default_operations() if operations is None else operations)
        logger.info(f"Dispatcher ready with {len(self.operations)} operations")

    def register(self, name: str, fn: Callable[..., Any]):
        if not callable(fn):
            raise InvalidConfigurationError(f"Operation '{name}' must be callable")
        self.operations[name] = fn

    def submit(self, name: str, *args, **kwargs) -> Future:
        """Schedule ``operations[name](*args, **kwargs)``; the future resolves once."""
        try:
            fn = self.operations[name]
        except KeyError:
            raise InvalidConfigurationError(
                f"Unknown operation '{name}'. Available: {sorted(self.operations)}"
            ) from None
        future = self.client.submit(fn, *args, pure=False, **kwargs)
        logger.info(f"Submitted {name} as {future.key}")
        return future

    def result(self, future: Future, timeout: Optional[float] = None) -> Any:
        """Value of the future, re-raising the operation's exception."""
        return future.result(timeout=timeout)

    def close(self):
        if self._owns_client:
            self.client.close()
            logger.info("Dispatcher client closed")

    def __enter__(self) -> "AsyncDispatcher":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
