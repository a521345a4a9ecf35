"""
Parallel execution of independent units (trees, folds, candidates) with dask.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple, Type

import dask

from .config import RuntimeConfig

logger = logging.getLogger(__name__)


def _captured(task: Callable[[], Any], capture: Tuple[Type[BaseException], ...]) -> Callable[[], Any]:
    def run():
        try:
            return task()
        except capture as e:
            return e
    return run


def run_tasks(tasks: Sequence[Callable[[], Any]],
              config: Optional[RuntimeConfig] = None,
              capture: Tuple[Type[BaseException], ...] = ()) -> List[Any]:
    """
    Run zero-argument callables and return their results in order.

    Args:
        tasks: Independent units of work; none may mutate shared state
        config: Supplies the dask scheduler and worker count
        capture: Exception types returned in place of a result instead of raised

    Returns:
        One result (or captured exception) per task
    """
    config = config or RuntimeConfig()
    if capture:
        tasks = [_captured(task, capture) for task in tasks]

    if len(tasks) <= 1 or config.scheduler in ("sync", "synchronous", "single-threaded"):
        return [task() for task in tasks]

    delayed_tasks = [dask.delayed(task, pure=False)() for task in tasks]
    compute_kwargs = {"scheduler": config.scheduler}
    if config.num_workers:
        compute_kwargs["num_workers"] = config.num_workers
    logger.debug(f"Running {len(tasks)} tasks on the '{config.scheduler}' scheduler")
    return list(dask.compute(*delayed_tasks, **compute_kwargs))
