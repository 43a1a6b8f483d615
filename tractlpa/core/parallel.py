"""
Parallel Runner
===============

Fans independent fits (restarts, candidates) out over joblib workers and
waits for all of them before any reduction happens.

Workers receive read-only inputs and return new objects; there is no shared
writable state, so the result list is the same for any n_jobs. joblib keeps
results in task order.
"""

import logging
from typing import Any, Callable, List, Sequence, Tuple

from joblib import Parallel, delayed


logger = logging.getLogger(__name__)


def run_tasks(
    func: Callable[..., Any],
    tasks: Sequence[Tuple[Any, ...]],
    n_jobs: int = 1,
    verbose: int = 0,
) -> List[Any]:
    """
    Run func(*task) for every task and return the results in task order.

    Args:
        func: Top-level (picklable) function
        tasks: Argument tuples
        n_jobs: joblib worker count (1 = run inline, -1 = all cores)
        verbose: joblib verbosity

    Returns:
        List of results, same order as tasks
    """
    if n_jobs == 1 or len(tasks) <= 1:
        return [func(*task) for task in tasks]

    logger.debug("Dispatching %d tasks to %s workers", len(tasks), n_jobs)
    return Parallel(n_jobs=n_jobs, verbose=verbose)(
        delayed(func)(*task) for task in tasks
    )
