"""
scheduler.py

Concurrency-bounded runner for independent async tasks.

Model:
    Tasks are zero-argument async callables (factories), not coroutines —
    nothing starts until a worker claims it.  min(limit, n) workers share a
    cursor over the task list.  Each worker claims the next index, awaits
    that task, stores the outcome at the same index, and repeats until the
    cursor runs off the end.

    Claiming (read cursor + advance) contains no await, so on a single
    event loop two workers can never claim the same index.

Guarantees:
    • At most `limit` tasks in flight at any instant.
    • results[i] belongs to tasks[i], whatever order they finish in.
    • A task raising an Exception gets NO_RESULT in its slot; siblings and
      other workers carry on.  CancelledError is not swallowed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)


class _NoResult:
    """Placeholder for a task that failed. Distinct from None and from {}."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_RESULT"


NO_RESULT = _NoResult()


async def run_bounded(
    tasks: Sequence[Callable[[], Awaitable[Any]]],
    limit: int,
) -> list:
    """
    Run every task with at most `limit` in flight.

    Args:
        tasks: Zero-argument async callables, in submission order.
        limit: Concurrency cap, must be >= 1.

    Returns:
        List aligned with `tasks`: the task's return value, or NO_RESULT
        if it raised.
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be >= 1, got {limit}.")

    total = len(tasks)
    results: list = [NO_RESULT] * total
    if total == 0:
        return results

    cursor = 0

    async def _worker(worker_id: int) -> None:
        nonlocal cursor
        while cursor < total:
            index = cursor
            cursor += 1
            try:
                results[index] = await tasks[index]()
            except Exception as exc:
                logger.warning(f"Worker {worker_id}: task {index} failed: {exc}")
                results[index] = NO_RESULT

    n_workers = min(limit, total)
    logger.debug(f"Running {total} task(s) on {n_workers} worker(s).")
    await asyncio.gather(*[_worker(w) for w in range(n_workers)])
    return results
