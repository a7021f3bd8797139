"""
Best-effort side effects.

Some writes (task ledger rows, progress updates) are useful but must never
change what the caller of a generation sees. They go through `best_effort`,
which awaits the operation, logs any failure and returns a fallback value.

Usage:
    await best_effort("ledger.create", ledger.create(task))
    ok = await best_effort("ledger.mark_failed", ledger.mark_failed(task), default=False)
"""

import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(
    operation: str,
    awaitable: Awaitable[T],
    default: Optional[T] = None,
) -> Optional[T]:
    """
    Await `awaitable`, absorbing any Exception.

    Args:
        operation: Name used in the log line
        awaitable: The side effect to run
        default: Returned when the side effect fails

    Returns:
        The awaited result, or `default` on failure
    """
    try:
        return await awaitable
    except Exception as e:
        logger.warning(f"Best-effort {operation} failed: {type(e).__name__}: {e}")
        return default
