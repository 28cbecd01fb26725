"""
Polling utility every harness wait is built on.

Members report their state only when asked, so convergence is detected by
asking repeatedly: run a predicate, sleep a fixed interval, try again, give up
once the timeout has elapsed.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from .errors import ConvergenceTimeout, TransientObservationError

DEFAULT_TIMEOUT = 10 * 60.0
DEFAULT_INTERVAL = 0.25


async def await_condition(predicate: Callable[[], Any],
                          description: str = "condition",
                          timeout: float = DEFAULT_TIMEOUT,
                          interval: float = DEFAULT_INTERVAL,
                          context: Optional[Callable[[], Dict[str, Any]]] = None) -> Any:
    """
    Wait for a condition to become true, with timeout.

    Args:
        predicate: Sync or async callable returning a truthy value when the
            condition is met. TransientObservationError raised by it counts
            as "not yet"; any other exception propagates immediately.
        description: Description for error messages
        timeout: Maximum time to wait in seconds
        interval: Time between checks in seconds
        context: Optional callable producing diagnostics for the timeout error

    Returns:
        Result of predicate when it becomes truthy

    Raises:
        ConvergenceTimeout: If condition is not met within timeout
    """
    start_time = time.monotonic()
    last_error: Optional[TransientObservationError] = None

    while True:
        try:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result

            if result:
                return result
        except TransientObservationError as e:
            last_error = e

        elapsed = time.monotonic() - start_time
        if elapsed >= timeout:
            break
        await asyncio.sleep(min(interval, timeout - elapsed))

    raise ConvergenceTimeout(
        description,
        time.monotonic() - start_time,
        last_error=last_error,
        context=context() if context is not None else None,
    )
