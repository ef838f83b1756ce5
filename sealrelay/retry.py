"""
Bounded polling and retry helpers.

Every wait on external state in the relayer goes through ``poll_until``
(fixed interval, hard deadline) and every ledger round-trip that may fail
transiently goes through ``call_with_backoff``.
"""

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional, Type, TypeVar

from .constants import LEDGER_BACKOFF_BASE, LEDGER_BACKOFF_MAX, LEDGER_MAX_ATTEMPTS
from .exceptions import LedgerCallFailed, PollTimeout
from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    interval: float,
    timeout: float,
    label: str,
    timeout_exc: Type[PollTimeout] = PollTimeout,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``probe`` every ``interval`` seconds until it returns something
    other than None.

    A probe that raises LedgerCallFailed counts as a missed attempt and is
    logged at DEBUG. Any other exception propagates.

    Raises:
        timeout_exc: once ``timeout`` seconds have elapsed
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await probe()
        except LedgerCallFailed as e:
            if e.fatal:
                raise
            logger.debug(f"[{label}] probe {attempt} failed: {e}")
            result = None
        if result is not None:
            return result

        remaining = deadline - clock()
        if remaining <= 0:
            raise timeout_exc(
                f"{label} not ready after {timeout:.1f}s ({attempt} probes)",
                label=label,
                deadline=deadline,
            )
        await asyncio.sleep(min(interval, remaining))


def backoff_delay(attempt: int, base: float = LEDGER_BACKOFF_BASE, cap: float = LEDGER_BACKOFF_MAX) -> float:
    """Exponential delay with jitter for the given 1-based attempt."""
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay * (0.5 + random.random() / 2)


async def call_with_backoff(
    call: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_attempts: int = LEDGER_MAX_ATTEMPTS,
    base_delay: float = LEDGER_BACKOFF_BASE,
    max_delay: float = LEDGER_BACKOFF_MAX,
) -> T:
    """
    Retry ``call`` on LedgerCallFailed with bounded exponential backoff.
    An error already marked exhausted is raised at once.

    Raises:
        LedgerCallFailed: with ``exhausted=True`` once the ceiling is reached
    """
    last_error: Optional[LedgerCallFailed] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except LedgerCallFailed as e:
            if e.exhausted:
                raise
            last_error = e
            if attempt == max_attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"[{label}] attempt {attempt}/{max_attempts} failed: {e}; retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise LedgerCallFailed(
        f"{label} failed after {max_attempts} attempts: {last_error}",
        ledger=getattr(last_error, "ledger", ""),
        attempts=max_attempts,
        exhausted=True,
    )
