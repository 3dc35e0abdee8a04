"""
Injectable time source and the bounded poll-until-stable helper.

Every wait the engine performs goes through a Clock so tests can drive time
without real sleeps.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Hashable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    def monotonic(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by asyncio"""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


@dataclass
class StabilizationResult(Generic[T]):
    """Outcome of poll_until_stable"""

    value: Optional[T]
    stable: bool
    samples: int
    elapsed_s: float


async def poll_until_stable(
    sample: Callable[[], Awaitable[Optional[T]]],
    signature: Callable[[T], Hashable],
    clock: Clock,
    timeout_s: float,
    interval_s: float = 0.25,
    required_matches: int = 2,
    checkpoint: Optional[Callable[[], None]] = None,
) -> StabilizationResult[T]:
    """
    Sample until the signature repeats `required_matches` times in a row.

    Always returns within timeout_s (plus one interval): on timeout the last
    successful sample is returned with stable=False.

    Args:
        sample: Coroutine factory returning the current value or None
        signature: Maps a value to something comparable
        clock: Time source
        timeout_s: Upper bound on the wait
        interval_s: Delay between samples
        required_matches: Consecutive equal signatures needed
        checkpoint: Called after every sleep; raise from it to abort

    Returns:
        StabilizationResult
    """
    start = clock.monotonic()
    last_value: Optional[T] = None
    last_sig = None
    matches = 0
    samples = 0

    while True:
        value = await sample()
        samples += 1

        if value is not None:
            sig = signature(value)
            if last_value is not None and sig == last_sig:
                matches += 1
            else:
                matches = 1
            last_value, last_sig = value, sig

            if matches >= required_matches:
                return StabilizationResult(
                    value, True, samples, clock.monotonic() - start
                )

        if clock.monotonic() - start >= timeout_s:
            logger.debug(
                f"[Stabilizer] Timed out after {samples} samples "
                f"({timeout_s:.2f}s), returning last value"
            )
            return StabilizationResult(
                last_value, False, samples, clock.monotonic() - start
            )

        await clock.sleep(interval_s)
        if checkpoint:
            checkpoint()
