"""
Continuous Drainer
==================

Polls for unprocessed work in a loop. When a poll finds work the next poll
follows after the minimum delay; each idle poll multiplies the delay up to
a ceiling.

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from shared.config import DrainerSettings
from shared.logging import get_logger

logger = get_logger(__name__)

PollFunction = Callable[[], Awaitable[int]]


class AdaptiveBackoff:
    """Delay that resets on work and grows geometrically while idle."""

    def __init__(self, min_delay: float, max_delay: float, multiplier: float) -> None:
        if min_delay <= 0 or max_delay < min_delay:
            raise ValueError("Require 0 < min_delay <= max_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.current = min_delay

    def next(self, found_work: bool) -> float:
        """Delay before the next poll."""
        if found_work:
            self.current = self.min_delay
        else:
            self.current = min(self.current * self.multiplier, self.max_delay)
        return self.current

    def reset(self) -> None:
        self.current = self.min_delay


@dataclass
class DrainerStats:
    cycles: int = 0
    items: int = 0
    idle_cycles: int = 0
    errors: int = 0


class ContinuousDrainer:
    """
    Runs ``poll`` until stopped.

    Args:
        poll: Coroutine returning how many work items it handled
        settings: Delay bounds and multiplier
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        poll: PollFunction,
        settings: DrainerSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.poll = poll
        self.settings = settings or DrainerSettings()
        self.backoff = AdaptiveBackoff(
            self.settings.min_delay_seconds,
            self.settings.max_delay_seconds,
            self.settings.multiplier,
        )
        self.sleep = sleep
        self.stats = DrainerStats()
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self, max_cycles: int | None = None) -> DrainerStats:
        """Poll until ``stop()`` is called or ``max_cycles`` is reached."""
        logger.info("drainer_started", max_cycles=max_cycles)

        while not self._stop.is_set():
            if max_cycles is not None and self.stats.cycles >= max_cycles:
                break
            self.stats.cycles += 1

            try:
                found = await self.poll()
            except Exception as e:
                # One bad cycle must not stop the drainer.
                self.stats.errors += 1
                logger.error("drainer_poll_failed", cycle=self.stats.cycles, error=str(e))
                found = 0

            self.stats.items += found
            if not found:
                self.stats.idle_cycles += 1
            delay = self.backoff.next(found > 0)
            logger.debug("drainer_cycle", cycle=self.stats.cycles, found=found, next_delay=delay)

            if self._stop.is_set() or (max_cycles is not None and self.stats.cycles >= max_cycles):
                break
            await self.sleep(delay)

        logger.info(
            "drainer_stopped",
            cycles=self.stats.cycles,
            items=self.stats.items,
            errors=self.stats.errors,
        )
        return self.stats
