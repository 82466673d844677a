"""Recurring liveness probe for a single connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


class HealthMonitor:
    """Run ``probe`` every ``interval_s`` and call ``on_failure`` on link loss.

    ``on_failure`` fires once, after ``max_failures`` consecutive probes
    returned False or raised. A successful probe resets the counter. Once
    ``stop()`` has been called the callback never fires, even if a probe was
    already in flight.
    """

    def __init__(
        self,
        name: str,
        probe: Probe,
        on_failure: Callable[[], None],
        *,
        interval_s: float,
        max_failures: int = 1,
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self.max_failures = max(1, max_failures)
        self._probe = probe
        self._on_failure = on_failure
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"health:{self.name}"
        )

    def stop(self) -> None:
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _run(self) -> None:
        failures = 0
        while not self._stopped:
            await asyncio.sleep(self.interval_s)
            try:
                alive = await self._probe()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.debug("Health probe for %s raised: %s", self.name, exc)
                alive = False

            if self._stopped:
                return
            if alive:
                failures = 0
                continue

            failures += 1
            if failures < self.max_failures:
                LOGGER.info(
                    "Health probe for %s failed (%d/%d), retrying",
                    self.name,
                    failures,
                    self.max_failures,
                )
                continue

            LOGGER.warning("Health monitor detected link loss for %s", self.name)
            self._stopped = True
            self._on_failure()
            return
