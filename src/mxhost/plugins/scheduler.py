"""Host-side timers requested by plugins.

Timers live on the host event loop so a plugin with ``scheduler-access``
can be woken up without running its own clock. Firing a timer only sends a
TIMER_FIRED message; the plugin's callback runs inside its context.
"""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SchedulerLimitError(Exception):
    """A timer request exceeded the configured limits."""


class PluginScheduler:
    """Timers for one plugin instance."""

    def __init__(
        self,
        plugin_id: str,
        fire: Callable[[int], None],
        max_timers: int = 32,
        min_interval_ms: int = 100,
    ):
        """Initialize scheduler.

        Args:
            plugin_id: Owning plugin, for logging
            fire: Called with the timer id each time a timer fires
            max_timers: Most timers a plugin may hold at once
            min_interval_ms: Shortest allowed repeat interval
        """
        self.plugin_id = plugin_id
        self._fire = fire
        self.max_timers = max_timers
        self.min_interval_ms = min_interval_ms
        self._timers: dict[int, asyncio.Task[None]] = {}
        self._next_id = 1

    @property
    def active_count(self) -> int:
        return len(self._timers)

    def _allocate(self) -> int:
        if len(self._timers) >= self.max_timers:
            raise SchedulerLimitError(
                f"Plugin {self.plugin_id} already holds {self.max_timers} timers"
            )
        timer_id = self._next_id
        self._next_id += 1
        return timer_id

    def set_timeout(self, delay_ms: int) -> int:
        """Fire once after ``delay_ms`` milliseconds. Returns the timer id."""
        if delay_ms < 0:
            raise SchedulerLimitError("Timeout delay must not be negative")
        timer_id = self._allocate()
        self._timers[timer_id] = asyncio.create_task(self._run_once(timer_id, delay_ms / 1000))
        return timer_id

    def set_interval(self, interval_ms: int) -> int:
        """Fire every ``interval_ms`` milliseconds until cancelled."""
        if interval_ms < self.min_interval_ms:
            raise SchedulerLimitError(
                f"Interval must be at least {self.min_interval_ms} ms, got {interval_ms}"
            )
        timer_id = self._allocate()
        self._timers[timer_id] = asyncio.create_task(
            self._run_repeating(timer_id, interval_ms / 1000)
        )
        return timer_id

    async def _run_once(self, timer_id: int, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._timers.pop(timer_id, None)
        self._safe_fire(timer_id)

    async def _run_repeating(self, timer_id: int, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._safe_fire(timer_id)

    def _safe_fire(self, timer_id: int) -> None:
        try:
            self._fire(timer_id)
        except Exception as e:
            logger.warning("Plugin %s timer %d could not fire: %s", self.plugin_id, timer_id, e)

    def cancel(self, timer_id: int) -> bool:
        """Cancel a timer. Returns False if it was unknown or already done."""
        task = self._timers.pop(timer_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
