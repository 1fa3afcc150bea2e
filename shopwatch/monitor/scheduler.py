"""Monitor scheduler — drives the reconciliation engine on timers.

Three kinds of tasks on the asyncio loop:
- the reconcile loop, at the configured check interval (re-read every cycle)
- the stall watchdog, which checks the heartbeat without probing
- one-shot recovery checks the engine requests after an unresolved failure

Engine calls are blocking, so each runs in a thread pool.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from functools import partial
from typing import Any

from shopwatch.monitor.engine import STALL_THRESHOLD, ReconciliationEngine
from shopwatch.monitor.models import IncidentKind, MonitorConfig

logger = logging.getLogger(__name__)

# Slack on top of the check interval before a missed cycle counts as a stall
WATCHDOG_GRACE = timedelta(minutes=2)


def watchdog_threshold(interval_minutes: int) -> timedelta:
    """Gap after which the watchdog reports a stall for the given cadence."""
    return max(STALL_THRESHOLD, timedelta(minutes=interval_minutes) + WATCHDOG_GRACE)


class MonitorScheduler:
    """Schedules reconcile cycles, recovery checks and the stall watchdog.

    Lifecycle:
        scheduler = MonitorScheduler(engine, config=lambda: load_config(store))
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        config: Callable[[], MonitorConfig],
        watchdog_interval: int = 60,
        on_cycle: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        self.engine = engine
        self._config = config
        self.watchdog_interval = watchdog_interval
        self.on_cycle = on_cycle
        self._executor = ThreadPoolExecutor(max_workers=2)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._recovery_tasks: set[asyncio.Task[None]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the reconcile loop and the stall watchdog."""
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self.engine.schedule_recovery = self.schedule_recovery
        interval = self._config().check_interval_minutes
        try:
            self.engine.incidents.append(
                IncidentKind.INFO, f"Monitor schedule registered (every {interval} min)."
            )
        except Exception:
            logger.exception("Could not record schedule registration")

        self._tasks.append(asyncio.create_task(self._reconcile_loop(), name="shopwatch-reconcile"))
        self._tasks.append(asyncio.create_task(self._watchdog_loop(), name="shopwatch-watchdog"))
        logger.info(
            "Monitor scheduler started (interval=%dm, watchdog=%ds)",
            interval, self.watchdog_interval,
        )

    async def stop(self) -> None:
        """Stop all loops and pending recovery checks."""
        self._running = False
        tasks = [*self._tasks, *self._recovery_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._recovery_tasks.clear()
        self.engine.schedule_recovery = None
        self.engine.cancel_recovery_check()
        self._executor.shutdown(wait=False)
        self._executor = ThreadPoolExecutor(max_workers=2)
        logger.info("Monitor scheduler stopped")

    async def run_now(self) -> dict[str, Any]:
        """Run one cycle immediately (manual trigger); returns the dashboard snapshot."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self.engine.reconcile)
        snapshot = self.engine.snapshot()
        self._emit(snapshot)
        return snapshot

    def schedule_recovery(self, delay: float) -> None:
        """Engine hook; may be called from a worker thread."""
        if self._loop is None or not self._running:
            raise RuntimeError("scheduler not running")
        self._loop.call_soon_threadsafe(self._spawn_recovery, delay)

    # -- internals -------------------------------------------------------------

    def _spawn_recovery(self, delay: float) -> None:
        task = asyncio.create_task(self._recovery_once(delay), name="shopwatch-recovery")
        self._recovery_tasks.add(task)
        task.add_done_callback(self._recovery_tasks.discard)

    async def _recovery_once(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self.engine.run_recovery_check)
            self._emit(self.engine.snapshot())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Recovery check error")

    async def _reconcile_loop(self) -> None:
        """Persistent loop; runs immediately on start, then at the interval."""
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                await loop.run_in_executor(self._executor, self.engine.reconcile)
                self._emit(self.engine.snapshot())
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconcile cycle error")

            try:
                await asyncio.sleep(self._config().check_interval_minutes * 60)
            except asyncio.CancelledError:
                break

    async def _watchdog_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                await asyncio.sleep(self.watchdog_interval)
                if not self._running:
                    break
                threshold = watchdog_threshold(self._config().check_interval_minutes)
                await loop.run_in_executor(
                    self._executor, partial(self.engine.check_stall, threshold),
                )
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Stall watchdog error")

    def _emit(self, snapshot: dict[str, Any]) -> None:
        if self.on_cycle:
            try:
                self.on_cycle(snapshot)
            except Exception:
                logger.exception("Cycle callback error")
