"""Health check scheduling.

This module is responsible for:
1. Waiting until the next health check is due (or a new one is scheduled)
2. Dispatching due checks to the probe executor, at most one per key at a time
3. Recording results and scheduling the next execution
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from watchdog_service.errors import StaleKeyError, StorageError
from watchdog_service.models import CheckDefinition, HealthState, ProbeResult, ScheduleEntry, utcnow
from watchdog_service.probe import ProbeExecutor
from watchdog_service.registry import CheckRegistry
from watchdog_service.schedule import ScheduleIndex

# Retry delay when a check could not be loaded from storage
STORAGE_RETRY_INTERVAL = timedelta(seconds=30)


class CheckScheduler:
    """Runs registered health checks at their configured frequency.

    One coordinating loop decides what runs; probes run as tasks bounded by a
    semaphore. A check is never dispatched while a previous execution is in
    flight, an entry coming due in the meantime is held back until it ends.
    The next execution is due one frequency after the previous one completed.
    """

    def __init__(
        self,
        registry: CheckRegistry,
        schedule: ScheduleIndex,
        executor: ProbeExecutor,
        max_concurrency: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.schedule = schedule
        self.executor = executor
        self.clock = clock
        self.running = False
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._deferred: Dict[str, ScheduleEntry] = {}

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def run(self, stop: asyncio.Event) -> None:
        """Schedule checks until stop is set, then wait for in-flight probes"""
        self.running = True
        logger.info("Health check scheduler started")
        try:
            while not stop.is_set():
                self.schedule.changed.clear()
                try:
                    self.tick()
                except Exception:
                    logger.exception("Error in health check scheduler")
                await self._wait(stop)
        finally:
            if self._in_flight:
                logger.info(f"Waiting for {len(self._in_flight)} in-flight health checks")
            await self.drain()
            self.running = False
            logger.info("Health check scheduler stopped")

    def tick(self) -> List[asyncio.Task]:
        """Dispatch every due check. Returns the probe tasks started"""
        tasks = []
        for entry in self.schedule.pop_due(self.clock()):
            if entry.key in self._in_flight:
                logger.debug(f"Health check {entry.key} still running, deferring")
                self._deferred[entry.key] = entry
                continue
            task = asyncio.create_task(self._run(entry), name=f"probe-{entry.key}")
            self._in_flight[entry.key] = task
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait until no probe is in flight"""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def _wait(self, stop: asyncio.Event) -> None:
        next_due = self.schedule.next_due()
        timeout = None
        if next_due is not None:
            timeout = max(0.0, (next_due - self.clock()).total_seconds())

        waiters = [
            asyncio.ensure_future(stop.wait()),
            asyncio.ensure_future(self.schedule.changed.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _run(self, entry: ScheduleEntry) -> None:
        key = entry.key
        try:
            async with self._semaphore:
                definition = await self.registry.require(key)
                result = await self.executor.execute(definition)
            await self._reconcile(definition, result)
        except StaleKeyError as e:
            logger.warning(f"{e}, discarding scheduled execution")
            await self._forget(key)
        except StorageError as e:
            logger.error(f"Storage error running health check {key}, retrying later: {e}")
            await self._insert(ScheduleEntry(due_at=self.clock() + STORAGE_RETRY_INTERVAL, key=key))
        except Exception:
            logger.exception(f"Health check error: {key}")
            await self._insert(ScheduleEntry(due_at=self.clock() + STORAGE_RETRY_INTERVAL, key=key))
        finally:
            self._in_flight.pop(key, None)
            deferred = self._deferred.pop(key, None)
            if deferred is not None:
                await self._insert(deferred)

    async def _reconcile(self, definition: CheckDefinition, result: ProbeResult) -> None:
        key = definition.key
        try:
            updated: Optional[CheckDefinition] = await self.registry.update(key, result)
        except StorageError as e:
            # The result is recomputed by the next probe anyway
            logger.error(f"Failed to record result for {key}, retrying next run: {e}")
            updated = definition.apply_result(result)
        if updated is None:
            return

        if result.classification != HealthState.OK:
            logger.info(
                f"Health check {definition.name} ({key}) is {result.classification.value}: "
                f"{result.message} (failures: {updated.failure_count})"
            )
        await self._insert(ScheduleEntry(due_at=self.clock() + updated.frequency, key=key))

    async def _insert(self, entry: ScheduleEntry) -> None:
        try:
            await self.schedule.insert(entry)
        except StorageError as e:
            # The entry is kept in memory, only persistence failed
            logger.error(f"Failed to persist schedule for {entry.key}: {e}")

    async def _forget(self, key: str) -> None:
        try:
            await self.schedule.remove_by_key(key)
        except StorageError as e:
            logger.error(f"Failed to remove schedule for {key}: {e}")
