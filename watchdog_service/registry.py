import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from loguru import logger

from watchdog_service.db import DEFINITIONS, KeyValueStore
from watchdog_service.errors import StaleKeyError
from watchdog_service.models import (
    DEFAULTS,
    CheckDefaults,
    CheckDefinition,
    ProbeResult,
    ScheduleEntry,
    utcnow,
)
from watchdog_service.schedule import ScheduleIndex


class CheckRegistry:
    """Health check definitions and their latest results, keyed by service partition.

    The registry is the single source of truth for what is monitored. Writes
    go through one lock so a registration and a result write-back for the
    same key never lose each other's changes.
    """

    def __init__(
        self,
        store: KeyValueStore,
        schedule: ScheduleIndex,
        defaults: CheckDefaults = DEFAULTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.schedule = schedule
        self.defaults = defaults
        self.clock = clock
        # In-memory cache of registered keys, backs the check count gauge
        self.known_keys: Set[str] = set()
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        """Load registered keys into memory"""
        records = await self.store.scan(DEFINITIONS)
        self.known_keys = set(records)
        logger.info(f"Loaded {len(self.known_keys)} known health checks")
        return len(self.known_keys)

    def count(self) -> int:
        return len(self.known_keys)

    async def register(
        self,
        definition: Union[CheckDefinition, Dict[str, Any]],
        reset_history: bool = False,
    ) -> CheckDefinition:
        """Add or replace a health check.

        Raises ValidationError before touching storage. A re-registration keeps
        the previous result fields unless reset_history is set; only a new key
        gets an initial schedule entry, due immediately.
        """
        if isinstance(definition, CheckDefinition):
            definition = definition.model_dump()
        check = CheckDefinition.parse(definition, self.defaults)

        async with self._lock:
            existing = await self.get(check.key)
            if existing is not None and not reset_history:
                check = check.with_history_of(existing)
            await self.store.put(DEFINITIONS, check.key, check.to_document())
            self.known_keys.add(check.key)

            if existing is None:
                logger.info(f"New health check registered: {check.key} ({check.name})")
                await self.schedule.insert(ScheduleEntry(due_at=self.clock(), key=check.key))
            else:
                logger.info(f"Health check updated: {check.key} ({check.name})")

        return check

    async def list(
        self,
        application: Optional[str] = None,
        service: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> List[CheckDefinition]:
        """Snapshot of the definitions matching every given filter"""
        records = await self.store.scan(DEFINITIONS)
        checks = [CheckDefinition.from_document(record) for record in records.values()]
        return sorted(
            (check for check in checks if check.matches(application, service, partition)),
            key=lambda check: check.key,
        )

    async def get(self, key: str) -> Optional[CheckDefinition]:
        record = await self.store.get(DEFINITIONS, key)
        return CheckDefinition.from_document(record) if record else None

    async def require(self, key: str) -> CheckDefinition:
        check = await self.get(key)
        if check is None:
            raise StaleKeyError(key)
        return check

    async def update(self, key: str, result: ProbeResult) -> Optional[CheckDefinition]:
        """Record a probe result. A key removed meanwhile is logged and skipped"""
        async with self._lock:
            current = await self.get(key)
            if current is None:
                logger.warning(f"Discarding result for removed health check {key}")
                return None
            updated = current.apply_result(result)
            await self.store.put(DEFINITIONS, key, updated.to_document())
        return updated

    async def remove(self, key: str) -> bool:
        """Deregister a health check and drop its pending execution"""
        async with self._lock:
            existed = await self.get(key) is not None
            await self.store.delete(DEFINITIONS, key)
            await self.schedule.remove_by_key(key)
            self.known_keys.discard(key)
        if existed:
            logger.info(f"Health check removed: {key}")
        return existed
