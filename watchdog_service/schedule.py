"""Time-ordered index of pending health check executions.

A heap answers "what is due" and "when is the next wake-up" without scanning
every definition. Each key has at most one live entry; entries replaced or
removed stay in the heap as stale tuples and are skipped when popped.

Persisted records are keyed by check key. Popping an entry only drops it from
memory, its record is overwritten by the successor once the probe completes,
so an execution interrupted by a crash is replayed on the next start.
"""

import asyncio
import heapq
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger

from watchdog_service.db import SCHEDULE, KeyValueStore
from watchdog_service.models import ScheduleEntry


class ScheduleIndex:
    def __init__(self, store: KeyValueStore):
        self.store = store
        self._heap: List[Tuple[datetime, str]] = []
        self._live: Dict[str, datetime] = {}
        # Set whenever an entry is inserted so a sleeping loop can recompute its wait
        self.changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, key: str) -> bool:
        return key in self._live

    async def load(self) -> int:
        """Rebuild the index from storage. Returns the number of entries loaded"""
        records = await self.store.scan(SCHEDULE)
        self._heap.clear()
        self._live.clear()
        for record in records.values():
            self._push(ScheduleEntry.from_document(record))
        self.changed.set()
        logger.info(f"Loaded {len(self._live)} scheduled health checks")
        return len(self._live)

    def _push(self, entry: ScheduleEntry) -> None:
        self._live[entry.key] = entry.due_at
        heapq.heappush(self._heap, entry.sort_key)

    def _prune(self) -> None:
        while self._heap:
            due_at, key = self._heap[0]
            if self._live.get(key) == due_at:
                return
            heapq.heappop(self._heap)

    async def insert(self, entry: ScheduleEntry) -> None:
        """Add a pending execution, replacing any entry already held for the key"""
        self._push(entry)
        self.changed.set()
        await self.store.put(SCHEDULE, entry.key, entry.to_document())

    def pop_due(self, now: datetime) -> List[ScheduleEntry]:
        """Remove and return every entry due at or before now, earliest first"""
        due = []
        self._prune()
        while self._heap and self._heap[0][0] <= now:
            due_at, key = heapq.heappop(self._heap)
            if self._live.get(key) == due_at:
                del self._live[key]
                due.append(ScheduleEntry(due_at=due_at, key=key))
            self._prune()
        return due

    async def remove_by_key(self, key: str) -> bool:
        """Drop the pending entry for a key. Returns True if one was held"""
        removed = self._live.pop(key, None) is not None
        await self.store.delete(SCHEDULE, key)
        return removed

    def get(self, key: str) -> Optional[ScheduleEntry]:
        due_at = self._live.get(key)
        return ScheduleEntry(due_at=due_at, key=key) if due_at else None

    def next_due(self) -> Optional[datetime]:
        self._prune()
        return self._heap[0][0] if self._heap else None
