import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import httpx
from loguru import logger

from watchdog_service.db import Settings, KeyValueStore, create_store
from watchdog_service.health import HealthAggregator, HealthReporter, HealthSink, LoggingHealthSink
from watchdog_service.models import AggregateHealth, CheckDefinition, ScheduleEntry, utcnow
from watchdog_service.monitoring import CheckScheduler
from watchdog_service.probe import DefaultEndpointResolver, EndpointResolver, ProbeExecutor
from watchdog_service.registry import CheckRegistry
from watchdog_service.schedule import ScheduleIndex

SELF_CHECK_NAME = "Watchdog Health Check"
SELF_CHECK_SUFFIX_PATH = "healthcheck/health"


class WatchdogService:
    """Owns the health check engine and its collaborators.

    Storage, the outbound HTTP client, endpoint resolution and the health sink
    are passed in; the service only wires them together and runs the
    scheduler and reporter tasks between start() and stop().
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        client: httpx.AsyncClient,
        resolver: Optional[EndpointResolver] = None,
        sink: Optional[HealthSink] = None,
    ):
        self.settings = settings
        self.store = store
        self.client = client
        self.schedule = ScheduleIndex(store)
        self.registry = CheckRegistry(store, self.schedule, settings.check_defaults)
        self.executor = ProbeExecutor(
            client,
            resolver or DefaultEndpointResolver(settings.reverse_proxy_url, settings.static_endpoints),
        )
        self.scheduler = CheckScheduler(
            self.registry, self.schedule, self.executor, settings.max_concurrent_probes
        )
        self.aggregator = HealthAggregator(self.registry)
        self.reporter = HealthReporter(
            self.aggregator,
            sink or LoggingHealthSink(),
            self.scheduler,
            settings.service_name,
            timedelta(seconds=settings.health_report_interval_seconds),
        )
        self.started = False
        self._owns_client = False
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "WatchdogService":
        service = cls(settings, create_store(settings), httpx.AsyncClient())
        service._owns_client = True
        return service

    async def start(self) -> None:
        """Load state and start the background tasks"""
        if self.started:
            return
        await self.registry.load()
        await self.schedule.load()
        await self._schedule_orphans()

        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self.scheduler.run(self._stop), name="watchdog-scheduler"),
            asyncio.create_task(self.reporter.run(self._stop), name="watchdog-health-reporter"),
        ]
        self.started = True
        logger.info(f"Watchdog started with {self.registry.count()} health checks")

        await self.register_self()

    async def stop(self) -> None:
        """Stop scheduling; in-flight probes finish and record their results"""
        if not self.started:
            return
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.started = False
        if self._owns_client:
            await self.client.aclose()
        logger.info("Watchdog stopped")

    async def _schedule_orphans(self) -> None:
        # A definition written just before a crash may have no schedule entry yet
        for key in self.registry.known_keys:
            if key not in self.schedule:
                logger.info(f"Health check {key} had no schedule entry, scheduling now")
                await self.schedule.insert(ScheduleEntry(due_at=utcnow(), key=key))

    async def register_self(self) -> None:
        """Register the watchdog's own health endpoint, if configured"""
        if not self.settings.self_check_service_uri:
            return
        try:
            await self.registry.register(
                {
                    "name": SELF_CHECK_NAME,
                    "serviceName": self.settings.self_check_service_uri,
                    "partition": self.settings.self_check_partition,
                    "suffixPath": SELF_CHECK_SUFFIX_PATH,
                }
            )
        except Exception:
            # The watchdog still works without monitoring itself
            logger.exception("Failed to register watchdog health check")

    # Operations exposed to the API layer

    async def register(
        self, definition: Union[CheckDefinition, Dict[str, Any]], reset_history: bool = False
    ) -> CheckDefinition:
        return await self.registry.register(definition, reset_history=reset_history)

    async def list(
        self,
        application: Optional[str] = None,
        service: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> List[CheckDefinition]:
        return await self.registry.list(application, service, partition)

    async def deregister(self, key: str) -> bool:
        return await self.registry.remove(key)

    async def current_aggregate_health(self) -> AggregateHealth:
        return await self.aggregator.summarize()

    def metrics(self) -> Dict[str, int]:
        return self.aggregator.metrics()
