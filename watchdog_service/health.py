"""Aggregate health of the monitored checks and of the watchdog itself.

The aggregator folds the latest result of every registered check into one
worst-case state. The reporter pushes that state, together with the
watchdog's own health, to a health sink at a fixed interval.
"""

import asyncio
from datetime import timedelta
from typing import Dict, Protocol

from loguru import logger

from watchdog_service.models import AggregateHealth, CheckDefinition, HealthState, worst_state
from watchdog_service.monitoring import CheckScheduler
from watchdog_service.probe import classify
from watchdog_service.registry import CheckRegistry

# Metric and report names expected by the hosting layer
HEALTH_CHECK_COUNT_METRIC = "HealthCheckCount"
WATCHDOG_HEALTH_METRIC = "WatchdogServiceHealth"
OPERATIONS_HEALTH_METRIC = "HealthCheckOperations"

# Added to the report interval so a report stays valid until the next one lands
REPORT_TTL_GRACE = timedelta(seconds=30)


def check_state(check: CheckDefinition) -> HealthState:
    """Current state of one check, derived from its latest result"""
    if check.last_attempt is None:
        return HealthState.UNKNOWN
    return classify(check, check.result_code, check.duration)


class HealthAggregator:
    def __init__(self, registry: CheckRegistry):
        self.registry = registry

    async def summarize(self) -> AggregateHealth:
        """Worst state across all checks, describing every check that is not Ok"""
        state = HealthState.OK
        lines = []
        for check in await self.registry.list():
            current = check_state(check)
            state = worst_state(state, current)
            if current != HealthState.OK:
                lines.append(
                    f"{check.name} ({check.key}) is {current.value}: "
                    f"result {check.result_code}, failures {check.failure_count}"
                )
        return AggregateHealth(state=state, description="\n".join(lines))

    def metrics(self) -> Dict[str, int]:
        return {HEALTH_CHECK_COUNT_METRIC: self.registry.count()}


class HealthSink(Protocol):
    """Destination of health reports, e.g. the cluster health manager"""

    async def report(
        self,
        target_name: str,
        metric_name: str,
        state: HealthState,
        ttl: timedelta,
        description: str,
    ) -> None: ...


class LoggingHealthSink:
    """Writes health reports to the log"""

    async def report(
        self,
        target_name: str,
        metric_name: str,
        state: HealthState,
        ttl: timedelta,
        description: str,
    ) -> None:
        message = f"Health report {target_name}/{metric_name}: {state.value} (ttl {ttl})"
        if description:
            message = f"{message}\n{description}"
        if state == HealthState.OK:
            logger.info(message)
        else:
            logger.warning(message)


class HealthReporter:
    """Periodically reports the watchdog's health and the aggregate check health"""

    def __init__(
        self,
        aggregator: HealthAggregator,
        sink: HealthSink,
        scheduler: CheckScheduler,
        service_name: str,
        interval: timedelta = timedelta(seconds=30),
    ):
        self.aggregator = aggregator
        self.sink = sink
        self.scheduler = scheduler
        self.service_name = service_name
        self.interval = interval

    @property
    def ttl(self) -> timedelta:
        return self.interval + REPORT_TTL_GRACE

    def watchdog_health(self) -> AggregateHealth:
        if not self.scheduler.running:
            return AggregateHealth(state=HealthState.ERROR, description="Health check scheduler is not running.")
        return AggregateHealth(state=HealthState.OK)

    async def report_once(self) -> None:
        reports = [
            (WATCHDOG_HEALTH_METRIC, self.watchdog_health()),
            (OPERATIONS_HEALTH_METRIC, await self.aggregator.summarize()),
        ]
        for metric_name, health in reports:
            try:
                await self.sink.report(
                    self.service_name, metric_name, health.state, self.ttl, health.description
                )
            except Exception:
                logger.exception(f"Failed to report {metric_name}")

    async def run(self, stop: asyncio.Event) -> None:
        """Report at every interval until stop is set"""
        while not stop.is_set():
            try:
                await self.report_once()
            except Exception:
                logger.exception("Error in health reporting task")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval.total_seconds())
            except asyncio.TimeoutError:
                pass
