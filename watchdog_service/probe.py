"""Probe executor - performs one bounded HTTP call for a health check.

The executor only talks to the network; it never touches the registry. Every
outcome, including timeouts and connection failures, comes back as a
classified ProbeResult.
"""

import asyncio
import time
from datetime import timedelta
from typing import Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx
from loguru import logger

from watchdog_service.errors import ProbeTransportError
from watchdog_service.models import (
    RESULT_TIMEOUT,
    RESULT_TRANSPORT_ERROR,
    CheckDefinition,
    HealthState,
    ProbeResult,
    utcnow,
)


def classify(definition: CheckDefinition, status_code: int, duration: timedelta) -> HealthState:
    """Classify a probe outcome.

    Precedence: timeouts and transport failures, then the explicit error and
    warning code lists, then the duration budget for 2xx responses. Anything
    else is an error.
    """
    if status_code in (RESULT_TIMEOUT, RESULT_TRANSPORT_ERROR) or status_code < 100:
        return HealthState.ERROR
    if duration > definition.maximum_duration:
        return HealthState.ERROR
    if status_code in definition.error_status_codes:
        return HealthState.ERROR
    if status_code in definition.warning_status_codes:
        return HealthState.WARNING
    if 200 <= status_code < 300:
        if duration <= definition.expected_duration:
            return HealthState.OK
        return HealthState.WARNING
    return HealthState.ERROR


class EndpointResolver(Protocol):
    """Turns a health check's service uri into a base http address"""

    async def resolve(self, definition: CheckDefinition) -> str: ...


class DefaultEndpointResolver:
    """Resolves endpoints from static tables, plain http uris or a reverse proxy.

    Args:
        reverse_proxy_url: Base address of the cluster reverse proxy, used for
            non-http service uris such as fabric:/App/Service
        endpoints: Service uri -> {endpoint name: address} for services whose
            addresses are known up front
    """

    def __init__(
        self,
        reverse_proxy_url: Optional[str] = None,
        endpoints: Optional[Mapping[str, Mapping[str, str]]] = None,
    ):
        self.reverse_proxy_url = reverse_proxy_url
        self.endpoints: Dict[str, Mapping[str, str]] = {
            uri.rstrip("/"): addresses for uri, addresses in (endpoints or {}).items()
        }

    async def resolve(self, definition: CheckDefinition) -> str:
        addresses = self.endpoints.get(definition.service_uri.rstrip("/"))
        if addresses:
            if definition.endpoint:
                if definition.endpoint not in addresses:
                    raise ProbeTransportError(
                        f"Endpoint {definition.endpoint} not found for {definition.service_uri}"
                    )
                return addresses[definition.endpoint]
            if len(addresses) > 1:
                raise ProbeTransportError(
                    f"{definition.service_uri} exposes {len(addresses)} endpoints, "
                    f"an endpoint name is required"
                )
            return next(iter(addresses.values()))

        parsed = urlparse(definition.service_uri)
        if parsed.scheme in ("http", "https"):
            return definition.service_uri

        if not self.reverse_proxy_url:
            raise ProbeTransportError(f"No route to {definition.service_uri}")
        address = f"{self.reverse_proxy_url.rstrip('/')}/{parsed.path.strip('/')}"
        if definition.endpoint:
            address = f"{address}?{urlencode({'ListenerName': definition.endpoint})}"
        return address


def build_url(base: str, suffix_path: str) -> str:
    """Join a base address and a suffix path, keeping any query on the base"""
    parsed = urlparse(base)
    path = f"{parsed.path.rstrip('/')}/{suffix_path.lstrip('/')}"
    url = parsed._replace(path=path, query="").geturl()
    if parsed.query:
        separator = "&" if "?" in suffix_path else "?"
        url = f"{url}{separator}{parsed.query}"
    return url


class ProbeExecutor:
    def __init__(self, client: httpx.AsyncClient, resolver: Optional[EndpointResolver] = None):
        self.client = client
        self.resolver = resolver or DefaultEndpointResolver()

    async def execute(self, definition: CheckDefinition) -> ProbeResult:
        """Run one probe, bounded by the check's maximum duration"""
        started_at = utcnow()
        t0 = time.perf_counter()
        timeout = definition.maximum_duration.total_seconds()
        try:
            url = build_url(await self.resolver.resolve(definition), definition.suffix_path)
            headers = dict(definition.headers)
            if definition.content:
                headers["Content-Type"] = definition.media_type
            response = await asyncio.wait_for(
                self.client.request(
                    definition.method,
                    url,
                    headers=headers,
                    content=definition.content.encode() if definition.content else None,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
            status_code = response.status_code
            message = f"{definition.method} {url} -> {status_code}"
        except (asyncio.TimeoutError, httpx.TimeoutException):
            status_code = RESULT_TIMEOUT
            message = f"Timed out after {timeout}s"
        except ProbeTransportError as e:
            status_code = RESULT_TRANSPORT_ERROR
            message = f"Endpoint resolution failed: {e}"
        except httpx.HTTPError as e:
            status_code = RESULT_TRANSPORT_ERROR
            message = f"Transport error: {type(e).__name__}: {e}"
        except Exception as e:
            # Request could not be built or sent, e.g. a header httpx cannot encode
            logger.warning(f"Probe {definition.key} failed before a response: {type(e).__name__}: {e}")
            status_code = RESULT_TRANSPORT_ERROR
            message = f"Request failed: {type(e).__name__}: {e}"

        duration = timedelta(seconds=time.perf_counter() - t0)
        classification = classify(definition, status_code, duration)
        logger.debug(
            f"Probe {definition.key}: {classification.value} "
            f"({status_code}, {duration.total_seconds() * 1000:.1f}ms) {message}"
        )
        return ProbeResult(
            status_code=status_code,
            duration=duration,
            classification=classification,
            started_at=started_at,
            completed_at=utcnow(),
            message=message,
        )
