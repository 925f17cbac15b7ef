"""Simple utilities for registering health checks with a running watchdog.

Example:
    ```python
    from watchdog_service.client import add_health_check

    # Probe http://orders.local/health every 30 seconds
    add_health_check(
        "orders-health",
        service_uri="http://orders.local/",
        suffix_path="/health",
        frequency=30,
    )
    ```
"""

import os
from typing import Any, Dict, Iterable, List, Optional

import httpx
from loguru import logger


def get_api_url() -> Optional[str]:
    """Get API URL from environment variable"""
    url = os.getenv("WATCHDOG_SERVICE_URL")
    if not url:
        logger.warning("WATCHDOG_SERVICE_URL not set in environment")
    return url


def _require_api_url() -> str:
    api_url = get_api_url()
    if not api_url:
        raise ValueError("WATCHDOG_SERVICE_URL not set")
    return api_url.rstrip("/")


def build_health_check(
    name: str,
    service_uri: str,
    suffix_path: str,
    partition: Optional[str] = None,
    endpoint: Optional[str] = None,
    method: Optional[str] = None,
    content: Optional[str] = None,
    media_type: Optional[str] = None,
    frequency: Optional[float] = None,
    expected_duration: Optional[float] = None,
    maximum_duration: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
    warning_status_codes: Optional[Iterable[int]] = None,
    error_status_codes: Optional[Iterable[int]] = None,
) -> Dict[str, Any]:
    """Build the request body for a health check. Durations are in seconds"""
    request_data = {
        "name": name,
        "serviceName": service_uri,
        "suffixPath": suffix_path,
        "partition": partition,
        "endpoint": endpoint,
        "method": method,
        "content": content,
        "mediaType": media_type,
        "frequency": frequency,
        "expectedDuration": expected_duration,
        "maximumDuration": maximum_duration,
        "headers": headers,
        "warningStatusCodes": sorted(set(warning_status_codes)) if warning_status_codes else None,
        "errorStatusCodes": sorted(set(error_status_codes)) if error_status_codes else None,
    }
    # Remove None values
    return {k: v for k, v in request_data.items() if v is not None}


def add_health_check(name: str, service_uri: str, suffix_path: str, **kwargs: Any) -> Dict[str, Any]:
    """Register a health check with the watchdog.

    Args:
        name: Name of the check, shown in health reports
        service_uri: Absolute uri of the monitored service
        suffix_path: Path (and query) called on the service
        **kwargs: Optional fields accepted by build_health_check

    Returns:
        The stored health check

    Raises:
        httpx.HTTPError: If request fails (400 for an invalid check)
        ValueError: If WATCHDOG_SERVICE_URL is not set
    """
    api_url = _require_api_url()
    request_data = build_health_check(name, service_uri, suffix_path, **kwargs)
    try:
        response = httpx.post(f"{api_url}/healthcheck", json=request_data)
        response.raise_for_status()
        check = response.json()
        logger.info(f"Health check {name} registered as {check.get('key')}")
        return check
    except Exception as e:
        logger.error(f"Failed to register health check {name}: {e}")
        raise


async def aadd_health_check(
    name: str, service_uri: str, suffix_path: str, **kwargs: Any
) -> Dict[str, Any]:
    """Register a health check with the watchdog asynchronously"""
    api_url = _require_api_url()
    request_data = build_health_check(name, service_uri, suffix_path, **kwargs)
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{api_url}/healthcheck", json=request_data)
            response.raise_for_status()
            check = response.json()
            logger.info(f"Health check {name} registered as {check.get('key')}")
            return check
    except Exception as e:
        logger.error(f"Failed to register health check {name}: {e}")
        raise


def get_health_checks(
    application: Optional[str] = None,
    service: Optional[str] = None,
    partition: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """List registered health checks. Filters apply left to right"""
    api_url = _require_api_url()
    path = "/healthcheck"
    for segment in (application, service, partition):
        if not segment:
            break
        path = f"{path}/{segment}"

    response = httpx.get(f"{api_url}{path}")
    response.raise_for_status()
    return response.json()
