"""Tests for probe classification and execution."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import StatusSequence, make_definition, mock_client
from watchdog_service.errors import ProbeTransportError
from watchdog_service.models import RESULT_TIMEOUT, RESULT_TRANSPORT_ERROR, HealthState
from watchdog_service.probe import DefaultEndpointResolver, ProbeExecutor, build_url, classify

FAST = timedelta(milliseconds=50)
SLOW = timedelta(milliseconds=800)
TOO_SLOW = timedelta(seconds=6)


# ── Classification ───────────────────────────────────────────────────────────


class TestClassify:
    def test_success_within_budget(self) -> None:
        assert classify(make_definition(), 200, FAST) == HealthState.OK
        assert classify(make_definition(), 204, FAST) == HealthState.OK

    def test_success_over_budget(self) -> None:
        assert classify(make_definition(), 200, SLOW) == HealthState.WARNING

    def test_exactly_expected_duration_is_ok(self) -> None:
        assert classify(make_definition(), 200, timedelta(milliseconds=200)) == HealthState.OK

    def test_non_success(self) -> None:
        assert classify(make_definition(), 503, FAST) == HealthState.ERROR
        assert classify(make_definition(), 404, FAST) == HealthState.ERROR
        assert classify(make_definition(), 301, FAST) == HealthState.ERROR

    def test_sentinels_are_errors(self) -> None:
        assert classify(make_definition(), RESULT_TIMEOUT, FAST) == HealthState.ERROR
        assert classify(make_definition(), RESULT_TRANSPORT_ERROR, FAST) == HealthState.ERROR

    def test_over_maximum_is_error_whatever_the_code(self) -> None:
        check = make_definition(warningStatusCodes=[503])
        assert classify(check, 200, TOO_SLOW) == HealthState.ERROR
        assert classify(check, 503, TOO_SLOW) == HealthState.ERROR

    def test_warning_codes(self) -> None:
        check = make_definition(warningStatusCodes=[429, 503])
        assert classify(check, 503, FAST) == HealthState.WARNING
        assert classify(check, 429, SLOW) == HealthState.WARNING

    def test_error_codes_win_over_warning_codes(self) -> None:
        check = make_definition(warningStatusCodes=[500], errorStatusCodes=[500])
        assert classify(check, 500, FAST) == HealthState.ERROR

    def test_error_codes_override_success(self) -> None:
        check = make_definition(errorStatusCodes=[204])
        assert classify(check, 204, FAST) == HealthState.ERROR

    def test_warning_codes_override_success(self) -> None:
        check = make_definition(warningStatusCodes=[202])
        assert classify(check, 202, FAST) == HealthState.WARNING


# ── URLs and endpoint resolution ─────────────────────────────────────────────


class TestBuildUrl:
    @pytest.mark.parametrize(
        "base, suffix, expected",
        [
            ("http://svc.local/", "/ping", "http://svc.local/ping"),
            ("http://svc.local", "ping", "http://svc.local/ping"),
            ("http://svc.local/api/", "health?deep=1", "http://svc.local/api/health?deep=1"),
            ("http://proxy/App/Svc?ListenerName=web", "health", "http://proxy/App/Svc/health?ListenerName=web"),
            ("http://proxy/App/Svc?ListenerName=web", "health?x=1", "http://proxy/App/Svc/health?x=1&ListenerName=web"),
        ],
    )
    def test_join(self, base: str, suffix: str, expected: str) -> None:
        assert build_url(base, suffix) == expected


class TestEndpointResolver:
    async def test_http_uri_is_its_own_address(self) -> None:
        resolver = DefaultEndpointResolver()
        assert await resolver.resolve(make_definition()) == "http://svc.local/"

    async def test_reverse_proxy(self) -> None:
        resolver = DefaultEndpointResolver(reverse_proxy_url="http://localhost:19081/")
        check = make_definition(serviceName="fabric:/Shop/Orders")
        assert await resolver.resolve(check) == "http://localhost:19081/Shop/Orders"

    async def test_reverse_proxy_with_endpoint(self) -> None:
        resolver = DefaultEndpointResolver(reverse_proxy_url="http://localhost:19081")
        check = make_definition(serviceName="fabric:/Shop/Orders", endpoint="web")
        assert await resolver.resolve(check) == "http://localhost:19081/Shop/Orders?ListenerName=web"

    async def test_no_route(self) -> None:
        with pytest.raises(ProbeTransportError):
            await DefaultEndpointResolver().resolve(make_definition(serviceName="fabric:/Shop/Orders"))

    async def test_static_single_endpoint(self) -> None:
        resolver = DefaultEndpointResolver(endpoints={"fabric:/Shop/Orders": {"web": "http://10.0.0.5:8080"}})
        check = make_definition(serviceName="fabric:/Shop/Orders")
        assert await resolver.resolve(check) == "http://10.0.0.5:8080"

    async def test_static_multiple_endpoints_need_a_name(self) -> None:
        endpoints = {"fabric:/Shop/Orders": {"web": "http://10.0.0.5:8080", "admin": "http://10.0.0.5:9090"}}
        resolver = DefaultEndpointResolver(endpoints=endpoints)
        with pytest.raises(ProbeTransportError, match="endpoint name is required"):
            await resolver.resolve(make_definition(serviceName="fabric:/Shop/Orders"))
        check = make_definition(serviceName="fabric:/Shop/Orders", endpoint="admin")
        assert await resolver.resolve(check) == "http://10.0.0.5:9090"

    async def test_static_unknown_endpoint(self) -> None:
        resolver = DefaultEndpointResolver(endpoints={"fabric:/Shop/Orders": {"web": "http://10.0.0.5"}})
        with pytest.raises(ProbeTransportError):
            await resolver.resolve(make_definition(serviceName="fabric:/Shop/Orders", endpoint="admin"))


# ── Execution ────────────────────────────────────────────────────────────────


class TestExecute:
    async def test_success(self, executor: ProbeExecutor, responses: StatusSequence) -> None:
        result = await executor.execute(make_definition(expectedDuration=5))
        assert result.status_code == 200
        assert result.classification == HealthState.OK
        assert result.duration >= timedelta(0)
        assert result.completed_at >= result.started_at
        assert str(responses.requests[0].url) == "http://svc.local/ping"
        assert responses.requests[0].method == "GET"

    async def test_server_error(self) -> None:
        executor = ProbeExecutor(mock_client(StatusSequence(503)))
        result = await executor.execute(make_definition())
        assert result.status_code == 503
        assert result.classification == HealthState.ERROR

    async def test_request_shape(self, executor: ProbeExecutor, responses: StatusSequence) -> None:
        check = make_definition(
            method="POST",
            content='{"probe": true}',
            mediaType="application/json",
            headers={"X-Probe": "watchdog"},
            expectedDuration=5,
        )
        await executor.execute(check)
        request = responses.requests[0]
        assert request.method == "POST"
        assert request.headers["X-Probe"] == "watchdog"
        assert request.headers["Content-Type"] == "application/json"
        assert request.content == b'{"probe": true}'

    async def test_connection_refused(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        result = await ProbeExecutor(mock_client(refuse)).execute(make_definition())
        assert result.status_code == RESULT_TRANSPORT_ERROR
        assert result.classification == HealthState.ERROR
        assert "Connection refused" in result.message

    async def test_client_timeout(self) -> None:
        def time_out(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await ProbeExecutor(mock_client(time_out)).execute(make_definition())
        assert result.status_code == RESULT_TIMEOUT
        assert result.timed_out
        assert result.classification == HealthState.ERROR

    async def test_hard_deadline(self) -> None:
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        check = make_definition(maximumDuration=0.1)
        result = await asyncio.wait_for(ProbeExecutor(mock_client(hang)).execute(check), timeout=5)
        assert result.status_code == RESULT_TIMEOUT
        assert result.classification == HealthState.ERROR
        assert result.duration < timedelta(seconds=5)

    async def test_unresolvable_endpoint(self, responses: StatusSequence) -> None:
        executor = ProbeExecutor(mock_client(responses), DefaultEndpointResolver())
        result = await executor.execute(make_definition(serviceName="fabric:/Shop/Orders"))
        assert result.status_code == RESULT_TRANSPORT_ERROR
        assert result.classification == HealthState.ERROR
        assert responses.requests == []

    async def test_unencodable_header(self, responses: StatusSequence) -> None:
        # Headers that bypassed validation still yield a result
        check = make_definition().model_copy(update={"headers": {"X-User": "José"}})
        result = await ProbeExecutor(mock_client(responses)).execute(check)
        assert result.status_code == RESULT_TRANSPORT_ERROR
        assert result.classification == HealthState.ERROR
        assert "UnicodeEncodeError" in result.message
        assert responses.requests == []

    async def test_unexpected_client_error(self) -> None:
        def broken(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("connection pool closed")

        result = await ProbeExecutor(mock_client(broken)).execute(make_definition())
        assert result.status_code == RESULT_TRANSPORT_ERROR
        assert result.classification == HealthState.ERROR
        assert "connection pool closed" in result.message
