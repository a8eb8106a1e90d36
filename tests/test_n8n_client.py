"""Tests for the n8n trigger webhook client."""

import json

import httpx
import pytest

from ad_refactor.config import Settings
from ad_refactor.exceptions import (
    N8nConfigurationError,
    N8nConnectionError,
    N8nHttpError,
    N8nInvalidResponseError,
    N8nTimeoutError,
)
from ad_refactor.models.payloads import WorkflowPayload
from ad_refactor.n8n_client import N8nClient

WEBHOOK_URL = "https://n8n.example.com/webhook/ad-script"

PAYLOAD = WorkflowPayload(
    task_id="9b2c6e0a-0000-4000-8000-000000000001",
    reference_script="console.log(1)",
    outcome_description="add docs",
)


class Recorder:
    """Mock transport handler that replays responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeSleep:
    """Records retry delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_client(handler, sleep=None, **kwargs) -> N8nClient:
    options = {
        "webhook_url": WEBHOOK_URL,
        "auth_header_key": "X-Trigger-Auth",
        "auth_header_value": "secret-value",
    }
    options.update(kwargs)
    return N8nClient(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep or FakeSleep(),
        **options,
    )


# ============================================================================
# CONFIGURATION
# ============================================================================


class TestN8nClientConfiguration:
    """Tests for construction-time validation."""

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"webhook_url": None}, "Webhook URL is required"),
            ({"webhook_url": "not a url"}, "Webhook URL is not valid"),
            ({"webhook_url": "ftp://n8n.example.com/hook"}, "Webhook URL is not valid"),
            ({"auth_header_key": ""}, "Auth header name is required"),
            ({"auth_header_value": None}, "Auth header value is required"),
            ({"timeout": 0}, "Timeout must be greater than 0"),
            ({"retry_attempts": 0}, "Retry attempts must be at least 1"),
            ({"retry_delays": [1000, -1]}, "Retry delays must not be negative"),
        ],
    )
    def test_invalid_configuration(self, overrides, reason):
        """Test that each unusable setting is rejected at construction."""
        options = {
            "webhook_url": WEBHOOK_URL,
            "auth_header_key": "X-Trigger-Auth",
            "auth_header_value": "secret-value",
        }
        options.update(overrides)

        with pytest.raises(N8nConfigurationError) as exc_info:
            N8nClient(**options)

        assert exc_info.value.reason == reason

    def test_defaults(self):
        """Test default timeout and retry schedule."""
        client = N8nClient(WEBHOOK_URL, "X-Trigger-Auth", "secret-value")

        assert client.webhook_url == WEBHOOK_URL
        assert client.timeout == 30.0
        assert client.retry_attempts == 3
        assert client.retry_delays == [1000, 2000, 3000]

    def test_from_settings(self):
        """Test building the client from settings."""
        settings = Settings(
            n8n_webhook_url=WEBHOOK_URL,
            n8n_auth_header_value="secret-value",
            n8n_timeout=5.0,
            n8n_retry_attempts=2,
            n8n_retry_delays=[10],
        )

        client = N8nClient.from_settings(settings)

        assert client.auth_header_key == "X-Trigger-Auth"
        assert client.timeout == 5.0
        assert client.retry_attempts == 2
        assert client.retry_delays == [10]

    def test_from_settings_missing_url(self):
        """Test that default settings without a URL fail fast."""
        with pytest.raises(N8nConfigurationError):
            N8nClient.from_settings(Settings())


# ============================================================================
# TRIGGER WORKFLOW
# ============================================================================


class TestTriggerWorkflow:
    """Tests for trigger_workflow."""

    @pytest.mark.asyncio
    async def test_successful_trigger(self):
        """Test a 200 response on the first attempt."""
        handler = Recorder(httpx.Response(200, json={"executionId": "42"}))
        client = make_client(handler)

        result = await client.trigger_workflow(PAYLOAD)

        assert result == {"executionId": "42", "success": True}
        assert len(handler.requests) == 1

        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == WEBHOOK_URL
        assert request.headers["X-Trigger-Auth"] == "secret-value"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["X-Source"] == "ad-refactor"
        assert json.loads(request.content) == PAYLOAD.to_dict()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "timeout,connect",
        [(30.0, 10.0), (10.0, 5.0), (4.0, 2.0)],
    )
    async def test_connect_timeout_is_shorter(self, timeout, connect):
        """Test that each request carries a connect timeout below the request timeout."""
        handler = Recorder(httpx.Response(200, json={}))
        client = make_client(handler, timeout=timeout)

        await client.trigger_workflow(PAYLOAD)

        timeouts = handler.requests[0].extensions["timeout"]
        assert client.connect_timeout == connect
        assert timeouts["connect"] == connect
        assert timeouts["read"] == timeout

    @pytest.mark.asyncio
    async def test_response_success_flag_is_kept(self):
        """Test that an explicit success flag in the body is not overwritten."""
        client = make_client(Recorder(httpx.Response(200, json={"success": False})))

        assert await client.trigger_workflow(PAYLOAD) == {"success": False}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(204),
            httpx.Response(200, text="accepted"),
            httpx.Response(200, json=["queued"]),
        ],
        ids=["empty", "not-json", "not-object"],
    )
    async def test_unparseable_body_is_success(self, response):
        """Test that a 2xx with no usable body still counts as success."""
        client = make_client(Recorder(response))

        assert await client.trigger_workflow(PAYLOAD) == {"success": True}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Test recovery after a transient 503."""
        handler = Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(200, json={"ok": True}),
        )
        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep)

        result = await client.trigger_workflow(PAYLOAD)

        assert result["ok"] is True
        assert len(handler.requests) == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_attempts(self):
        """Test that three 503s raise after the third request."""
        handler = Recorder(httpx.Response(503, text="Service Unavailable"))
        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep)

        with pytest.raises(N8nHttpError) as exc_info:
            await client.trigger_workflow(PAYLOAD)

        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "Service Unavailable"
        assert len(handler.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_missing_delays_default_to_one_second(self):
        """Test that attempts beyond the delay list wait 1000 ms."""
        sleep = FakeSleep()
        client = make_client(
            Recorder(httpx.Response(500)),
            sleep=sleep,
            retry_attempts=4,
            retry_delays=[250],
        )

        with pytest.raises(N8nHttpError):
            await client.trigger_workflow(PAYLOAD)

        assert sleep.delays == [0.25, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self):
        """Test that retry_attempts=1 makes exactly one request."""
        handler = Recorder(httpx.Response(502))
        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep, retry_attempts=1)

        with pytest.raises(N8nHttpError):
            await client.trigger_workflow(PAYLOAD)

        assert len(handler.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_client_error_status_is_retried(self):
        """Test that 4xx answers are retried like any other failure."""
        handler = Recorder(httpx.Response(404, text="no such webhook"))
        client = make_client(handler)

        with pytest.raises(N8nHttpError) as exc_info:
            await client.trigger_workflow(PAYLOAD)

        assert exc_info.value.status_code == 404
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_long_error_body_is_truncated(self):
        """Test that error bodies are capped at 1000 characters."""
        client = make_client(Recorder(httpx.Response(500, text="x" * 5000)), retry_attempts=1)

        with pytest.raises(N8nHttpError) as exc_info:
            await client.trigger_workflow(PAYLOAD)

        assert len(exc_info.value.body) == 1000

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that a transport timeout maps to N8nTimeoutError."""
        handler = Recorder(httpx.ReadTimeout("read timed out"))
        client = make_client(handler, timeout=5.0)

        with pytest.raises(N8nTimeoutError) as exc_info:
            await client.trigger_workflow(PAYLOAD)

        assert exc_info.value.timeout_seconds == 5.0
        assert exc_info.value.url == WEBHOOK_URL
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test that a refused connection maps to N8nConnectionError."""
        handler = Recorder(httpx.ConnectError("connection refused"))
        client = make_client(handler)

        with pytest.raises(N8nConnectionError) as exc_info:
            await client.trigger_workflow(PAYLOAD)

        assert "connection refused" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_decoding_error(self):
        """Test that an undecodable body maps to N8nInvalidResponseError."""
        handler = Recorder(httpx.DecodingError("bad gzip"))
        client = make_client(handler, retry_attempts=1)

        with pytest.raises(N8nInvalidResponseError):
            await client.trigger_workflow(PAYLOAD)

    @pytest.mark.asyncio
    async def test_recovers_from_connection_error(self):
        """Test that a transport failure followed by success returns the body."""
        handler = Recorder(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"executionId": "7"}),
        )
        client = make_client(handler)

        result = await client.trigger_workflow(PAYLOAD)

        assert result["executionId"] == "7"


# ============================================================================
# AVAILABILITY PROBE
# ============================================================================


class TestIsAvailable:
    """Tests for is_available."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,available",
        [(200, True), (404, True), (405, True), (499, True), (500, False), (503, False)],
    )
    async def test_status_codes(self, status_code, available):
        """Test that anything below 500 counts as available."""
        handler = Recorder(httpx.Response(status_code))
        client = make_client(handler)

        assert await client.is_available() is available
        assert handler.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Test that an unreachable endpoint is unavailable."""
        client = make_client(Recorder(httpx.ConnectError("connection refused")))

        assert await client.is_available() is False
