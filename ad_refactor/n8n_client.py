"""n8n Workflow Trigger Client.

Sends the trigger request that starts the ad script workflow in n8n. The
workflow runs asynchronously and reports back through the signed callback
endpoint; this client only delivers the trigger.

Example:
    >>> from ad_refactor.config import get_settings
    >>> from ad_refactor.n8n_client import N8nClient
    >>>
    >>> client = N8nClient.from_settings(get_settings())
    >>> response = await client.trigger_workflow(
    ...     WorkflowPayload(
    ...         task_id="9b2c...",
    ...         reference_script="console.log(1)",
    ...         outcome_description="add docs",
    ...     )
    ... )
    >>> response["success"]
    True
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from ad_refactor.config import Settings
from ad_refactor.exceptions import (
    N8nClientError,
    N8nConfigurationError,
    N8nConnectionError,
    N8nHttpError,
    N8nInvalidResponseError,
    N8nTimeoutError,
)
from ad_refactor.models.payloads import WorkflowPayload

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_MS = 1000
CONNECT_TIMEOUT = 10.0
PROBE_TIMEOUT = 5.0
PROBE_CONNECT_TIMEOUT = 3.0
SOURCE_IDENTIFIER = "ad-refactor"
USER_AGENT = "ad-refactor-n8n-client/1.0"


class N8nClient:
    """Client for the n8n trigger webhook.

    Features:
    - Validates its configuration at construction (fails fast)
    - Bounded transport retries with a per-attempt delay schedule
    - Separate connect and request timeouts
    - Liveness probe

    Attributes:
        webhook_url: n8n trigger webhook URL
        auth_header_key: Header name n8n authenticates trigger requests with
        timeout: Per-request timeout in seconds
        retry_attempts: Maximum HTTP attempts per trigger call
        retry_delays: Delay before retry N, in milliseconds
    """

    def __init__(
        self,
        webhook_url: str | None,
        auth_header_key: str | None,
        auth_header_value: str | None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delays: list[int] | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize and validate the n8n client.

        Args:
            webhook_url: n8n trigger webhook URL
            auth_header_key: Auth header name (e.g. "X-Trigger-Auth")
            auth_header_value: Auth header value
            timeout: Per-request timeout in seconds (default: 30)
            retry_attempts: HTTP attempts per trigger call (default: 3)
            retry_delays: Delay before each retry in ms (default: [1000, 2000, 3000])
            http_client: Shared httpx client; a fresh one is used per call if None
            sleep: Coroutine used to wait between retries (default: asyncio.sleep)

        Raises:
            N8nConfigurationError: If any setting is missing or invalid
        """
        self._webhook_url = webhook_url or ""
        self.auth_header_key = auth_header_key or ""
        self._auth_header_value = auth_header_value or ""
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delays = list(retry_delays) if retry_delays is not None else [1000, 2000, 3000]
        self._http_client = http_client
        self._sleep = sleep

        self._validate_configuration()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "N8nClient":
        """Build a client from service settings."""
        return cls(
            webhook_url=settings.n8n_webhook_url,
            auth_header_key=settings.n8n_auth_header_key,
            auth_header_value=settings.n8n_auth_header_value,
            timeout=settings.n8n_timeout,
            retry_attempts=settings.n8n_retry_attempts,
            retry_delays=settings.n8n_retry_delays,
            **kwargs,
        )

    @property
    def webhook_url(self) -> str:
        return self._webhook_url

    @property
    def connect_timeout(self) -> float:
        """Connect timeout, always shorter than the request timeout."""
        return min(CONNECT_TIMEOUT, self.timeout / 2)

    def _validate_configuration(self) -> None:
        if not self._webhook_url:
            raise N8nConfigurationError("Webhook URL is required")

        parsed = urlparse(self._webhook_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise N8nConfigurationError("Webhook URL is not valid")

        if not self.auth_header_key:
            raise N8nConfigurationError("Auth header name is required")

        if not self._auth_header_value:
            raise N8nConfigurationError("Auth header value is required")

        if self.timeout <= 0:
            raise N8nConfigurationError("Timeout must be greater than 0")

        if self.retry_attempts < 1:
            raise N8nConfigurationError("Retry attempts must be at least 1")

        if any(delay < 0 for delay in self.retry_delays):
            raise N8nConfigurationError("Retry delays must not be negative")

        logger.info(
            "N8n client configured for %s (auth header %s, %d attempts)",
            self._webhook_url,
            self.auth_header_key,
            self.retry_attempts,
        )

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Source": SOURCE_IDENTIFIER,
            "User-Agent": USER_AGENT,
            self.auth_header_key: self._auth_header_value,
        }

    def _wait_strategy(self):
        """Wait retry_delays[n-1] ms before attempt n+1, defaulting past the list."""
        delays = [
            self.retry_delays[i] if i < len(self.retry_delays) else DEFAULT_RETRY_DELAY_MS
            for i in range(self.retry_attempts - 1)
        ]
        if not delays:
            return wait_none()
        return wait_chain(*[wait_fixed(delay / 1000) for delay in delays])

    def _log_retry(self, task_id: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "N8n workflow trigger failed, retrying in %.1fs: %s",
                retry_state.next_action.sleep if retry_state.next_action else 0,
                retry_state.outcome.exception() if retry_state.outcome else None,
                extra={"task_id": task_id, "attempt": retry_state.attempt_number},
            )

        return before_sleep

    async def _send(self, method: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, self._webhook_url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, self._webhook_url, **kwargs)

    async def _post_once(self, headers: dict[str, str], body: dict[str, Any]) -> httpx.Response:
        """One HTTP attempt, with transport failures mapped to N8nClientError."""
        try:
            response = await self._send(
                "POST",
                headers=headers,
                json=body,
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
            )
        except httpx.TimeoutException as e:
            raise N8nTimeoutError(self._webhook_url, self.timeout) from e
        except httpx.DecodingError as e:
            raise N8nInvalidResponseError(str(e)) from e
        except httpx.RequestError as e:
            raise N8nConnectionError(self._webhook_url, str(e) or type(e).__name__) from e

        if not response.is_success:
            raise N8nHttpError(response.status_code, response.text)

        return response

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        """Decode the JSON body; an empty or non-object body becomes {}."""
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        data.setdefault("success", True)
        return data

    async def trigger_workflow(self, payload: WorkflowPayload) -> dict[str, Any]:
        """Trigger the n8n workflow for a task.

        Args:
            payload: Task identity plus its two immutable inputs

        Returns:
            Decoded response body, always with a "success" key

        Raises:
            N8nConnectionError: n8n unreachable on the final attempt
            N8nTimeoutError: Final attempt timed out
            N8nHttpError: Final attempt answered non-2xx
            N8nInvalidResponseError: Final attempt body could not be decoded
        """
        headers = self._build_headers()
        body = payload.to_dict()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(N8nClientError),
            before_sleep=self._log_retry(payload.task_id),
            reraise=True,
            **({"sleep": self._sleep} if self._sleep is not None else {}),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        "Triggering n8n workflow at %s",
                        self._webhook_url,
                        extra={
                            "task_id": payload.task_id,
                            "attempt": attempt.retry_state.attempt_number,
                        },
                    )
                    response = await self._post_once(headers, body)
                    data = self._parse_body(response)
                    logger.info(
                        "Successfully triggered n8n workflow (HTTP %d)",
                        response.status_code,
                        extra={
                            "task_id": payload.task_id,
                            "attempt": attempt.retry_state.attempt_number,
                        },
                    )
                    return data
        except N8nClientError as e:
            logger.error(
                "Failed to trigger n8n workflow after %d attempts: %s",
                self.retry_attempts,
                e,
                extra={"task_id": payload.task_id},
            )
            raise

        raise N8nConnectionError(self._webhook_url, "Unknown error")

    async def is_available(self) -> bool:
        """Probe the webhook endpoint.

        Any 2xx-4xx answer means the endpoint exists and responds; a 5xx or a
        transport failure means it is unavailable. This does not guarantee
        the next trigger call succeeds.
        """
        try:
            response = await self._send(
                "GET",
                timeout=httpx.Timeout(PROBE_TIMEOUT, connect=PROBE_CONNECT_TIMEOUT),
            )
        except httpx.HTTPError as e:
            logger.warning("N8n webhook probe failed: %s", e)
            return False

        return response.status_code < 500
