"""
Unified Exception Hierarchy for ad_refactor.

Three families of errors live here:

- n8n client errors, raised by the outbound workflow client. Transport
  failures (connection, timeout, HTTP status, undecodable body) are retried by
  the client and by the dispatch job; configuration errors are fatal.
- Task errors, raised when a task cannot be found or cannot be dispatched.
- Webhook signature errors, raised by the callback authenticator.

Usage:
    from ad_refactor.exceptions import N8nClientError, N8nHttpError

    try:
        await client.trigger_workflow(payload)
    except N8nHttpError as e:
        logger.error("n8n rejected the trigger: %s", e.status_code)
    except N8nClientError:
        # Connection failure, timeout or invalid response
        raise

Note:
    Lifecycle business rules (wrong state, conflicting duplicate callback)
    are never exceptions. The task service reports them through return
    values and reserves exceptions for storage failures.
"""

from typing import Any


class AdRefactorError(Exception):
    """Base exception for all ad_refactor errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dict with additional error context.
        status_code: HTTP status code if applicable.
        service: Name of the service that raised the error.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        service: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        self.service = service

    def __str__(self) -> str:
        parts = [self.message]
        if self.service:
            parts.insert(0, f"[{self.service}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)


class ConfigurationError(AdRefactorError):
    """Configuration is invalid or missing.

    Raised when:
    - Required environment variables are missing
    - Numeric settings cannot be parsed
    - A client is constructed with unusable settings
    """

    pass


# ============================================================================
# N8N CLIENT ERRORS
# ============================================================================


class N8nClientError(AdRefactorError):
    """Base exception for outbound n8n webhook failures."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("service", "n8n")
        super().__init__(message, **kwargs)


class N8nConfigurationError(ConfigurationError, N8nClientError):
    """Raised at construction when the n8n client settings are unusable.

    Never retried: the client cannot be used until the settings change.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"N8n client configuration error: {reason}", service="n8n")
        self.reason = reason


class N8nConnectionError(N8nClientError):
    """The n8n webhook could not be reached.

    Attributes:
        url: Webhook URL that was called.
        reason: Transport-level failure description.
    """

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to connect to n8n webhook at {url}: {reason}")
        self.url = url
        self.reason = reason


class N8nTimeoutError(N8nClientError):
    """The request to the n8n webhook timed out.

    Attributes:
        url: Webhook URL that was called.
        timeout_seconds: The timeout that was exceeded.
    """

    def __init__(self, url: str, timeout_seconds: float | None = None) -> None:
        super().__init__(f"Request to n8n webhook at {url} timed out")
        self.url = url
        self.timeout_seconds = timeout_seconds


class N8nHttpError(N8nClientError):
    """The n8n webhook answered with a non-2xx status.

    Attributes:
        body: Raw response body, truncated to 1000 characters.
    """

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(
            f"N8n webhook returned HTTP {status_code}: {body[:1000]}",
            status_code=status_code,
        )
        self.body = body[:1000]


class N8nInvalidResponseError(N8nClientError):
    """The n8n webhook answered with a body that could not be decoded."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid response from n8n: {reason}")
        self.reason = reason


# ============================================================================
# TASK ERRORS
# ============================================================================


class TaskError(AdRefactorError):
    """Base exception for ad script task operations."""

    pass


class TaskNotFoundError(TaskError):
    """No task exists with the given ID."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Ad script task with ID {task_id} not found", status_code=404)
        self.task_id = task_id


class TaskPreconditionError(TaskError):
    """The task is not in a state that allows the requested operation.

    Terminal for the dispatch job: retrying cannot change a status that is
    already persisted.

    Attributes:
        task_id: ID of the task.
        status: Persisted status at the time of the check.
    """

    def __init__(self, task_id: str, status: str, reason: str | None = None) -> None:
        super().__init__(reason or "Task cannot be processed in its current state")
        self.task_id = task_id
        self.status = status


# ============================================================================
# WEBHOOK SIGNATURE ERRORS
# ============================================================================


class WebhookSignatureError(AdRefactorError):
    """Base exception for callback signature verification."""

    pass


class MissingSecretError(WebhookSignatureError):
    """The callback HMAC secret is not configured (server misconfiguration)."""

    def __init__(self) -> None:
        super().__init__("Callback HMAC secret not configured", status_code=500)


class InvalidSignatureError(WebhookSignatureError):
    """The callback signature is missing or does not match (client error)."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message, status_code=401)


__all__ = [
    "AdRefactorError",
    "ConfigurationError",
    "N8nClientError",
    "N8nConfigurationError",
    "N8nConnectionError",
    "N8nTimeoutError",
    "N8nHttpError",
    "N8nInvalidResponseError",
    "TaskError",
    "TaskNotFoundError",
    "TaskPreconditionError",
    "WebhookSignatureError",
    "MissingSecretError",
    "InvalidSignatureError",
]
