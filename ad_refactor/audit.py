"""Audit log for ad script task lifecycle events.

Audit records go to the dedicated ``ad_refactor.audit`` logger, one record
per event, with the event name as the message and the structured context in
the ``audit`` attribute. The JSON formatter lifts both into the log line.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from ad_refactor.models.task import AdScriptTask, TaskStatus

AUDIT_LOGGER_NAME = "ad_refactor.audit"


def _status_value(status: TaskStatus | str) -> str:
    return status.value if isinstance(status, TaskStatus) else str(status)


class AuditLogService:
    """Records lifecycle events for observability.

    Attributes:
        logger: Logger the audit records are written to
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def log_task_created(self, task: AdScriptTask) -> None:
        self._log(
            "task.created",
            {
                "task_id": task.id,
                "reference_script_length": len(task.reference_script),
                "outcome_description_length": len(task.outcome_description),
                "status": _status_value(task.status),
            },
        )

    def log_task_dispatched(self, task: AdScriptTask) -> None:
        self._log(
            "task.dispatched",
            {"task_id": task.id, "status": _status_value(task.status)},
        )

    def log_status_change(
        self,
        task: AdScriptTask,
        old_status: TaskStatus | str,
        new_status: TaskStatus | str,
    ) -> None:
        self._log(
            "task.status_changed",
            {
                "task_id": task.id,
                "old_status": _status_value(old_status),
                "new_status": _status_value(new_status),
            },
        )

    def log_task_completed(self, task: AdScriptTask) -> None:
        self._log(
            "task.completed",
            {
                "task_id": task.id,
                "new_script_length": len(task.new_script or ""),
                "analysis_count": len(task.analysis or {}),
            },
        )

    def log_task_failed(self, task: AdScriptTask, error_details: str | None = None) -> None:
        self._log(
            "task.failed",
            {"task_id": task.id, "error_details": error_details or task.error_details},
        )

    def log_idempotent_operation(
        self, task: AdScriptTask, operation_type: str, was_idempotent: bool
    ) -> None:
        self._log(
            "task.idempotent_operation",
            {
                "task_id": task.id,
                "operation_type": operation_type,
                "status": _status_value(task.status),
                "was_idempotent": was_idempotent,
            },
        )

    def log_webhook_event(
        self, direction: str, task: AdScriptTask, payload_info: dict[str, Any] | None = None
    ) -> None:
        """Log a webhook event; direction is "sent" or "received"."""
        self._log(
            f"webhook.{direction}",
            {"task_id": task.id, "status": _status_value(task.status), **(payload_info or {})},
        )

    def log_api_request(self, endpoint: str, context: dict[str, Any] | None = None) -> None:
        self._log("api.request", {"endpoint": endpoint, **(context or {})})

    def log_api_response(
        self, endpoint: str, status_code: int, context: dict[str, Any] | None = None
    ) -> None:
        self._log(
            "api.response",
            {"endpoint": endpoint, "status_code": status_code, **(context or {})},
        )

    def log_security_event(self, event: str, context: dict[str, Any] | None = None) -> None:
        self._log(f"security.{event}", context or {}, level=logging.WARNING)

    def log_error(
        self, message: str, exception: BaseException, context: dict[str, Any] | None = None
    ) -> None:
        self._log(
            "error",
            {
                "message": message,
                "exception": type(exception).__name__,
                "exception_message": str(exception),
                **(context or {}),
            },
            level=logging.ERROR,
        )

    def _log(self, event: str, context: dict[str, Any], level: int = logging.INFO) -> None:
        """Write one audit record."""
        audit = {**context, "event": event, "timestamp": datetime.now(UTC).isoformat()}
        extra: dict[str, Any] = {"event": event, "audit": audit}
        if "task_id" in context:
            extra["task_id"] = context["task_id"]
        self.logger.log(level, event, extra=extra)
