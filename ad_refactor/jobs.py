"""Trigger Workflow Job - dispatches one ad script task to n8n.

One job run is one attempt:

    find task -> check it can be processed -> mark processing
              -> build payload -> trigger n8n -> log

On success the task stays in processing; only the n8n callback moves it to a
terminal state. Any exception is re-raised so the scheduler can run the job
again after a backoff delay. On the final attempt the task is also marked
failed, so it never stays in processing once the scheduler gives up.

This retry layer is independent of the n8n client's own transport retries:
one job attempt may issue up to ``retry_attempts`` HTTP requests.
"""

import logging
from typing import TYPE_CHECKING, Any, Protocol

from ad_refactor.exceptions import N8nClientError, TaskPreconditionError
from ad_refactor.models.task import AdScriptTask, TaskStatus

if TYPE_CHECKING:
    from ad_refactor.n8n_client import N8nClient
    from ad_refactor.task_service import AdScriptTaskService

logger = logging.getLogger(__name__)

CANNOT_PROCESS_MESSAGE = "Task cannot be processed in its current state"
MARK_PROCESSING_FAILED_MESSAGE = "Failed to mark task as processing"


class JobDispatcher(Protocol):
    """Anything that can queue a trigger job for a worker."""

    def dispatch(self, job: "TriggerWorkflowJob") -> None: ...


class TriggerWorkflowJob:
    """Queued unit of work that triggers the n8n workflow for one task.

    Attributes:
        task_id: ID of the task to dispatch
        tries: Maximum number of attempts
        backoff: Seconds to wait before each retry; the last value repeats
    """

    tries: int = 3
    backoff: list[int] = [10, 30, 60]

    def __init__(
        self,
        task_id: str,
        tries: int | None = None,
        backoff: list[int] | None = None,
    ) -> None:
        self.task_id = task_id
        if tries is not None:
            self.tries = tries
        if backoff is not None:
            self.backoff = list(backoff)

    def __repr__(self) -> str:
        return f"TriggerWorkflowJob(task_id={self.task_id!r}, tries={self.tries})"

    def backoff_for(self, attempt: int) -> int:
        """Seconds to wait after the given failed attempt."""
        if not self.backoff:
            return 0
        return self.backoff[min(attempt, len(self.backoff)) - 1]

    async def handle(
        self,
        service: "AdScriptTaskService",
        client: "N8nClient",
        attempt: int = 1,
    ) -> dict[str, Any]:
        """Run one attempt.

        Args:
            service: Task lifecycle service
            client: Outbound n8n client
            attempt: 1-based attempt number

        Returns:
            The n8n trigger response

        Raises:
            TaskPreconditionError: If the task cannot be processed (not retryable)
            N8nClientError: If n8n could not be triggered (retryable)
        """
        task = await service.find_task(self.task_id)
        logger.info(
            "Starting n8n workflow trigger",
            extra={"task_id": self.task_id, "attempt": attempt},
        )

        try:
            await self._ensure_task_can_be_processed(service, task, attempt)
            await self._mark_task_as_processing(service, task)
            return await self._trigger_and_log(service, client, task, attempt)
        except TaskPreconditionError:
            raise
        except Exception as e:
            await self._handle_trigger_failure(service, task, e, attempt)
            raise

    async def _ensure_task_can_be_processed(
        self, service: "AdScriptTaskService", task: AdScriptTask, attempt: int
    ) -> None:
        # A retry resumes a task this job already moved to processing
        resumable = attempt > 1 and task.status is TaskStatus.PROCESSING
        if service.can_process(task) or resumable:
            return

        logger.warning(
            "Task cannot be processed in status %s, failing it",
            TaskStatus(task.status).value,
            extra={"task_id": task.id, "attempt": attempt},
        )
        await service.mark_failed(task, CANNOT_PROCESS_MESSAGE)
        raise TaskPreconditionError(task.id, TaskStatus(task.status).value, CANNOT_PROCESS_MESSAGE)

    async def _mark_task_as_processing(
        self, service: "AdScriptTaskService", task: AdScriptTask
    ) -> None:
        if await service.mark_processing(task):
            return

        logger.error("Failed to mark task as processing", extra={"task_id": task.id})
        await service.mark_failed(task, MARK_PROCESSING_FAILED_MESSAGE)
        raise TaskPreconditionError(
            task.id, TaskStatus(task.status).value, MARK_PROCESSING_FAILED_MESSAGE
        )

    async def _trigger_and_log(
        self,
        service: "AdScriptTaskService",
        client: "N8nClient",
        task: AdScriptTask,
        attempt: int,
    ) -> dict[str, Any]:
        payload = service.create_webhook_payload(task)
        response = await client.trigger_workflow(payload)

        logger.info(
            "Successfully triggered n8n workflow",
            extra={"task_id": task.id, "attempt": attempt},
        )
        return response

    async def _handle_trigger_failure(
        self,
        service: "AdScriptTaskService",
        task: AdScriptTask,
        exception: Exception,
        attempt: int,
    ) -> None:
        if isinstance(exception, N8nClientError):
            logger.error(
                "N8n client error while triggering workflow: %s",
                exception,
                extra={"task_id": task.id, "attempt": attempt},
            )
        else:
            logger.exception(
                "Unexpected error while triggering workflow",
                extra={"task_id": task.id, "attempt": attempt},
            )

        if attempt >= self.tries:
            await service.mark_failed(
                task,
                f"Failed to trigger n8n workflow after {self.tries} attempts: {exception}",
            )

    async def failed(self, service: "AdScriptTaskService", exception: Exception) -> None:
        """Called by the scheduler once it stops retrying this job."""
        logger.error(
            "TriggerWorkflowJob failed permanently: %s",
            exception,
            extra={"task_id": self.task_id},
        )
        task = await service.find_task(self.task_id)
        if service.is_final(task):
            logger.info(
                "Task already %s, keeping its recorded outcome",
                TaskStatus(task.status).value,
                extra={"task_id": self.task_id},
            )
            return
        await service.mark_failed(task, f"Job failed permanently: {exception}")
