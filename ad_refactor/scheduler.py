"""Dispatch Scheduler - runs trigger jobs with job-level retries.

Uses APScheduler's AsyncIOScheduler as the in-process worker. Each attempt
of a TriggerWorkflowJob is a one-shot date-triggered APScheduler job; a
failed attempt schedules the next one after the job's backoff delay.
Precondition failures, missing tasks and configuration errors are never
retried.
"""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from ad_refactor.exceptions import ConfigurationError, TaskError
from ad_refactor.jobs import TriggerWorkflowJob
from ad_refactor.n8n_client import N8nClient
from ad_refactor.task_service import AdScriptTaskService

logger = logging.getLogger(__name__)

# Retrying cannot change the outcome of these
NON_RETRYABLE_ERRORS = (TaskError, ConfigurationError)


class SchedulerError(Exception):
    """Raised when scheduler operations fail."""

    pass


class DispatchScheduler:
    """Worker that runs trigger jobs and retries them with backoff.

    Attributes:
        service: Task lifecycle service handed to each job
        client: n8n client handed to each job
        scheduler: APScheduler AsyncIOScheduler instance
        running: Whether scheduler is currently running
    """

    def __init__(
        self,
        service: AdScriptTaskService,
        client: N8nClient,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.service = service
        self.client = client
        self.scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self.running = False

    async def start(self) -> None:
        """Start processing queued jobs.

        Raises:
            SchedulerError: If scheduler is already running
        """
        if self.running:
            raise SchedulerError("Scheduler is already running")

        self.scheduler.start()
        self.running = True
        logger.info("DispatchScheduler started")

    async def stop(self) -> None:
        """Stop the scheduler; pending retries are dropped."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("DispatchScheduler stopped")

    def dispatch(self, job: TriggerWorkflowJob) -> None:
        """Queue the first attempt of a job to run immediately."""
        self._schedule(job, attempt=1, delay_seconds=0)

    def _schedule(self, job: TriggerWorkflowJob, attempt: int, delay_seconds: int) -> None:
        run_date = datetime.now(UTC) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            func=self.run_job,
            trigger=DateTrigger(run_date=run_date),
            args=[job, attempt],
            id=f"dispatch_{job.task_id}_{attempt}",
            name=f"Dispatch task {job.task_id} (attempt {attempt})",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(
            "Scheduled dispatch attempt %d/%d in %ds",
            attempt,
            job.tries,
            delay_seconds,
            extra={"task_id": job.task_id, "attempt": attempt},
        )

    async def run_job(self, job: TriggerWorkflowJob, attempt: int = 1) -> None:
        """Run one attempt and decide whether to retry.

        Never raises: failures are logged, retried or recorded on the task.
        """
        try:
            await job.handle(self.service, self.client, attempt)
        except NON_RETRYABLE_ERRORS as e:
            logger.warning(
                "Dispatch aborted without retry: %s",
                e,
                extra={"task_id": job.task_id, "attempt": attempt},
            )
        except Exception as e:
            if attempt >= job.tries:
                logger.error(
                    "Dispatch gave up after %d attempts",
                    attempt,
                    extra={"task_id": job.task_id, "attempt": attempt},
                )
                try:
                    await job.failed(self.service, e)
                except Exception:
                    logger.exception(
                        "Failed to record permanent dispatch failure",
                        extra={"task_id": job.task_id},
                    )
                return

            self._schedule(job, attempt + 1, job.backoff_for(attempt))
