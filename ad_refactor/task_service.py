"""Ad Script Task Service - the only writer of task status and results.

Every status change is a conditional update keyed on the persisted status:

    UPDATE ad_script_tasks SET status = :new, ...
    WHERE id = :id AND status IN (:allowed...)

The affected row count decides whether the transition happened. When it did
not, the row is re-read in the same transaction to tell an idempotent replay
(same outcome already stored) from a conflict. In-memory task instances are
never trusted for these decisions; they are refreshed from the row after
each operation.

Business-rule outcomes (wrong state, conflicting duplicate callback) are
reported through return values. Exceptions are reserved for storage
failures and missing tasks.

Example:
    >>> service = AdScriptTaskService(engine, audit=AuditLogService())
    >>> task = await service.create_task("console.log(1)", "add docs")
    >>> await service.mark_processing(task)
    True
    >>> outcome = await service.apply_result_transactionally(
    ...     task, ResultPayload.success("console.log(1) // documented")
    ... )
    >>> outcome.status
    'completed'
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ad_refactor.audit import AuditLogService
from ad_refactor.exceptions import TaskNotFoundError, TaskPreconditionError
from ad_refactor.models.payloads import ResultPayload, WorkflowPayload
from ad_refactor.models.task import AdScriptTask, TaskStatus, utcnow

if TYPE_CHECKING:
    from ad_refactor.jobs import JobDispatcher

logger = logging.getLogger(__name__)

INVALID_PAYLOAD_MESSAGE = "Invalid result payload received from n8n"

# Statuses a task may leave for a terminal state
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.PROCESSING)


class ResultKind(str, Enum):
    """How a callback result was handled."""

    APPLIED = "applied"
    IDEMPOTENT = "idempotent"
    CONFLICT = "conflict"
    INVALID_PAYLOAD = "invalid_payload"
    ERROR = "error"


# HTTP status the API answers with for each kind
HTTP_STATUS_BY_KIND = {
    ResultKind.APPLIED: 200,
    ResultKind.IDEMPOTENT: 200,
    ResultKind.CONFLICT: 409,
    ResultKind.INVALID_PAYLOAD: 422,
    ResultKind.ERROR: 500,
}


@dataclass
class ResultOutcome:
    """Structured result of apply_result_transactionally.

    Attributes:
        success: Whether the callback was accepted as a valid result
        was_updated: Whether the row was written
        status: Persisted task status after processing
        message: Human-readable summary
        task_id: ID of the task
        kind: How the callback was handled
        error: Exception message when processing failed unexpectedly
    """

    success: bool
    was_updated: bool
    status: str
    message: str
    task_id: str
    kind: ResultKind
    error: str | None = None

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "task_id": self.task_id,
            "status": self.status,
            "was_updated": self.was_updated,
            "message": self.message,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def _status_value(status: TaskStatus | str) -> str:
    return status.value if isinstance(status, TaskStatus) else str(status)


class AdScriptTaskService:
    """Lifecycle operations on ad script tasks.

    Attributes:
        engine: SQLAlchemy engine of the task store
        audit: Audit sink for lifecycle events
        dispatcher: Hands trigger jobs to the worker (optional)
        job_tries: Attempts per trigger job (default: TriggerWorkflowJob.tries)
        job_backoff: Seconds between job attempts (default: TriggerWorkflowJob.backoff)
    """

    def __init__(
        self,
        engine: Engine,
        audit: AuditLogService | None = None,
        dispatcher: "JobDispatcher | None" = None,
        job_tries: int | None = None,
        job_backoff: list[int] | None = None,
    ) -> None:
        self.engine = engine
        self.audit = audit or AuditLogService()
        self.dispatcher = dispatcher
        self.job_tries = job_tries
        self.job_backoff = job_backoff

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Open a session with one transaction, committed on exit."""
        with Session(self.engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    @staticmethod
    def _load(session: Session, task_id: str, for_update: bool = False) -> AdScriptTask:
        """Read the persisted row, bypassing any identity-map copy."""
        statement = select(AdScriptTask).where(AdScriptTask.id == task_id)
        if for_update:
            statement = statement.with_for_update()
        task = session.exec(statement.execution_options(populate_existing=True)).first()
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    @staticmethod
    def _sync(target: AdScriptTask, source: AdScriptTask) -> None:
        """Copy persisted mutable fields onto a caller's instance."""
        if target is source:
            return
        target.status = source.status
        target.new_script = source.new_script
        target.analysis = source.analysis
        target.error_details = source.error_details
        target.updated_at = source.updated_at

    @staticmethod
    def _conditional_update(
        session: Session,
        task_id: str,
        allowed: tuple[TaskStatus, ...],
        **values: Any,
    ) -> bool:
        """Write values only if the row's current status is in allowed."""
        statement = (
            update(AdScriptTask)
            .where(AdScriptTask.id == task_id, AdScriptTask.status.in_(allowed))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        return result.rowcount > 0

    # ========================================================================
    # CREATION AND LOOKUP
    # ========================================================================

    async def create_task(self, reference_script: str, outcome_description: str) -> AdScriptTask:
        """Create a new task in pending.

        Args:
            reference_script: Ad script to transform
            outcome_description: Desired outcome

        Returns:
            The persisted task
        """
        task = AdScriptTask(
            reference_script=reference_script,
            outcome_description=outcome_description,
            status=TaskStatus.PENDING,
        )
        with self._transaction() as session:
            session.add(task)

        logger.info("Created ad script task", extra={"task_id": task.id})
        self.audit.log_task_created(task)
        return task

    async def create_and_dispatch_task(
        self, reference_script: str, outcome_description: str
    ) -> AdScriptTask:
        """Create a task and hand it to the dispatcher."""
        task = await self.create_task(reference_script, outcome_description)
        await self.dispatch_task(task)
        return task

    async def dispatch_task(self, task: AdScriptTask) -> None:
        """Queue a trigger job for the task.

        Raises:
            TaskPreconditionError: If the task cannot be processed
            RuntimeError: If no dispatcher is configured
        """
        from ad_refactor.jobs import TriggerWorkflowJob

        if not self.can_process(task):
            raise TaskPreconditionError(task.id, _status_value(task.status))
        if self.dispatcher is None:
            raise RuntimeError("No job dispatcher configured for AdScriptTaskService")

        self.dispatcher.dispatch(
            TriggerWorkflowJob(task_id=task.id, tries=self.job_tries, backoff=self.job_backoff)
        )
        self.audit.log_task_dispatched(task)

    async def find_task(self, task_id: str) -> AdScriptTask:
        """Load a task by ID.

        Raises:
            TaskNotFoundError: If no task has this ID
        """
        with Session(self.engine, expire_on_commit=False) as session:
            task = session.get(AdScriptTask, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return task

    async def refresh(self, task: AdScriptTask) -> AdScriptTask:
        """Reload the persisted mutable fields into task."""
        with self._transaction() as session:
            self._sync(task, self._load(session, task.id))
        return task

    # ========================================================================
    # PREDICATES
    # ========================================================================

    def can_process(self, task: AdScriptTask) -> bool:
        return task.can_process()

    def is_final(self, task: AdScriptTask) -> bool:
        return task.is_final()

    def get_status(self, task: AdScriptTask) -> TaskStatus:
        return TaskStatus(task.status)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def _mark_processing(self, session: Session, task_id: str) -> tuple[bool, AdScriptTask, TaskStatus]:
        old_status = TaskStatus(self._load(session, task_id).status)
        updated = self._conditional_update(
            session, task_id, (TaskStatus.PENDING,), status=TaskStatus.PROCESSING
        )
        current = self._load(session, task_id)
        if updated:
            return True, current, old_status
        # Already processing is an idempotent success
        return current.status is TaskStatus.PROCESSING, current, current.status

    async def mark_processing(self, task: AdScriptTask) -> bool:
        """Move a pending task to processing (idempotent).

        Returns:
            True if the task was pending and moved, or was already processing;
            False for any other persisted status, with no write
        """
        with self._transaction() as session:
            ok, current, old_status = self._mark_processing(session, task.id)
        self._sync(task, current)

        if ok and old_status is not TaskStatus.PROCESSING:
            self.audit.log_status_change(task, old_status, TaskStatus.PROCESSING)
        elif not ok:
            logger.warning(
                "Task cannot move to processing from %s",
                _status_value(current.status),
                extra={"task_id": task.id},
            )
        return ok

    def _mark_completed(
        self,
        session: Session,
        task_id: str,
        new_script: str,
        analysis: dict[str, Any],
    ) -> tuple[bool, bool, AdScriptTask, TaskStatus]:
        """Returns (ok, changed, current row, status before the write)."""
        old_status = TaskStatus(self._load(session, task_id).status)
        updated = self._conditional_update(
            session,
            task_id,
            ACTIVE_STATUSES,
            status=TaskStatus.COMPLETED,
            new_script=new_script,
            analysis=analysis,
            error_details=None,
        )
        current = self._load(session, task_id)
        if updated:
            return True, True, current, old_status
        same = (
            current.status is TaskStatus.COMPLETED
            and current.new_script == new_script
            and (current.analysis or {}) == analysis
        )
        return same, False, current, old_status

    async def mark_completed(
        self,
        task: AdScriptTask,
        new_script: str,
        analysis: dict[str, Any] | None = None,
    ) -> bool:
        """Complete a task with the transformed script (idempotent).

        Returns:
            True if the task moved to completed, or was already completed with
            exactly this script and analysis; False if it is final with a
            different outcome, in which case the row is left untouched
        """
        analysis = dict(analysis or {})
        with self._transaction() as session:
            ok, changed, current, old_status = self._mark_completed(
                session, task.id, new_script, analysis
            )
        self._sync(task, current)

        self._audit_completion(task, ok, changed, old_status)
        return ok

    def _audit_completion(
        self, task: AdScriptTask, ok: bool, changed: bool, old_status: TaskStatus
    ) -> None:
        if changed:
            logger.info(
                "Task marked as completed",
                extra={"task_id": task.id, "event": "task.completed"},
            )
            self.audit.log_status_change(task, old_status, TaskStatus.COMPLETED)
            self.audit.log_task_completed(task)
        elif ok:
            self.audit.log_idempotent_operation(task, "success_result", True)
        else:
            logger.warning(
                "Failed to mark task as completed, current status %s",
                _status_value(task.status),
                extra={"task_id": task.id},
            )
            self.audit.log_idempotent_operation(task, "success_result", False)

    def _mark_failed(
        self, session: Session, task_id: str, error_details: str
    ) -> tuple[bool, bool, AdScriptTask, TaskStatus]:
        """Returns (ok, changed, current row, status before the write)."""
        old_status = TaskStatus(self._load(session, task_id).status)
        updated = self._conditional_update(
            session,
            task_id,
            ACTIVE_STATUSES,
            status=TaskStatus.FAILED,
            error_details=error_details,
        )
        current = self._load(session, task_id)
        if updated:
            return True, True, current, old_status
        same = current.status is TaskStatus.FAILED and current.error_details == error_details
        return same, False, current, old_status

    async def mark_failed(self, task: AdScriptTask, error_details: str) -> bool:
        """Fail a task with error details (idempotent).

        Returns:
            True if the task moved to failed, or was already failed with
            exactly these details; False if it is final with a different
            outcome, in which case the row is left untouched
        """
        with self._transaction() as session:
            ok, changed, current, old_status = self._mark_failed(session, task.id, error_details)
        self._sync(task, current)

        self._audit_failure(task, ok, changed, old_status, error_details)
        return ok

    def _audit_failure(
        self,
        task: AdScriptTask,
        ok: bool,
        changed: bool,
        old_status: TaskStatus,
        error_details: str,
    ) -> None:
        if changed:
            logger.info(
                "Task marked as failed: %s",
                error_details,
                extra={"task_id": task.id, "event": "task.failed"},
            )
            self.audit.log_status_change(task, old_status, TaskStatus.FAILED)
            self.audit.log_task_failed(task, error_details)
        elif ok:
            self.audit.log_idempotent_operation(task, "error_result", True)
        else:
            logger.warning(
                "Failed to mark task as failed, current status %s",
                _status_value(task.status),
                extra={"task_id": task.id},
            )
            self.audit.log_idempotent_operation(task, "error_result", False)

    # ========================================================================
    # CALLBACK RESULTS
    # ========================================================================

    def _log_result_received(self, task: AdScriptTask, payload: ResultPayload) -> None:
        logger.info(
            "Processing %s result payload",
            payload.kind,
            extra={"task_id": task.id, "event": "webhook.received"},
        )
        self.audit.log_webhook_event(
            "received",
            task,
            {
                "payload_type": payload.kind,
                "has_new_script": payload.new_script is not None,
                "has_error": payload.error is not None,
            },
        )

    def _log_invalid_payload(self, task: AdScriptTask, payload: ResultPayload) -> None:
        logger.error(
            "Invalid result payload received, forcing failure",
            extra={"task_id": task.id},
        )
        self.audit.log_error(
            "Invalid result payload received",
            ValueError("Invalid payload format"),
            {"task_id": task.id, "payload_keys": sorted(payload.to_dict())},
        )

    async def apply_result(self, task: AdScriptTask, payload: ResultPayload) -> bool:
        """Apply a callback result to the task.

        A success payload completes the task, an error payload fails it, and
        a payload that is neither fails it with INVALID_PAYLOAD_MESSAGE.

        Returns:
            Result of the underlying mark_completed / mark_failed call
        """
        self._log_result_received(task, payload)

        if payload.is_success():
            return await self.mark_completed(task, payload.new_script, payload.analysis)
        if payload.is_error():
            return await self.mark_failed(task, payload.error)

        self._log_invalid_payload(task, payload)
        return await self.mark_failed(task, INVALID_PAYLOAD_MESSAGE)

    @staticmethod
    def _is_outcome_already_applied(task: AdScriptTask, payload: ResultPayload) -> bool:
        """Whether a final task already holds exactly this valid payload's outcome."""
        if payload.is_success():
            return (
                task.status is TaskStatus.COMPLETED
                and task.new_script == payload.new_script
                and (task.analysis or {}) == (payload.analysis or {})
            )
        return task.status is TaskStatus.FAILED and task.error_details == payload.error

    @classmethod
    def _classify_final(cls, task: AdScriptTask, payload: ResultPayload) -> ResultKind:
        """How a callback for an already-final task is answered."""
        if not payload.is_valid():
            return ResultKind.INVALID_PAYLOAD
        if cls._is_outcome_already_applied(task, payload):
            return ResultKind.IDEMPOTENT
        return ResultKind.CONFLICT

    async def apply_result_transactionally(
        self, task: AdScriptTask, payload: ResultPayload
    ) -> ResultOutcome:
        """Apply a callback result inside one transaction, never raising.

        The row is read (locked where the database supports it) and written
        in the same transaction. The caller's instance and the outcome are
        taken from the row only after the commit; if the transaction fails
        they keep the caller's last known state. Any exception is logged and
        turned into an ERROR outcome so the HTTP layer can always answer
        deterministically.
        """
        self._log_result_received(task, payload)
        final_kind: ResultKind | None = None

        try:
            with self._transaction() as session:
                current = self._load(session, task.id, for_update=True)

                if current.is_final():
                    final_kind = self._classify_final(current, payload)
                elif payload.is_success():
                    analysis = dict(payload.analysis or {})
                    ok, changed, current, old_status = self._mark_completed(
                        session, task.id, payload.new_script, analysis
                    )
                else:
                    error_details = payload.error if payload.is_error() else INVALID_PAYLOAD_MESSAGE
                    ok, changed, current, old_status = self._mark_failed(
                        session, task.id, error_details
                    )
        except Exception as e:
            logger.exception(
                "Exception during result processing", extra={"task_id": task.id}
            )
            self.audit.log_error("Exception during result processing", e, {"task_id": task.id})
            return self._outcome(
                task,
                ResultKind.ERROR,
                False,
                False,
                "Exception occurred during processing",
                error=str(e),
            )

        self._sync(task, current)

        if final_kind is ResultKind.INVALID_PAYLOAD:
            self._log_invalid_payload(task, payload)
            return self._outcome(
                task, ResultKind.INVALID_PAYLOAD, False, False, "Invalid result payload"
            )
        if final_kind is ResultKind.IDEMPOTENT:
            self.audit.log_idempotent_operation(task, f"{payload.kind}_result", True)
            return self._outcome(task, ResultKind.IDEMPOTENT, True, False, "No changes needed")
        if final_kind is ResultKind.CONFLICT:
            self.audit.log_idempotent_operation(task, "incompatible_result", False)
            return self._outcome(task, ResultKind.CONFLICT, False, False, "Conflict with final state")

        if payload.is_success():
            self._audit_completion(task, ok, changed, old_status)
        else:
            if not payload.is_valid():
                self._log_invalid_payload(task, payload)
            self._audit_failure(task, ok, changed, old_status, error_details)

        if not payload.is_valid():
            return self._outcome(
                task,
                ResultKind.INVALID_PAYLOAD,
                False,
                changed,
                "Invalid result payload; task marked as failed",
            )
        if not ok:
            return self._outcome(task, ResultKind.CONFLICT, False, False, "Conflict with final state")

        self.audit.log_api_response(
            "process_result",
            200,
            {"task_id": task.id, "was_updated": changed, "status": _status_value(task.status)},
        )
        return self._outcome(
            task, ResultKind.APPLIED, True, changed, "Result processed successfully"
        )

    @staticmethod
    def _outcome(
        task: AdScriptTask,
        kind: ResultKind,
        success: bool,
        was_updated: bool,
        message: str,
        error: str | None = None,
    ) -> ResultOutcome:
        return ResultOutcome(
            success=success,
            was_updated=was_updated,
            status=_status_value(task.status),
            message=message,
            task_id=task.id,
            kind=kind,
            error=error,
        )

    # ========================================================================
    # OUTBOUND PAYLOAD
    # ========================================================================

    def create_webhook_payload(self, task: AdScriptTask) -> WorkflowPayload:
        """Build the n8n trigger payload from the task's immutable fields."""
        payload = WorkflowPayload.from_task(task)
        self.audit.log_webhook_event(
            "sent", task, {"webhook_type": "task_processing", "payload_task_id": payload.task_id}
        )
        return payload
