"""Payloads exchanged with the n8n workflow.

WorkflowPayload is the body sent to the n8n trigger webhook. ResultPayload
is the parsed body of the signed callback n8n sends back.
"""

from dataclasses import dataclass
from typing import Any

from ad_refactor.models.task import AdScriptTask


@dataclass(frozen=True)
class WorkflowPayload:
    """Trigger request body: task identity plus the two immutable inputs."""

    task_id: str
    reference_script: str
    outcome_description: str

    @classmethod
    def from_task(cls, task: AdScriptTask) -> "WorkflowPayload":
        """Build the payload from a task's immutable fields."""
        return cls(
            task_id=str(task.id),
            reference_script=task.reference_script,
            outcome_description=task.outcome_description,
        )

    def to_dict(self) -> dict[str, str]:
        """Convert to the JSON body sent to n8n."""
        return {
            "task_id": self.task_id,
            "reference_script": self.reference_script,
            "outcome_description": self.outcome_description,
        }


@dataclass(frozen=True)
class ResultPayload:
    """Callback body from n8n: either a new script or an error.

    A payload carrying both, or neither, is invalid. It is still applied:
    the task is forced to failed with INVALID_PAYLOAD_MESSAGE.
    """

    new_script: str | None = None
    analysis: dict[str, Any] | None = None
    error: str | None = None

    def is_success(self) -> bool:
        return self.new_script is not None and self.error is None

    def is_error(self) -> bool:
        return self.error is not None and self.new_script is None

    def is_valid(self) -> bool:
        return self.is_success() or self.is_error()

    @property
    def kind(self) -> str:
        """Short label used in logs: success, error or invalid."""
        if self.is_success():
            return "success"
        if self.is_error():
            return "error"
        return "invalid"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResultPayload":
        """Create a payload from a decoded callback body."""
        return cls(
            new_script=data.get("new_script"),
            analysis=data.get("analysis"),
            error=data.get("error"),
        )

    @classmethod
    def success(cls, new_script: str, analysis: dict[str, Any] | None = None) -> "ResultPayload":
        return cls(new_script=new_script, analysis=analysis)

    @classmethod
    def failure(cls, error: str) -> "ResultPayload":
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dict, dropping absent fields."""
        data = {
            "new_script": self.new_script,
            "analysis": self.analysis,
            "error": self.error,
        }
        return {key: value for key, value in data.items() if value is not None}
