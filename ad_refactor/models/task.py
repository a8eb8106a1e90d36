"""
Ad script task model for database storage.

This module defines the task status enumeration and the AdScriptTask entity
schema using SQLModel.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    """Lifecycle status of an ad script task.

    Status only moves forward: pending -> processing -> completed | failed.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def values(cls) -> list[str]:
        """Return all status values."""
        return [status.value for status in cls]

    def is_final(self) -> bool:
        """Check if the status is terminal."""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def can_process(self) -> bool:
        """Check if the status allows dispatching to n8n."""
        return self is TaskStatus.PENDING


class AdScriptTask(SQLModel, table=True):
    """
    One ad script refactoring request.

    The reference script and outcome description are fixed at creation.
    Status and result fields are written only by AdScriptTaskService through
    conditional updates.

    Attributes:
        id: UUID string assigned at creation
        reference_script: Ad script to transform
        outcome_description: Desired outcome of the transformation
        status: Current lifecycle status
        new_script: Transformed script (set once on completion)
        analysis: Structured analysis returned with the script
        error_details: Failure description (set once on failure)
        created_at: Timestamp when the task was created
        updated_at: Timestamp of the last status write
    """

    __tablename__ = "ad_script_tasks"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36
    )
    reference_script: str = Field(sa_column=Column(Text, nullable=False))
    outcome_description: str = Field(sa_column=Column(Text, nullable=False))
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    new_script: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    analysis: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    error_details: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_final(self) -> bool:
        """Check if the task is in a terminal state."""
        return TaskStatus(self.status).is_final()

    def can_process(self) -> bool:
        """Check if the task can be dispatched."""
        return TaskStatus(self.status).can_process()
