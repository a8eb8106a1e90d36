"""Database models and payloads for the ad script service.

This module contains the SQLModel task schema and the n8n payload types.
"""

from ad_refactor.models.payloads import ResultPayload, WorkflowPayload
from ad_refactor.models.task import AdScriptTask, TaskStatus

__all__ = [
    "AdScriptTask",
    "TaskStatus",
    "ResultPayload",
    "WorkflowPayload",
]
