"""Ad Script Task API Routes.

Provides endpoints for submitting ad scripts, receiving n8n results and
viewing tasks.
"""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ad_refactor.audit import AuditLogService
from ad_refactor.exceptions import TaskNotFoundError
from ad_refactor.models.payloads import ResultPayload
from ad_refactor.models.task import AdScriptTask, TaskStatus
from ad_refactor.task_service import AdScriptTaskService
from ad_refactor.webhook_auth import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ad-scripts", tags=["ad-scripts"])


class StoreAdScriptRequest(BaseModel):
    """Request body for creating a task."""

    reference_script: str = Field(min_length=10, max_length=10000)
    outcome_description: str = Field(min_length=5, max_length=1000)


class ProcessResultRequest(BaseModel):
    """Callback body sent by n8n."""

    new_script: str | None = Field(default=None, max_length=50000)
    analysis: dict[str, Any] | None = None
    error: str | None = Field(default=None, max_length=5000)


class TaskResponse(BaseModel):
    """Task representation returned by the API."""

    id: str
    status: str
    reference_script: str
    outcome_description: str
    new_script: str | None = None
    analysis: dict[str, Any] | None = None
    error_details: str | None = None
    created_at: datetime
    updated_at: datetime


def get_service(request: Request) -> AdScriptTaskService:
    return request.app.state.service


def get_audit(request: Request) -> AuditLogService:
    return request.app.state.audit


def _task_data(task: AdScriptTask, was_updated: bool) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": task.id,
        "status": TaskStatus(task.status).value,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
        "was_updated": was_updated,
    }
    if task.status is TaskStatus.COMPLETED:
        data["new_script"] = task.new_script
        data["analysis"] = task.analysis
    if task.status is TaskStatus.FAILED:
        data["error_details"] = task.error_details
    return data


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def store_ad_script_task(
    body: StoreAdScriptRequest,
    service: AdScriptTaskService = Depends(get_service),
    audit: AuditLogService = Depends(get_audit),
) -> dict[str, Any]:
    """Create a task and queue it for processing.

    Example:
        POST /api/ad-scripts
        {"reference_script": "console.log(1)", "outcome_description": "add docs"}
        Response (202): {"data": {"id": "...", "status": "pending", ...}, ...}
    """
    audit.log_api_request(
        "store_ad_script_task",
        {
            "reference_script_length": len(body.reference_script),
            "outcome_description_length": len(body.outcome_description),
        },
    )

    task = await service.create_and_dispatch_task(
        body.reference_script, body.outcome_description
    )

    audit.log_api_response(
        "store_ad_script_task",
        status.HTTP_202_ACCEPTED,
        {"task_id": task.id, "status": TaskStatus(task.status).value},
    )
    return {
        "success": True,
        "message": "Ad script task created and queued for processing",
        "data": {
            "id": task.id,
            "status": TaskStatus(task.status).value,
            "created_at": task.created_at.isoformat(),
        },
    }


@router.post("/{task_id}/result")
async def process_ad_script_result(
    task_id: str,
    raw_body: bytes = Depends(verify_webhook_signature),
    service: AdScriptTaskService = Depends(get_service),
    audit: AuditLogService = Depends(get_audit),
) -> JSONResponse:
    """Apply a signed n8n callback to the task.

    Status codes: 200 applied or idempotent replay, 401 bad signature,
    404 unknown task, 409 conflict with a final task, 422 invalid payload,
    500 storage failure.
    """
    try:
        task = await service.find_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e

    try:
        body = ProcessResultRequest.model_validate(json.loads(raw_body or b"{}"))
    except (ValueError, ValidationError) as e:
        # Shape errors are still applied: the task is forced to failed
        logger.warning("Malformed callback body: %s", e, extra={"task_id": task_id})
        body = ProcessResultRequest()

    audit.log_api_request(
        "process_ad_script_result",
        {
            "task_id": task.id,
            "task_status": TaskStatus(task.status).value,
            "has_new_script": body.new_script is not None,
            "has_error": body.error is not None,
        },
    )

    payload = ResultPayload(
        new_script=body.new_script, analysis=body.analysis, error=body.error
    )
    outcome = await service.apply_result_transactionally(task, payload)

    content: dict[str, Any] = {
        "success": outcome.success,
        "message": outcome.message,
        "data": _task_data(task, outcome.was_updated),
    }
    if outcome.error is not None:
        content["error"] = outcome.error

    audit.log_api_response(
        "process_ad_script_result",
        outcome.http_status,
        {"task_id": task.id, "kind": outcome.kind.value, "final_status": outcome.status},
    )
    return JSONResponse(status_code=outcome.http_status, content=content)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_ad_script_task(
    task_id: str,
    service: AdScriptTaskService = Depends(get_service),
) -> TaskResponse:
    """Get a task by ID.

    Raises:
        HTTPException: 404 if task not found
    """
    try:
        task = await service.find_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e

    return TaskResponse(
        id=task.id,
        status=TaskStatus(task.status).value,
        reference_script=task.reference_script,
        outcome_description=task.outcome_description,
        new_script=task.new_script,
        analysis=task.analysis,
        error_details=task.error_details,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )
