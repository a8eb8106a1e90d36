"""
Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite task store; the n8n workflow and the
job queue are replaced by fakes.
"""

import hashlib
import hmac
from unittest.mock import MagicMock

import pytest

from ad_refactor.audit import AuditLogService
from ad_refactor.database import create_db_and_tables, create_db_engine
from ad_refactor.jobs import TriggerWorkflowJob
from ad_refactor.task_service import AdScriptTaskService

CALLBACK_SECRET = "test-callback-secret"


class RecordingDispatcher:
    """Job dispatcher that records jobs instead of running them."""

    def __init__(self):
        self.jobs: list[TriggerWorkflowJob] = []

    def dispatch(self, job: TriggerWorkflowJob) -> None:
        self.jobs.append(job)


def sign(body: bytes, secret: str = CALLBACK_SECRET) -> str:
    """Compute the X-N8N-Signature header value for a body."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def engine():
    """Create an in-memory task store with tables."""
    engine = create_db_engine("sqlite:///:memory:")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def audit():
    """Create a mock audit sink."""
    return MagicMock(spec=AuditLogService)


@pytest.fixture
def dispatcher():
    """Create a recording job dispatcher."""
    return RecordingDispatcher()


@pytest.fixture
def service(engine, audit, dispatcher):
    """Create a task service bound to the in-memory store."""
    return AdScriptTaskService(engine, audit=audit, dispatcher=dispatcher)


@pytest.fixture
async def pending_task(service):
    """Create a task in pending."""
    return await service.create_task("console.log(1)", "add docs")


@pytest.fixture
async def processing_task(service, pending_task):
    """Create a task in processing."""
    await service.mark_processing(pending_task)
    return pending_task


@pytest.fixture
def signer():
    """Return a function that signs callback bodies with the test secret."""
    return sign
