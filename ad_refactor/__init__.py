"""Ad Refactor - ad script task lifecycle and n8n webhook orchestration.

A task carries a reference ad script and a desired outcome. It is created in
``pending``, dispatched to an n8n workflow by a background job, and finished
by a signed callback from n8n carrying either a new script or an error.

Note: Imports are lazy to keep test collection free of the web stack.
Use explicit imports: `from ad_refactor.task_service import AdScriptTaskService`
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
