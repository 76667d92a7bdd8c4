"""
Error taxonomy for the scripting workflow.

Every error carries a machine-readable code, the stage it originated from
and a details dict, so it can be stored as-is into task.error or returned
by the API.
"""

from typing import Any, Dict, Optional


class ScriptingWorkflowError(RuntimeError):
    default_code = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        self.message = str(message)
        self.code = str(code or self.default_code)
        self.stage = stage
        self.details = details or {}
        super().__init__(f"{self.code}: {self.message}")

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "stage": self.stage,
            "details": self.details,
        }


class ValidationError(ScriptingWorkflowError):
    """Data failed a required-shape check. Never merged into the blueprint."""

    default_code = "VALIDATION_ERROR"


class InvalidAIResponse(ValidationError):
    """AI output did not match the operation's response contract."""

    default_code = "INVALID_AI_RESPONSE"

    def __init__(self, message: str, operation: Optional[str] = None, stage: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if operation:
            details.setdefault("operation", operation)
        self.operation = operation
        super().__init__(message, stage=stage, details=details)


class PreconditionError(ScriptingWorkflowError):
    """Stage cannot advance (or an edit is not allowed) in the current state."""

    default_code = "PRECONDITION_FAILED"


class TaskAlreadyActive(ScriptingWorkflowError):
    default_code = "TASK_ALREADY_ACTIVE"

    def __init__(self, video_id: str, active_task_id: str):
        self.video_id = video_id
        self.active_task_id = active_task_id
        super().__init__(
            f"Task {active_task_id} is still running for video {video_id}",
            details={"video_id": video_id, "active_task_id": active_task_id},
        )


class PersistenceError(ScriptingWorkflowError):
    """Write to the blueprint store failed. Recoverable."""

    default_code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, video_id: Optional[str] = None, original_error: Optional[BaseException] = None):
        self.video_id = video_id
        self.original_error = original_error
        details = {"video_id": video_id}
        if original_error is not None:
            details["original_error"] = f"{type(original_error).__name__}: {original_error}"
        super().__init__(message, details=details)


class AIOperationError(ScriptingWorkflowError):
    """The AI capability itself failed (HTTP error, empty or unparsable output)."""

    default_code = "AI_OPERATION_ERROR"


def error_payload(error: BaseException) -> dict:
    """
    Consistent JSON error body for any exception.
    """
    if isinstance(error, ScriptingWorkflowError):
        return {
            "success": False,
            "error": error.message,
            "error_code": error.code,
            "stage": error.stage,
            "details": error.details,
        }
    return {
        "success": False,
        "error": str(error),
        "error_code": "UNKNOWN_ERROR",
        "stage": None,
        "details": {},
    }
