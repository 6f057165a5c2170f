"""
assistant_errors.py
Classified errors raised by the assistant lifecycle and conversation layer.

Every error carries a ``kind`` so front ends can react differently:

    session_expired  – thread/assistant went away; start over or resume
    service_failure  – the assistant service reported a failure
    timeout          – the request ran out of time
    transient        – network / rate limit / 5xx; safe to retry the turn
"""

from __future__ import annotations

from typing import Any, Dict, Optional

SESSION_EXPIRED = "session_expired"
SERVICE_FAILURE = "service_failure"
TIMEOUT = "timeout"
TRANSIENT = "transient"

_USER_MESSAGES = {
    SESSION_EXPIRED: "Your conversation session expired. Starting over.",
    SERVICE_FAILURE: "The assistant service reported a failure.",
    TIMEOUT: "The request timed out.",
    TRANSIENT: "The assistant service is temporarily unreachable. Please try again.",
}


class AssistantServiceError(Exception):
    """Base class for every classified error in this package."""

    code = "assistant_service_error"
    kind = SERVICE_FAILURE

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "kind": self.kind,
            "user_message": self.user_message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class UploadError(AssistantServiceError):
    code = "upload_failed"


class IngestFailed(AssistantServiceError):
    code = "ingest_failed"


class AssistantCreateError(AssistantServiceError):
    code = "assistant_create_failed"


class AssistantUpdateError(AssistantServiceError):
    code = "assistant_update_failed"


class AssistantNotFound(AssistantServiceError):
    code = "assistant_not_found"
    kind = SESSION_EXPIRED


class ThreadNotFound(AssistantServiceError):
    """The requested thread is gone. May suggest another live thread."""

    code = "thread_not_found"
    kind = SESSION_EXPIRED

    def __init__(
        self,
        message: str = "Thread not found or invalid. Please start a new conversation.",
        *,
        alternate_thread_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.alternate_thread_id = alternate_thread_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.alternate_thread_id:
            payload["alternate_thread_id"] = self.alternate_thread_id
        return payload


class AlternateThreadAvailable(ThreadNotFound):
    """Requested thread is gone but a different cached thread is still live."""

    code = "thread_alternative_available"

    def __init__(self, requested_thread_id: str, alternate_thread_id: str):
        super().__init__(
            f"Requested thread {requested_thread_id} not found, "
            f"but another valid thread exists: {alternate_thread_id}",
            alternate_thread_id=alternate_thread_id,
            details={"requested_thread_id": requested_thread_id},
        )
        self.requested_thread_id = requested_thread_id


class RunFailed(AssistantServiceError):
    code = "run_failed"

    def __init__(self, reason: str, *, run_id: Optional[str] = None):
        super().__init__(f"Assistant run failed: {reason}", details={"run_id": run_id} if run_id else None)
        self.reason = reason
        self.run_id = run_id


class RunTimedOut(AssistantServiceError):
    code = "run_timed_out"
    kind = TIMEOUT


class RunCancelled(AssistantServiceError):
    code = "run_cancelled"


class MalformedResponse(AssistantServiceError):
    code = "malformed_response"


class TransientRemoteError(AssistantServiceError):
    code = "transient_remote_error"
    kind = TRANSIENT
