"""
Error taxonomy for the orchestration core.

Every error carries a ``kind`` (what the execution history and callers see)
and a ``retryable`` flag (what the action executor's retry loop checks).

    validation_error          malformed condition/action config, not retried
    transient_external_error  collaborator timeout / 5xx, retried with backoff
    permanent_external_error  collaborator 4xx / missing record, not retried
    stale_session             optimistic-concurrency rejection, caller refetches
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import ErrorKind


class OrchestrationError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            **self.context,
        }


class AutomationValidationError(OrchestrationError):
    """Malformed automation, condition tree or action parameters."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: Optional[list[str]] = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or [message]


class TransientExternalError(OrchestrationError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class PermanentExternalError(OrchestrationError):
    kind = ErrorKind.PERMANENT


class StaleSessionError(OrchestrationError):
    kind = ErrorKind.STALE_SESSION
    retryable = True

    def __init__(self, conversation_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Session {conversation_id} is stale: expected version {expected_version}"
            + (f", found {actual_version}" if actual_version is not None else ""),
            conversation_id=conversation_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class IllegalTransitionError(OrchestrationError):
    kind = ErrorKind.VALIDATION

    def __init__(self, from_phase: str, trigger: str):
        super().__init__(
            f"No transition from '{from_phase}' on '{trigger}'",
            from_phase=from_phase,
            trigger=trigger,
        )
        self.from_phase = from_phase
        self.trigger = trigger


class SessionNotFoundError(OrchestrationError):
    kind = ErrorKind.VALIDATION

    def __init__(self, workspace_id: str, conversation_id: str):
        super().__init__(
            f"No session for conversation {conversation_id}",
            workspace_id=workspace_id,
            conversation_id=conversation_id,
        )


class TimerError(OrchestrationError):
    kind = ErrorKind.VALIDATION
