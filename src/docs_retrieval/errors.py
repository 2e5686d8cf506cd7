"""Error taxonomy for the retrieval engine.

Every error carries a machine readable ``code`` and an HTTP-style
``status_code`` so an API layer can translate it without inspecting types.
"""

from __future__ import annotations

from typing import Any


class RetrievalError(Exception):
    """Base error for retrieval operations."""

    code = "RETRIEVAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(RetrievalError):
    """Raised for bad queries, options or filters.

    ``errors`` holds every problem found, so callers see all of them at once
    instead of fixing one field per round trip.
    """

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        errors: list[str] | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if errors:
            details["errors"] = list(errors)
        super().__init__(message, details=details)
        self.field = field
        self.value = value
        self.errors = list(errors) if errors else [message]


class OperationTimeoutError(RetrievalError, TimeoutError):
    """Raised when an operation exceeds its deadline while queued or running."""

    code = "TIMEOUT_ERROR"
    status_code = 408

    def __init__(self, operation: str, timeout: float, *, stage: str = "running", message: str | None = None) -> None:
        super().__init__(
            message or f"Operation '{operation}' timed out after {timeout:g}s while {stage}",
            details={"operation": operation, "timeout": timeout, "stage": stage},
        )
        self.operation = operation
        self.timeout = timeout
        self.stage = stage


class ServiceUnavailableError(RetrievalError):
    """Raised when every fallback is exhausted; callers may retry later."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, service: str, message: str | None = None) -> None:
        super().__init__(
            message or f"{service} is temporarily unavailable. Please try again later.",
            details={"service": service},
        )
        self.service = service


class DocumentNotFoundError(RetrievalError):
    code = "DOCUMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}", details={"document_id": document_id})
        self.document_id = document_id


class DocumentAccessError(RetrievalError):
    code = "DOCUMENT_ACCESS_DENIED"
    status_code = 403

    def __init__(self, document_id: str, owner_id: str) -> None:
        super().__init__(
            f"Owner {owner_id} is not allowed to modify document {document_id}",
            details={"document_id": document_id},
        )
        self.document_id = document_id
        self.owner_id = owner_id


class OperationCancelledError(RetrievalError):
    """Raised to a queued operation that was cancelled before it was admitted."""

    code = "OPERATION_CANCELLED"
    status_code = 503

    def __init__(self, operation: str) -> None:
        super().__init__(f"Operation '{operation}' was cancelled before it started", details={"operation": operation})
        self.operation = operation
