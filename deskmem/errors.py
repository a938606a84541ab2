"""
Shared error types for core services.
"""

from __future__ import annotations


class DeskMemoryError(Exception):
    """Base class for errors surfaced to callers of the core."""

    retryable = False
    error_code = "deskmem_error"

    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message)
        self.data = data


class NotFoundError(DeskMemoryError):
    """A tenant, customer, conversation or record does not exist."""

    error_code = "not_found"

    def __init__(self, entity: str, entity_id, data: dict | None = None):
        super().__init__(f"{entity} not found: {entity_id}", data=data)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(DeskMemoryError):
    """Write rejected by state (archived conversation, duplicate summary, job in flight)."""

    error_code = "conflict"


class ExternalServiceError(DeskMemoryError):
    """Text generation or store call failed or timed out."""

    retryable = True
    error_code = "external_service_error"

    def __init__(self, message: str, service: str = "llm", data: dict | None = None):
        super().__init__(message, data=data)
        self.service = service


class ValidationIssue(DeskMemoryError, ValueError):
    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message, data=data)
        self.field = field
        self.error_type = error_type
        if error_code:
            self.error_code = error_code
