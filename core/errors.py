"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class ValidationError(ValidationIssue):
    """Tool arguments did not match the declared parameter schema."""


class MissingRequiredField(ValidationError):
    def __init__(self, field: str):
        super().__init__(
            f"missing required field: {field}",
            field=field,
            error_type="required",
        )


class TypeMismatch(ValidationError):
    def __init__(self, field: str, expected: str, actual: str):
        super().__init__(
            f"field {field} must be of type {expected}, got {actual}",
            field=field,
            error_type="invalid_type",
            data={"expected": expected, "actual": actual},
        )


class InvalidEnumValue(ValidationError):
    def __init__(self, field: str, value: object, allowed: list[str]):
        super().__init__(
            f"field {field} must be one of {allowed}, got {value!r}",
            field=field,
            error_type="invalid_enum",
            data={"allowed": list(allowed)},
        )


class NotFound(LookupError):
    """A record, capability or tenant does not exist."""

    def __init__(self, message: str, resource: str = "unknown", resource_id: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class DuplicateCapability(ValueError):
    """A capability name was registered twice."""


class InfrastructureError(RuntimeError):
    """A dependency (database, embedding or completion provider) failed."""


class StorageUnavailable(InfrastructureError):
    """Raised when the backing database cannot serve a request."""


class EmbeddingFailed(InfrastructureError):
    """Raised when the embedding provider is unavailable or returns no vectors."""


class CompletionFailed(InfrastructureError):
    """Raised when the chat-completion provider call fails."""


class TurnCancelled(InfrastructureError):
    """Raised when a turn exceeds its caller-supplied deadline."""

