"""Error taxonomy for tool building, execution and conversations."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class ToolErrorKind(StrEnum):
    """Closed set of tool failure kinds."""

    VALIDATION = "validation_error"
    EXECUTION = "execution_error"
    TIMEOUT = "timeout"
    SERIALIZATION = "serialization_error"
    EXCEPTION = "exception"
    UNAVAILABLE = "unavailable"


class ToolError(BaseModel):
    """A tool failure reported as a value.

    Use the classmethod constructors; each fills in the payload that belongs
    to its kind.
    """

    kind: ToolErrorKind
    message: str
    field: str | None = None
    reason: str | None = None
    detail: Any = None
    budget_ms: int | None = None
    tool: str | None = None

    @classmethod
    def validation(cls, field: str, reason: str) -> "ToolError":
        return cls(kind=ToolErrorKind.VALIDATION, message=f"Invalid parameter {field}: {reason}", field=field, reason=reason)

    @classmethod
    def execution(cls, detail: Any) -> "ToolError":
        return cls(kind=ToolErrorKind.EXECUTION, message="Tool execution failed", detail=detail)

    @classmethod
    def timeout(cls, budget_ms: int) -> "ToolError":
        return cls(kind=ToolErrorKind.TIMEOUT, message=f"Tool execution timed out after {budget_ms}ms", budget_ms=budget_ms)

    @classmethod
    def serialization(cls, detail: Any) -> "ToolError":
        return cls(kind=ToolErrorKind.SERIALIZATION, message="Failed to serialize result to JSON", detail=detail)

    @classmethod
    def exception(cls, message: str) -> "ToolError":
        return cls(kind=ToolErrorKind.EXCEPTION, message=message)

    @classmethod
    def unavailable(cls, tool: str) -> "ToolError":
        return cls(
            kind=ToolErrorKind.UNAVAILABLE,
            message="Tool temporarily unavailable due to repeated failures",
            tool=tool,
        )


class ToolOutcome(BaseModel):
    """Result of a tool callback: a JSON-safe value or a ToolError."""

    ok: bool
    value: Any = None
    error: ToolError | None = None

    @classmethod
    def success(cls, value: Any) -> "ToolOutcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ToolError) -> "ToolOutcome":
        return cls(ok=False, error=error)


class ToolRelayError(Exception):
    """Base class for exceptions raised by toolrelay."""


class ParameterError(ToolRelayError, ValueError):
    """Raised by the coercer when an argument cannot be converted."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")

    def to_tool_error(self) -> ToolError:
        return ToolError.validation(self.field, self.reason)


class CapabilityFailure(ToolRelayError):
    """Raised by a capability handler to report an expected failure."""

    def __init__(self, detail: Any):
        self.detail = detail
        super().__init__(str(detail))


class ToolBuildError(ToolRelayError):
    """Raised when a capability cannot be turned into a tool descriptor."""

    def __init__(self, error: ToolError, capability: Any = None):
        self.error = error
        self.capability = capability
        super().__init__(error.message)


class BatchBuildError(ToolRelayError):
    """Raised when no capability in a batch could be built."""

    def __init__(self, failures: list[ToolBuildError]):
        self.failures = failures
        super().__init__(f"No capabilities could be converted to tool descriptors ({len(failures)} failed)")


class ConversationNotFoundError(ToolRelayError, LookupError):
    """Raised by services that need a conversation which does not exist."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class CredentialError(ToolRelayError, ValueError):
    """Raised when no credentials can be resolved for a provider."""
