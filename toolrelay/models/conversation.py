"""Conversation state models."""

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from toolrelay.models.llm import ToolResult


class Role(StrEnum):
    """Author of a message in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Message(BaseModel):
    """A single message in a conversation history."""

    model_config = {"frozen": True}

    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def check_tool_metadata(self) -> "Message":
        """Tool messages must reference the call they answer."""
        if self.role == Role.TOOL:
            missing = [key for key in ("tool_call_id", "tool_name") if key not in self.metadata]
            if missing:
                raise ValueError(f"Tool messages require metadata keys: {', '.join(missing)}")
        return self

    @classmethod
    def user(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=Role.USER, content=content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, metadata=metadata)

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> "Message":
        return cls(
            role=Role.TOOL,
            content=result.content,
            metadata={"tool_call_id": result.tool_call_id, "tool_name": result.name, "error": result.error},
        )


class GenerationOptions(BaseModel):
    """Per-conversation model generation settings."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    system_prompt: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ConversationMetadata(BaseModel):
    """Snapshot of a conversation's bookkeeping."""

    id: str
    created_at: datetime
    last_activity: datetime
    message_count: int
    tool_count: int
    total_tokens: int


@dataclass
class Conversation:
    """Mutable conversation state, owned and guarded by the conversation store."""

    id: str
    history: list[Message] = field(default_factory=list)
    tools: list[Any] = field(default_factory=list)
    options: GenerationOptions = field(default_factory=GenerationOptions)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    message_count: int = 0
    total_tokens: int = 0
    ended: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def metadata(self) -> ConversationMetadata:
        return ConversationMetadata(
            id=self.id,
            created_at=self.created_at,
            last_activity=self.last_activity,
            message_count=self.message_count,
            tool_count=len(self.tools),
            total_tokens=self.total_tokens,
        )
