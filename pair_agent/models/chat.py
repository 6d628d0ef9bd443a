"""Conversation data models: messages, stream events, UI notifications, user actions"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Author of a message"""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Message(BaseModel):
    """One entry of the conversation history"""

    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    intent: str | None = None
    in_progress: bool = False

    def append(self, fragment: str) -> None:
        """Append streamed text; only legal while the message is in progress"""
        if not self.in_progress:
            raise ValueError("Cannot append to a finalized message")
        self.content += fragment


# ========== Stream Events ==========


class ContentEvent(BaseModel):
    """A fragment of assistant text"""

    model_config = ConfigDict(frozen=True)

    type: Literal["content"] = "content"
    text: str


class ToolCallEvent(BaseModel):
    """The model asked for a tool to be executed"""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str | None = None
    name: str
    arguments: dict[str, Any] = {}


class TokenCountEvent(BaseModel):
    """Token usage reported by the provider"""

    model_config = ConfigDict(frozen=True)

    type: Literal["token_count"] = "token_count"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class DoneEvent(BaseModel):
    """The provider finished the reply"""

    model_config = ConfigDict(frozen=True)

    type: Literal["done"] = "done"


class ErrorEvent(BaseModel):
    """The stream failed"""

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    reason: str
    transient: bool = False


StreamEvent = Annotated[
    Union[ContentEvent, ToolCallEvent, TokenCountEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


class TurnUpdate(BaseModel):
    """A stream event tagged with the turn that produced it"""

    model_config = ConfigDict(frozen=True)

    turn_id: int
    event: StreamEvent


# ========== UI Notifications ==========


class UIEvent(BaseModel):
    """Append-only notification for whatever renders the conversation"""

    type: Literal[
        "message_appended",
        "message_chunk_appended",
        "confirmation_pending",
        "confirmation_resolved",
    ]
    message_index: int | None = None
    message: Message | None = None
    chunk: str | None = None
    batch: Any = None  # PendingConfirmation
    result: Any = None  # ConfirmationResult


# ========== User Actions ==========


class SubmitAction(BaseModel):
    """User submitted a line of input"""

    model_config = ConfigDict(frozen=True)

    type: Literal["submit"] = "submit"
    text: str


class CancelAction(BaseModel):
    """User asked to stop the streaming turn"""

    model_config = ConfigDict(frozen=True)

    type: Literal["cancel"] = "cancel"


class ResolveAction(BaseModel):
    """User accepted or rejected the pending confirmation batch"""

    model_config = ConfigDict(frozen=True)

    type: Literal["resolve"] = "resolve"
    accept: bool


class QuitAction(BaseModel):
    """Stop the foreground loop"""

    model_config = ConfigDict(frozen=True)

    type: Literal["quit"] = "quit"


UserAction = Annotated[
    Union[SubmitAction, CancelAction, ResolveAction, QuitAction],
    Field(discriminator="type"),
]
