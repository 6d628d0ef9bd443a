"""Models module - Pydantic data models"""

from .chat import (
    CancelAction,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    QuitAction,
    ResolveAction,
    Role,
    StreamEvent,
    SubmitAction,
    TokenCountEvent,
    ToolCallEvent,
    TurnUpdate,
    UIEvent,
    UserAction,
)
from .context import ConversationContext, FileLoadError, LoadedFile, ModelRequest, ToolSchema
from .diff import CodeDiff, DiffHunk, MatchConfidence, MatchKind
from .intent import Chat, CodeReview, Command, Debug, FileMention, UserIntent
from .modification import (
    ConfirmationResult,
    CreateOp,
    DeleteOp,
    ModificationOp,
    ModifyOp,
    OperationResult,
    Outcome,
    PendingConfirmation,
    PlannedChange,
    ProcessedResponse,
)

__all__ = [
    # Chat models
    "Role",
    "Message",
    "StreamEvent",
    "ContentEvent",
    "ToolCallEvent",
    "TokenCountEvent",
    "DoneEvent",
    "ErrorEvent",
    "TurnUpdate",
    "UIEvent",
    "UserAction",
    "SubmitAction",
    "CancelAction",
    "ResolveAction",
    "QuitAction",
    # Intent models
    "UserIntent",
    "FileMention",
    "Command",
    "Chat",
    "CodeReview",
    "Debug",
    # Context models
    "ConversationContext",
    "LoadedFile",
    "FileLoadError",
    "ToolSchema",
    "ModelRequest",
    # Diff models
    "CodeDiff",
    "DiffHunk",
    "MatchConfidence",
    "MatchKind",
    # Modification models
    "ModificationOp",
    "CreateOp",
    "ModifyOp",
    "DeleteOp",
    "ProcessedResponse",
    "PlannedChange",
    "PendingConfirmation",
    "Outcome",
    "OperationResult",
    "ConfirmationResult",
]
