"""Per-turn context models: loaded files, tool schemas, the assembled request"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .chat import Message
from .intent import UserIntent


class LoadedFile(BaseModel):
    """A file pulled into the model context"""

    path: str
    content: str
    language: str = "text"
    line_count: int = 0


class FileLoadError(BaseModel):
    """A referenced file that could not be loaded"""

    path: str
    reason: str


class ToolSchema(BaseModel):
    """Function-calling schema advertised to the model"""

    name: str
    description: str
    parameters: dict[str, Any] = {"type": "object", "properties": {}, "required": []}

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ConversationContext(BaseModel):
    """Everything one turn sends to the model"""

    input: str
    intent: UserIntent
    files: list[LoadedFile] = []
    file_errors: list[FileLoadError] = []
    rules: str = ""
    history: list[Message] = []
    history_truncated: bool = False
    tools: list[ToolSchema] = []
    metadata: dict[str, str] = {}
    created_at: datetime = Field(default_factory=datetime.now)


class ModelRequest(BaseModel):
    """Provider-agnostic request handed to the stream"""

    model: str
    messages: list[dict[str, Any]]
    tools: list[ToolSchema] = []
    temperature: float = 0.0
    max_tokens: int = 4096
