"""User intent variants produced by the intent recognizer"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class FileMention(BaseModel):
    """Input referencing files with @path tokens"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file_mention"] = "file_mention"
    paths: list[str]
    query: str

    def referenced_files(self) -> list[str]:
        return list(self.paths)


class Command(BaseModel):
    """Slash command: /name arg1 arg2"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    name: str
    args: list[str] = []

    def referenced_files(self) -> list[str]:
        return []


class Chat(BaseModel):
    """Plain conversation"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["chat"] = "chat"
    query: str
    context_files: list[str] = []

    def referenced_files(self) -> list[str]:
        return list(self.context_files)


class CodeReview(BaseModel):
    """Request to review code"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["code_review"] = "code_review"
    files: list[str] = []
    focus: str

    def referenced_files(self) -> list[str]:
        return list(self.files)


class Debug(BaseModel):
    """Request to track down a problem"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["debug"] = "debug"
    issue: str
    files: list[str] = []

    def referenced_files(self) -> list[str]:
        return list(self.files)


UserIntent = Annotated[
    Union[FileMention, Command, Chat, CodeReview, Debug],
    Field(discriminator="kind"),
]
