"""Modification directives, confirmation batches and their results"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from .diff import CodeDiff


class CreateOp(BaseModel):
    """Create (or overwrite) a file with the given content"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["create"] = "create"
    path: str
    content: str


class ModifyOp(BaseModel):
    """Replace `search` with `replace`; search=None replaces the whole file"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["modify"] = "modify"
    path: str
    search: str | None = None
    replace: str


class DeleteOp(BaseModel):
    """Delete a file"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["delete"] = "delete"
    path: str


ModificationOp = Annotated[Union[CreateOp, ModifyOp, DeleteOp], Field(discriminator="kind")]


class ProcessedResponse(BaseModel):
    """Everything extracted from one finished reply"""

    content: str
    modifications: list[ModificationOp] = []
    suggestions: list[str] = []
    key_points: list[str] = []
    thinking: str | None = None


class PlannedChange(BaseModel):
    """An operation with its diff, or the reason it could not be resolved"""

    model_config = ConfigDict(frozen=True)

    operation: ModificationOp
    diff: CodeDiff | None = None
    unresolved_reason: str | None = None

    @property
    def resolved(self) -> bool:
        return self.unresolved_reason is None


class PendingConfirmation(BaseModel):
    """A batch of changes waiting for the user's decision"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"batch-{uuid.uuid4().hex[:8]}")
    changes: list[PlannedChange]
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def operations(self) -> list[ModificationOp]:
        return [change.operation for change in self.changes]

    @property
    def diffs(self) -> list[CodeDiff]:
        return [change.diff for change in self.changes if change.diff is not None]

    @property
    def unresolved(self) -> list[PlannedChange]:
        return [change for change in self.changes if not change.resolved]


class Outcome(str, Enum):
    """How a confirmation batch was resolved"""

    APPLIED = "applied"
    DISCARDED = "discarded"


class OperationResult(BaseModel):
    """Result of executing one operation against the filesystem"""

    model_config = ConfigDict(frozen=True)

    operation: ModificationOp
    success: bool
    message: str


class ConfirmationResult(BaseModel):
    """Result of resolving a batch"""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    outcome: Outcome
    results: list[OperationResult] = []

    @property
    def failures(self) -> list[OperationResult]:
        return [result for result in self.results if not result.success]
