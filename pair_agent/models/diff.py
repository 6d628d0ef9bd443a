"""Diff-related data models"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class MatchKind(str, Enum):
    """Matching tier that located a snippet"""

    EXACT = "exact"
    WHITESPACE_INSENSITIVE = "whitespace_insensitive"
    FUZZY = "fuzzy"


class MatchConfidence(BaseModel):
    """How reliably the replaced region was located"""

    model_config = ConfigDict(frozen=True)

    kind: MatchKind
    score: float = 1.0

    @classmethod
    def exact(cls) -> "MatchConfidence":
        return cls(kind=MatchKind.EXACT)

    @classmethod
    def whitespace_insensitive(cls) -> "MatchConfidence":
        return cls(kind=MatchKind.WHITESPACE_INSENSITIVE)

    @classmethod
    def fuzzy(cls, score: float) -> "MatchConfidence":
        return cls(kind=MatchKind.FUZZY, score=score)

    def label(self) -> str:
        if self.kind is MatchKind.FUZZY:
            return f"fuzzy ({self.score:.2f})"
        return self.kind.value.replace("_", " ")


class DiffHunk(BaseModel):
    """A single change hunk in a diff"""

    model_config = ConfigDict(frozen=True)

    start_line: int  # 1-indexed
    end_line: int
    original_content: str
    new_content: str
    change_type: str  # "add", "modify", "delete"


class CodeDiff(BaseModel):
    """Complete diff for one file; new_content is what gets written"""

    model_config = ConfigDict(frozen=True)

    file_path: str
    old_content: str
    new_content: str
    confidence: MatchConfidence
    hunks: list[DiffHunk] = []
    unified_diff: str = ""  # Standard unified diff format
    preview: str = ""  # Context/added/removed lines, display only
