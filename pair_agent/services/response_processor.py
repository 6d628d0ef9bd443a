"""
Response Processor - extract file operations and suggestions from a finished reply

Directives look like ``modify `path/to/file.py``` followed by a fenced code
block. Create and modify directives take the nearest following block that
starts within the lookahead window and before the next directive; without
one they are discarded. Delete directives need no block.
"""

from __future__ import annotations

import re

import structlog

from pair_agent.errors import FileSystemError
from pair_agent.models.diff import MatchConfidence
from pair_agent.models.modification import (
    CreateOp,
    DeleteOp,
    ModificationOp,
    ModifyOp,
    PlannedChange,
    ProcessedResponse,
)
from pair_agent.services.diff_generator import DiffGenerator
from pair_agent.services.filesystem import FileSystem
from pair_agent.services.text_matcher import TextMatcher

logger = structlog.get_logger(__name__)

DEFAULT_SUGGESTION_CAP = 4
DEFAULT_LOOKAHEAD_CHARS = 1200
MAX_KEY_POINTS = 8

VERB_KINDS = {
    "create": "create",
    "new": "create",
    "modify": "modify",
    "update": "modify",
    "change": "modify",
    "edit": "modify",
    "delete": "delete",
    "remove": "delete",
}

_DIRECTIVE_RE = re.compile(
    r"\b(create|new|modify|update|change|edit|delete|remove)\s+"
    r"(?:(?:a|the)\s+)?(?:new\s+)?(?:file\s+)?"
    r"`([^`\s]+)`",
    re.IGNORECASE,
)
_FENCE_RE = re.compile(r"^[ \t]*```[^\n`]*\n(.*?)^[ \t]*```[ \t]*$", re.MULTILINE | re.DOTALL)
_THINKING_RE = re.compile(r"<thinking>(.*?)</thinking>\s*", re.DOTALL | re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

SUGGESTION_TRIGGERS = (
    re.compile(r"\brecommend", re.IGNORECASE),
    re.compile(r"\bbest practices?\b", re.IGNORECASE),
    re.compile(r"\bfor example\b|\bexample\b", re.IGNORECASE),
    re.compile(r"\breference\b|\bsee also\b", re.IGNORECASE),
)

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


def _looks_like_path(token: str) -> bool:
    return "." in token or "/" in token


def _inside(position: int, spans: list[tuple[int, int]]) -> bool:
    return any(start <= position < end for start, end in spans)


def parse_search_replace(body: str) -> list[tuple[str, str]] | None:
    """Split a SEARCH/REPLACE block into (search, replace) pairs; None when there are no markers"""
    if SEARCH_MARKER not in body:
        return None

    pairs = []
    state = None
    search: list[str] = []
    replace: list[str] = []
    for line in body.splitlines(keepends=True):
        marker = line.strip()
        if marker == SEARCH_MARKER:
            state, search, replace = "search", [], []
        elif marker == DIVIDER_MARKER and state == "search":
            state = "replace"
        elif marker == REPLACE_MARKER and state == "replace":
            pairs.append(("".join(search), "".join(replace)))
            state = None
        elif state == "search":
            search.append(line)
        elif state == "replace":
            replace.append(line)
    return pairs


class ResponseProcessor:
    """Turn finished assistant text into modifications and suggestions, then plan them"""

    def __init__(
        self,
        suggestion_cap: int = DEFAULT_SUGGESTION_CAP,
        lookahead_chars: int = DEFAULT_LOOKAHEAD_CHARS,
        matcher: TextMatcher | None = None,
        diff_generator: DiffGenerator | None = None,
    ):
        self.suggestion_cap = suggestion_cap
        self.lookahead_chars = lookahead_chars
        self.matcher = matcher or TextMatcher()
        self.diff_generator = diff_generator or DiffGenerator()

    # ========== Extraction ==========

    def process(self, text: str) -> ProcessedResponse:
        """Extract everything actionable from `text`"""
        thinking_parts = [m.group(1).strip() for m in _THINKING_RE.finditer(text)]
        content = _THINKING_RE.sub("", text)

        fences = [(m.start(), m.end(), m.group(1)) for m in _FENCE_RE.finditer(content)]
        fence_spans = [(start, end) for start, end, _ in fences]

        return ProcessedResponse(
            content=content,
            modifications=self.extract_modifications(content, fences),
            suggestions=self.extract_suggestions(content, fence_spans),
            key_points=self.extract_key_points(content, fence_spans),
            thinking="\n\n".join(thinking_parts) or None,
        )

    def extract_modifications(
        self,
        text: str,
        fences: list[tuple[int, int, str]] | None = None,
    ) -> list[ModificationOp]:
        """All directives in document order"""
        if fences is None:
            fences = [(m.start(), m.end(), m.group(1)) for m in _FENCE_RE.finditer(text)]
        fence_spans = [(start, end) for start, end, _ in fences]

        directives = [
            m
            for m in _DIRECTIVE_RE.finditer(text)
            if _looks_like_path(m.group(2)) and not _inside(m.start(), fence_spans)
        ]

        operations: list[ModificationOp] = []
        used_fences: set[int] = set()
        for index, directive in enumerate(directives):
            kind = VERB_KINDS[directive.group(1).lower()]
            path = directive.group(2).strip()

            if kind == "delete":
                operations.append(DeleteOp(path=path))
                continue

            limit = directive.end() + self.lookahead_chars
            if index + 1 < len(directives):
                limit = min(limit, directives[index + 1].start())

            block = None
            for fence_index, (start, _, body) in enumerate(fences):
                if fence_index in used_fences or start < directive.end():
                    continue
                if start < limit:
                    block = body
                    used_fences.add(fence_index)
                break

            if block is None:
                logger.info("directive_without_block", verb=directive.group(1), path=path)
                continue

            if kind == "create":
                operations.append(CreateOp(path=path, content=block))
                continue

            sections = parse_search_replace(block)
            if sections is None:
                operations.append(ModifyOp(path=path, search=None, replace=block))
                continue
            for search, replace in sections:
                operations.append(ModifyOp(path=path, search=search or None, replace=replace))

        return operations

    def extract_suggestions(self, text: str, fence_spans: list[tuple[int, int]] | None = None) -> list[str]:
        """Sentences or bullets containing a trigger phrase, de-duplicated and capped"""
        suggestions: list[str] = []
        seen: set[str] = set()
        for line in self._prose_lines(text, fence_spans):
            bullet = _BULLET_RE.match(line)
            candidates = [bullet.group(1)] if bullet else _SENTENCE_SPLIT_RE.split(line)
            for candidate in candidates:
                candidate = candidate.strip().strip("*_ ").strip()
                if not candidate or not any(t.search(candidate) for t in SUGGESTION_TRIGGERS):
                    continue
                key = candidate.lower()
                if key in seen:
                    continue
                seen.add(key)
                suggestions.append(candidate)
                if len(suggestions) >= self.suggestion_cap:
                    return suggestions
        return suggestions

    def extract_key_points(self, text: str, fence_spans: list[tuple[int, int]] | None = None) -> list[str]:
        """Bullet and numbered list items outside code blocks"""
        points = []
        for line in self._prose_lines(text, fence_spans):
            bullet = _BULLET_RE.match(line)
            if bullet:
                points.append(bullet.group(1).strip())
                if len(points) >= MAX_KEY_POINTS:
                    break
        return points

    @staticmethod
    def _prose_lines(text: str, fence_spans: list[tuple[int, int]] | None) -> list[str]:
        if fence_spans is None:
            fence_spans = [(m.start(), m.end()) for m in _FENCE_RE.finditer(text)]
        prose = []
        cursor = 0
        for start, end in fence_spans:
            prose.append(text[cursor:start])
            cursor = end
        prose.append(text[cursor:])
        return [line for chunk in prose for line in chunk.splitlines() if line.strip()]

    # ========== Planning ==========

    def plan_changes(self, operations: list[ModificationOp], filesystem: FileSystem) -> list[PlannedChange]:
        """Locate and diff every operation; later edits of one path see the earlier ones"""
        working: dict[str, str | None] = {}
        changes = []
        for op in operations:
            try:
                change = self._plan_one(op, filesystem, working)
            except FileSystemError as e:
                change = PlannedChange(operation=op, unresolved_reason=str(e))
            if not change.resolved:
                logger.info("change_unresolved", path=op.path, kind=op.kind, reason=change.unresolved_reason)
            changes.append(change)
        return changes

    def _current_text(self, path: str, filesystem: FileSystem, working: dict[str, str | None]) -> str | None:
        if path in working:
            return working[path]
        try:
            return filesystem.read(path)
        except FileNotFoundError:
            return None

    def _plan_one(self, op: ModificationOp, filesystem: FileSystem, working: dict[str, str | None]) -> PlannedChange:
        current = self._current_text(op.path, filesystem, working)

        if isinstance(op, CreateOp):
            diff = self.diff_generator.generate_diff(current or "", op.content, op.path, MatchConfidence.exact())
            working[op.path] = op.content
            return PlannedChange(operation=op, diff=diff)

        if isinstance(op, DeleteOp):
            if current is None:
                return PlannedChange(operation=op, unresolved_reason="file not found")
            diff = self.diff_generator.generate_diff(current, "", op.path, MatchConfidence.exact())
            working[op.path] = None
            return PlannedChange(operation=op, diff=diff)

        if isinstance(op, ModifyOp):
            if current is None:
                return PlannedChange(operation=op, unresolved_reason="file not found")
            if op.search is None:
                diff = self.diff_generator.generate_diff(current, op.replace, op.path, MatchConfidence.exact())
            else:
                match = self.matcher.locate(current, op.search)
                if match is None:
                    return PlannedChange(
                        operation=op,
                        unresolved_reason=(
                            f"search text not found (no region reached similarity {self.matcher.min_similarity:.2f})"
                        ),
                    )
                diff = self.diff_generator.build(
                    current, op.replace, (match.start, match.end), op.path, match.confidence
                )
            working[op.path] = diff.new_content
            return PlannedChange(operation=op, diff=diff)

        raise TypeError(f"Unknown modification: {op!r}")
