"""
Diff Generator Service - Splice replacements into files and render diffs

Applying a change always means writing CodeDiff.new_content verbatim; the
hunks, unified diff and inline preview exist for display only.
"""

from __future__ import annotations

from difflib import SequenceMatcher, unified_diff

from pair_agent.models.diff import CodeDiff, DiffHunk, MatchConfidence


class DiffGenerator:
    """Generate diffs for code modifications"""

    def __init__(self, context_lines: int = 3):
        self.context_lines = context_lines

    def build(
        self,
        old_whole: str,
        replacement: str,
        span: tuple[int, int],
        file_path: str,
        confidence: MatchConfidence,
    ) -> CodeDiff:
        """Splice `replacement` into `old_whole` at `span` and diff the result"""
        start, end = span
        if not 0 <= start <= end <= len(old_whole):
            raise ValueError(f"Span {span} out of range for {file_path} ({len(old_whole)} chars)")

        replaced = old_whole[start:end]
        fitted = self._fit_line_ending(replaced, replacement, old_whole[end:end + 1])
        new_whole = old_whole[:start] + fitted + old_whole[end:]
        return self.generate_diff(old_whole, new_whole, file_path, confidence)

    def generate_diff(
        self,
        original_content: str,
        new_content: str,
        file_path: str,
        confidence: MatchConfidence | None = None,
    ) -> CodeDiff:
        """Generate structured diff from original and new content"""
        original_lines = original_content.splitlines(keepends=True)
        new_lines = new_content.splitlines(keepends=True)

        # Ensure last lines have newlines for proper diff
        if original_lines and not original_lines[-1].endswith("\n"):
            original_lines[-1] += "\n"
        if new_lines and not new_lines[-1].endswith("\n"):
            new_lines[-1] += "\n"

        unified = list(
            unified_diff(
                original_lines,
                new_lines,
                fromfile=f"a/{file_path}",
                tofile=f"b/{file_path}",
            )
        )

        return CodeDiff(
            file_path=file_path,
            old_content=original_content,
            new_content=new_content,
            confidence=confidence or MatchConfidence.exact(),
            hunks=self._extract_hunks(original_lines, new_lines),
            unified_diff="".join(unified),
            preview=self.generate_inline_preview(original_content, new_content),
        )

    @staticmethod
    def _fit_line_ending(replaced: str, replacement: str, following: str) -> str:
        """Keep the line structure around the span intact.

        Fenced code blocks end with a newline; when the replaced region stops
        right before a line break, that newline would double it.
        """
        if replacement.endswith("\n") and not replaced.endswith("\n") and following == "\n":
            return replacement[:-1]
        if replaced.endswith("\n") and replacement and not replacement.endswith("\n"):
            return replacement + "\n"
        return replacement

    def _extract_hunks(
        self,
        original: list[str],
        modified: list[str],
    ) -> list[DiffHunk]:
        """Extract individual change hunks from diff"""
        matcher = SequenceMatcher(None, original, modified)
        hunks = []

        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                continue

            change_type = "add" if tag == "insert" else "delete" if tag == "delete" else "modify"

            hunks.append(
                DiffHunk(
                    start_line=i1 + 1,
                    end_line=i2,
                    original_content="".join(original[i1:i2]),
                    new_content="".join(modified[j1:j2]),
                    change_type=change_type,
                )
            )

        return hunks

    def generate_inline_preview(
        self,
        original_content: str,
        new_content: str,
    ) -> str:
        """Generate inline preview with context lines around changes"""
        original_lines = original_content.splitlines()
        new_lines = new_content.splitlines()
        context_lines = self.context_lines

        matcher = SequenceMatcher(None, original_lines, new_lines)
        result_lines: list[str] = []

        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                # Show context lines only
                for i in range(i1, i2):
                    if i < i1 + context_lines or i >= i2 - context_lines:
                        result_lines.append(f"  {original_lines[i]}")
                    elif result_lines and result_lines[-1] != "...":
                        result_lines.append("...")
            elif tag == "replace":
                for line in original_lines[i1:i2]:
                    result_lines.append(f"- {line}")
                for line in new_lines[j1:j2]:
                    result_lines.append(f"+ {line}")
            elif tag == "delete":
                for line in original_lines[i1:i2]:
                    result_lines.append(f"- {line}")
            elif tag == "insert":
                for line in new_lines[j1:j2]:
                    result_lines.append(f"+ {line}")

        return "\n".join(result_lines)
