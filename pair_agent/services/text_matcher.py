"""
Text Matcher - locate a snippet inside a file using tiered matching

Tiers are tried strictly in order and stop at the first success:

1. exact substring search
2. whitespace-insensitive search (intra-line whitespace runs collapsed,
   line edges trimmed), mapped back onto the original text
3. fuzzy search: a window of the needle's line count slides across the
   file and the best-scoring window wins if it reaches the threshold
"""

from __future__ import annotations

from difflib import SequenceMatcher

from pydantic import BaseModel, ConfigDict

from pair_agent.models.diff import MatchConfidence

DEFAULT_MIN_SIMILARITY = 0.7
NORMALIZED_EQUALITY_SCORE = 0.95


class MatchResult(BaseModel):
    """Character span [start, end) of the located snippet"""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int
    confidence: MatchConfidence

    def text_in(self, haystack: str) -> str:
        return haystack[self.start : self.end]


def normalize_with_map(text: str) -> tuple[str, list[int]]:
    """Collapse whitespace runs inside each line and trim line edges.

    Returns the normalized text and, for every normalized character, the
    index of the original character it was produced from.
    """
    out: list[str] = []
    index_map: list[int] = []
    offset = 0
    for line_no, line in enumerate(text.split("\n")):
        if line_no > 0:
            out.append("\n")
            index_map.append(offset - 1)
        begin = len(line) - len(line.lstrip())
        end = len(line.rstrip())
        in_space = False
        for i in range(begin, end):
            ch = line[i]
            if ch.isspace():
                if not in_space:
                    out.append(" ")
                    index_map.append(offset + i)
                in_space = True
            else:
                out.append(ch)
                index_map.append(offset + i)
                in_space = False
        offset += len(line) + 1
    return "".join(out), index_map


def normalize(text: str) -> str:
    return normalize_with_map(text)[0]


def _matched_chars(a: str, b: str) -> int:
    blocks = SequenceMatcher(None, a, b, autojunk=False).get_matching_blocks()
    return sum(block.size for block in blocks)


def line_similarity(a: str, b: str) -> float:
    """Symmetric similarity of two lines in [0, 1]"""
    a_trimmed = a.strip()
    b_trimmed = b.strip()
    if a_trimmed == b_trimmed:
        return 1.0
    if normalize(a_trimmed) == normalize(b_trimmed):
        return NORMALIZED_EQUALITY_SCORE
    longer = max(len(a_trimmed), len(b_trimmed))
    matched = max(_matched_chars(a_trimmed, b_trimmed), _matched_chars(b_trimmed, a_trimmed))
    return matched / longer


class TextMatcher:
    """Locate a needle in a haystack with exact, whitespace-insensitive and fuzzy tiers"""

    def __init__(self, min_similarity: float = DEFAULT_MIN_SIMILARITY):
        if not 0.0 < min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be in (0, 1], got {min_similarity}")
        self.min_similarity = min_similarity

    def locate(self, haystack: str, needle: str) -> MatchResult | None:
        """Return the span of `needle` in `haystack`, or None when nothing is close enough"""
        if not needle.strip():
            return None
        return (
            self._exact(haystack, needle)
            or self._whitespace_insensitive(haystack, needle)
            or self._fuzzy(haystack, needle)
        )

    # ========== Tiers ==========

    def _exact(self, haystack: str, needle: str) -> MatchResult | None:
        idx = haystack.find(needle)
        if idx == -1:
            return None
        return MatchResult(start=idx, end=idx + len(needle), confidence=MatchConfidence.exact())

    def _whitespace_insensitive(self, haystack: str, needle: str) -> MatchResult | None:
        norm_hay, index_map = normalize_with_map(haystack)
        norm_needle = normalize(needle).strip("\n")
        if not norm_needle:
            return None
        idx = norm_hay.find(norm_needle)
        if idx == -1:
            return None

        norm_end = idx + len(norm_needle)
        start = index_map[idx]
        end = index_map[norm_end - 1] + 1

        # A hit covering whole normalized lines takes the original indentation
        # and trailing whitespace with it.
        if idx == 0 or norm_hay[idx - 1] == "\n":
            start = haystack.rfind("\n", 0, start) + 1
        if norm_end == len(norm_hay) or norm_hay[norm_end] == "\n":
            newline = haystack.find("\n", end)
            end = len(haystack) if newline == -1 else newline
            if end > start and haystack[end - 1] == "\r":
                end -= 1

        return MatchResult(start=start, end=end, confidence=MatchConfidence.whitespace_insensitive())

    def _fuzzy(self, haystack: str, needle: str) -> MatchResult | None:
        needle_lines = needle.split("\n")
        while needle_lines and not needle_lines[0].strip():
            needle_lines.pop(0)
        while needle_lines and not needle_lines[-1].strip():
            needle_lines.pop()
        if not needle_lines:
            return None

        hay_lines = haystack.split("\n")
        window = len(needle_lines)
        if len(hay_lines) < window:
            return None

        line_starts = []
        offset = 0
        for line in hay_lines:
            line_starts.append(offset)
            offset += len(line) + 1

        cache: dict[tuple[str, str], float] = {}
        best_score = -1.0
        best_index = -1
        for i in range(len(hay_lines) - window + 1):
            total = 0.0
            for j, needle_line in enumerate(needle_lines):
                key = (hay_lines[i + j], needle_line)
                score = cache.get(key)
                if score is None:
                    score = line_similarity(*key)
                    cache[key] = score
                total += score
                # Remaining lines score at most 1.0 each
                if total + (window - j - 1) < best_score * window:
                    break
            else:
                average = total / window
                if average > best_score:
                    best_score = average
                    best_index = i
                    if average == 1.0:
                        break

        if best_index < 0 or best_score < self.min_similarity:
            return None

        last = best_index + window - 1
        start = line_starts[best_index]
        end = line_starts[last] + len(hay_lines[last])
        if end > start and haystack[end - 1] == "\r":
            end -= 1
        return MatchResult(start=start, end=end, confidence=MatchConfidence.fuzzy(round(best_score, 4)))


def locate(haystack: str, needle: str, min_similarity: float = DEFAULT_MIN_SIMILARITY) -> MatchResult | None:
    """Convenience function using a one-off matcher"""
    return TextMatcher(min_similarity).locate(haystack, needle)
