"""
Intent Recognizer - classify raw user input

Checks run in a fixed order and the first match wins:
1. "@path" tokens            -> FileMention
2. leading "/"               -> Command
3. review / debug keywords   -> CodeReview / Debug
4. anything else             -> Chat
"""

from __future__ import annotations

import re

from pair_agent.errors import InvalidIntentError
from pair_agent.models.intent import Chat, Command, CodeReview, Debug, FileMention

DEFAULT_REVIEW_KEYWORDS = ("review", "audit", "critique", "refactor", "code smell")
DEFAULT_DEBUG_KEYWORDS = (
    "debug",
    "bug",
    "error",
    "exception",
    "crash",
    "traceback",
    "stack trace",
    "fails",
    "failing",
    "broken",
    "doesn't work",
)

# "@" at a word start followed by a bare, "./" or "../" path
_MENTION_RE = re.compile(r"(?<![\w@])@((?:\.{1,2}/)*[\w~\-][\w.\-/\\~]*)")
_BACKTICK_PATH_RE = re.compile(r"`([\w.\-/\\~]*[./][\w.\-/\\~]*)`")
_TRAILING_PUNCT = ".,;:!?"


def extract_mentions(text: str) -> list[tuple[str, str]]:
    """Return (raw_token, path) pairs for every @path token in order"""
    mentions = []
    for match in _MENTION_RE.finditer(text):
        path = match.group(1).rstrip(_TRAILING_PUNCT)
        if not path or path.strip(".") == "":
            continue
        mentions.append(("@" + path, path))
    return mentions


def _unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class IntentRecognizer:
    """Deterministic classifier from input text to a UserIntent"""

    def __init__(
        self,
        review_keywords: tuple[str, ...] | list[str] = DEFAULT_REVIEW_KEYWORDS,
        debug_keywords: tuple[str, ...] | list[str] = DEFAULT_DEBUG_KEYWORDS,
    ):
        self.review_keywords = tuple(review_keywords)
        self.debug_keywords = tuple(debug_keywords)
        self._review_re = self._keyword_pattern(self.review_keywords)
        self._debug_re = self._keyword_pattern(self.debug_keywords)

    @staticmethod
    def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern | None:
        if not keywords:
            return None
        alternatives = "|".join(re.escape(k.lower()) for k in sorted(keywords, key=len, reverse=True))
        return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)

    def recognize(self, text: str) -> FileMention | Command | Chat | CodeReview | Debug:
        """Classify `text`; raises InvalidIntentError for empty input"""
        if text is None or not text.strip():
            raise InvalidIntentError("Input is empty")
        stripped = text.strip()

        mentions = extract_mentions(stripped)
        if mentions:
            return self._file_mention(stripped, mentions)

        if stripped.startswith("/"):
            return self._command(stripped)

        if self._review_re is not None and self._review_re.search(stripped):
            return CodeReview(files=self._inline_files(stripped), focus=stripped)

        if self._debug_re is not None and self._debug_re.search(stripped):
            return Debug(issue=stripped, files=self._inline_files(stripped))

        return Chat(query=stripped)

    def _file_mention(self, text: str, mentions: list[tuple[str, str]]) -> FileMention:
        query = text
        for raw, _ in mentions:
            query = query.replace(raw, " ")
        return FileMention(
            paths=_unique([path for _, path in mentions]),
            query=" ".join(query.split()),
        )

    def _command(self, text: str) -> Command:
        parts = text.split()
        name = parts[0][1:]
        if not name:
            raise InvalidIntentError("Command name is missing")
        return Command(name=name, args=parts[1:])

    def _inline_files(self, text: str) -> list[str]:
        paths = [path for _, path in extract_mentions(text)]
        paths.extend(_BACKTICK_PATH_RE.findall(text))
        return _unique(paths)
