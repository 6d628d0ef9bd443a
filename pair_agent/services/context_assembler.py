"""
Context Assembler - gather everything one turn sends to the model
"""

from __future__ import annotations

import os
from typing import Callable

import structlog

from pair_agent.errors import FileSystemError, ProcessingError
from pair_agent.models.chat import Message
from pair_agent.models.context import ConversationContext, FileLoadError, LoadedFile, ToolSchema
from pair_agent.models.intent import Command, UserIntent
from pair_agent.services.context_optimizer import ContextWindowOptimizer
from pair_agent.services.filesystem import FileSystem
from pair_agent.services.rules import get_rule_text
from pair_agent.services.token_estimator import estimate_tokens

logger = structlog.get_logger(__name__)

DEFAULT_MAX_FILE_BYTES = 256 * 1024

LANGUAGE_BY_EXTENSION = {
    ".py": "Python",
    ".rs": "Rust",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".java": "Java",
    ".kt": "Kotlin",
    ".go": "Go",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".cc": "C++",
    ".hpp": "C++",
    ".cs": "C#",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".sh": "Shell",
    ".sql": "SQL",
    ".html": "HTML",
    ".css": "CSS",
    ".json": "JSON",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".toml": "TOML",
    ".md": "Markdown",
}


def detect_language(path: str) -> str:
    _, ext = os.path.splitext(path)
    return LANGUAGE_BY_EXTENSION.get(ext.lower(), "Text")


class ContextAssembler:
    """Build a ConversationContext from input, intent and history"""

    def __init__(
        self,
        filesystem: FileSystem,
        optimizer: ContextWindowOptimizer | None = None,
        rules_provider: Callable[[], str] = get_rule_text,
        tool_schemas: list[ToolSchema] | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ):
        self.filesystem = filesystem
        self.optimizer = optimizer or ContextWindowOptimizer()
        self.rules_provider = rules_provider
        self.tool_schemas = list(tool_schemas or [])
        self.max_file_bytes = max_file_bytes

    def build(self, input: str, intent: UserIntent, history: list[Message]) -> ConversationContext:
        """Assemble the turn context; raises ProcessingError when it cannot be built"""
        files, errors = self._load_files(intent.referenced_files())

        try:
            rules = self.rules_provider()
        except Exception as e:
            raise ProcessingError(f"Could not load rule text: {e}", cause=e) from e

        try:
            optimized = self.optimizer.optimize(history)
        except Exception as e:
            raise ProcessingError(f"Could not compact history: {e}", cause=e) from e

        metadata = {
            "intent": intent.kind,
            "files_loaded": str(len(files)),
            "files_failed": str(len(errors)),
            "history_messages": str(len(optimized.messages)),
            "history_tokens": str(optimized.token_usage.total_tokens),
            "file_tokens": str(sum(estimate_tokens(f.content) for f in files)),
        }
        if isinstance(intent, Command):
            metadata["command"] = intent.name

        logger.debug(
            "context_assembled",
            intent=intent.kind,
            files=len(files),
            file_errors=len(errors),
            history=len(optimized.messages),
            truncated=optimized.was_truncated,
        )
        return ConversationContext(
            input=input,
            intent=intent,
            files=files,
            file_errors=errors,
            rules=rules,
            history=optimized.messages,
            history_truncated=optimized.was_truncated,
            tools=self.tool_schemas,
            metadata=metadata,
        )

    def _load_files(self, paths: list[str]) -> tuple[list[LoadedFile], list[FileLoadError]]:
        files: list[LoadedFile] = []
        errors: list[FileLoadError] = []
        seen: set[str] = set()
        for path in paths:
            if path in seen:
                continue
            seen.add(path)
            try:
                content = self.filesystem.read(path)
            except FileNotFoundError:
                errors.append(FileLoadError(path=path, reason="file not found"))
                continue
            except FileSystemError as e:
                errors.append(FileLoadError(path=path, reason=str(e)))
                continue

            if len(content.encode("utf-8")) > self.max_file_bytes:
                errors.append(FileLoadError(path=path, reason=f"file larger than {self.max_file_bytes} bytes"))
                continue

            files.append(
                LoadedFile(
                    path=path,
                    content=content,
                    language=detect_language(path),
                    line_count=len(content.splitlines()),
                )
            )

        for error in errors:
            logger.info("file_not_loaded", path=error.path, reason=error.reason)
        return files, errors
