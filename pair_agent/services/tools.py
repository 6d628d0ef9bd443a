"""
Tools - read-only project tools the model may call

Results are JSON text; a failed call returns an "error" field rather than
raising, so the model can see what went wrong.
"""

from __future__ import annotations

import fnmatch
import json
from typing import Any, Callable, Protocol

import structlog

from pair_agent.errors import FileSystemError
from pair_agent.models.chat import ToolCallEvent
from pair_agent.models.context import ToolSchema
from pair_agent.services.filesystem import LocalFileSystem

logger = structlog.get_logger(__name__)

MAX_READ_CHARS = 60_000
MAX_SEARCH_RESULTS = 50

TOOL_SCHEMAS = [
    ToolSchema(
        name="read_file",
        description="Read a project file. Optionally limit to a 1-based inclusive line range.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Repository-relative file path"},
                "start_line": {"type": "integer"},
                "end_line": {"type": "integer"},
            },
            "required": ["path"],
        },
    ),
    ToolSchema(
        name="list_files",
        description="List project files, optionally filtered by a glob such as 'src/**/*.py'.",
        parameters={
            "type": "object",
            "properties": {
                "glob": {"type": "string"},
                "directory": {"type": "string", "description": "Subdirectory to list, default '.'"},
            },
            "required": [],
        },
    ),
    ToolSchema(
        name="search_code",
        description="Case-insensitive substring search across project files; returns matching lines.",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "max_results": {"type": "integer"},
            },
            "required": ["query"],
        },
    ),
]


class ToolExecutor(Protocol):
    """Executes a ToolCall and returns the text merged into a later turn"""

    def execute(self, call: ToolCallEvent) -> str:
        ...


class DefaultToolExecutor:
    """Executes the read-only tools against a LocalFileSystem"""

    def __init__(self, filesystem: LocalFileSystem):
        self.filesystem = filesystem
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "read_file": self.read_file,
            "list_files": self.list_files,
            "search_code": self.search_code,
        }

    @property
    def schemas(self) -> list[ToolSchema]:
        return list(TOOL_SCHEMAS)

    def execute(self, call: ToolCallEvent) -> str:
        handler = self._handlers.get(call.name)
        if handler is None:
            result: dict[str, Any] = {"error": f"unknown tool {call.name}"}
        else:
            try:
                result = handler(call.arguments)
            except (FileNotFoundError, FileSystemError) as e:
                result = {"error": f"{call.name} failed: {e}"}
            except (KeyError, TypeError, ValueError) as e:
                result = {"error": f"invalid arguments for {call.name}: {e}"}
        if "error" in result:
            logger.info("tool_failed", tool=call.name, error=result["error"])
        else:
            logger.debug("tool_executed", tool=call.name)
        return json.dumps({"tool": call.name, "arguments": call.arguments, "result": result}, ensure_ascii=False)

    def read_file(self, args: dict[str, Any]) -> dict[str, Any]:
        path = str(args["path"])
        content = self.filesystem.read(path)
        lines = content.splitlines()
        start = int(args.get("start_line") or 1)
        end = int(args.get("end_line") or len(lines))
        start = max(1, start)
        end = min(len(lines), max(end, start))
        snippet = "\n".join(lines[start - 1 : end])
        truncated = len(snippet) > MAX_READ_CHARS
        return {
            "path": path,
            "start_line": start,
            "end_line": end,
            "line_count": len(lines),
            "content": snippet[:MAX_READ_CHARS],
            "truncated": truncated,
        }

    def list_files(self, args: dict[str, Any]) -> dict[str, Any]:
        paths = self.filesystem.list_files(str(args.get("directory") or "."))
        pattern = args.get("glob")
        if pattern:
            paths = [p for p in paths if fnmatch.fnmatch(p, pattern)]
        return {"paths": paths}

    def search_code(self, args: dict[str, Any]) -> dict[str, Any]:
        query = str(args.get("query") or "").lower()
        if not query:
            return {"matches": []}
        limit = int(args.get("max_results") or MAX_SEARCH_RESULTS)
        matches: list[dict[str, Any]] = []
        for path in self.filesystem.list_files():
            try:
                content = self.filesystem.read(path)
            except (FileNotFoundError, FileSystemError):
                continue
            for number, line in enumerate(content.splitlines(), start=1):
                if query in line.lower():
                    matches.append({"path": path, "line": number, "text": line.strip()[:200]})
                    if len(matches) >= limit:
                        return {"matches": matches, "truncated": True}
        return {"matches": matches}
