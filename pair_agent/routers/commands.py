"""Slash command handlers - run locally, never sent to the model"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from pair_agent.errors import InvalidIntentError
from pair_agent.models.intent import Command
from pair_agent.models.modification import ConfirmationResult

if TYPE_CHECKING:
    from pair_agent.services.conversation_engine import ConversationEngine

Handler = Callable[["ConversationEngine", list[str]], str]


@dataclass
class CommandRoute:
    name: str
    handler: Handler
    help: str
    usage: str


class CommandRouter:
    """Registry of slash commands, declared with the @router.command decorator"""

    def __init__(self):
        self.routes: dict[str, CommandRoute] = {}
        self.aliases: dict[str, str] = {}

    def command(self, name: str, help: str, usage: str | None = None, aliases: tuple[str, ...] = ()):
        def _wrap(fn: Handler) -> Handler:
            self.routes[name] = CommandRoute(name=name, handler=fn, help=help, usage=usage or f"/{name}")
            for alias in aliases:
                self.aliases[alias] = name
            return fn

        return _wrap

    def resolve(self, name: str) -> CommandRoute | None:
        name = name.lower()
        return self.routes.get(self.aliases.get(name, name))

    def dispatch(self, command: Command, engine: "ConversationEngine") -> str:
        """Run the handler for `command`; unknown names raise InvalidIntentError"""
        route = self.resolve(command.name)
        if route is None:
            raise InvalidIntentError(f"Unknown command: /{command.name}. Type /help for the list.")
        return route.handler(engine, command.args)


router = CommandRouter()


def describe_result(result: ConfirmationResult) -> str:
    """One line per executed operation"""
    if not result.results:
        return f"Discarded {result.batch_id}."
    lines = [f"Batch {result.batch_id}: {result.outcome.value}"]
    for item in result.results:
        mark = "ok" if item.success else "FAILED"
        lines.append(f"  [{mark}] {item.operation.kind} {item.operation.path}: {item.message}")
    return "\n".join(lines)


@router.command("help", "Show available commands", aliases=("h", "?"))
def help_command(engine: "ConversationEngine", args: list[str]) -> str:
    width = max(len(route.usage) for route in router.routes.values())
    lines = ["Commands:"]
    for route in router.routes.values():
        lines.append(f"  {route.usage.ljust(width)}  {route.help}")
    lines.append("")
    lines.append("Mention files with @path, e.g. 'explain @src/app.py'.")
    return "\n".join(lines)


@router.command("clear", "Start a new conversation", aliases=("new",))
def clear_command(engine: "ConversationEngine", args: list[str]) -> str:
    engine.clear()
    return "Started a new conversation."


@router.command("history", "List the messages of this conversation", usage="/history [n]")
def history_command(engine: "ConversationEngine", args: list[str]) -> str:
    messages = engine.history()
    if args:
        try:
            count = int(args[0])
        except ValueError:
            raise InvalidIntentError(f"Not a number: {args[0]}")
        messages = messages[-count:] if count > 0 else []
    if not messages:
        return "No messages yet."
    lines = []
    for index, message in enumerate(messages, start=1):
        text = " ".join(message.content.split())
        if len(text) > 70:
            text = text[:67] + "..."
        lines.append(f"{index:3}. {message.role.value:<9} {text}")
    return "\n".join(lines)


@router.command("status", "Show provider, model, token usage and pending changes", aliases=("tokens",))
def status_command(engine: "ConversationEngine", args: list[str]) -> str:
    status = engine.status()
    return "\n".join(f"{key}: {value}" for key, value in status.items())


@router.command("model", "Show or switch the model", usage="/model [name]")
def model_command(engine: "ConversationEngine", args: list[str]) -> str:
    if not args:
        return f"Model: {engine.model}"
    engine.model = args[0]
    return f"Model set to {engine.model}"


@router.command("diff", "Show the changes waiting for confirmation")
def diff_command(engine: "ConversationEngine", args: list[str]) -> str:
    batch = engine.gate.pending
    if batch is None:
        return "No changes are waiting for confirmation."
    parts = [f"Batch {batch.id} ({len(batch.changes)} changes):"]
    for change in batch.changes:
        op = change.operation
        if change.diff is None:
            parts.append(f"{op.kind} {op.path}: unresolved ({change.unresolved_reason})")
            continue
        parts.append(f"{op.kind} {op.path} [{change.diff.confidence.label()}]")
        parts.append(change.diff.unified_diff or "(no textual change)")
    return "\n".join(parts)


@router.command("apply", "Apply the pending changes", aliases=("yes", "y"))
def apply_command(engine: "ConversationEngine", args: list[str]) -> str:
    return describe_result(engine.resolve_confirmation(True))


@router.command("discard", "Discard the pending changes", aliases=("no", "n"))
def discard_command(engine: "ConversationEngine", args: list[str]) -> str:
    return describe_result(engine.resolve_confirmation(False))
