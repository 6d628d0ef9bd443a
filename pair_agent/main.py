"""
Pair Agent - terminal entry point

Startup wiring (config, logging, provider, engine) plus a rich renderer for
UI events and a prompt_toolkit reader that turns keystrokes into actions.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import structlog
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.styles import Style as PromptStyle
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax

from pair_agent import __version__
from pair_agent.errors import PairAgentError
from pair_agent.logging_config import configure_logging
from pair_agent.models.chat import (
    CancelAction,
    QuitAction,
    ResolveAction,
    Role,
    SubmitAction,
    UIEvent,
    UserAction,
)
from pair_agent.models.modification import ConfirmationResult, PendingConfirmation
from pair_agent.routers.commands import describe_result
from pair_agent.services.config_manager import AgentSettings, ConfigManager
from pair_agent.services.conversation_engine import NOTICE, ConversationEngine
from pair_agent.services.filesystem import LocalFileSystem
from pair_agent.services.llm_service import LLMService
from pair_agent.services.tools import DefaultToolExecutor

logger = structlog.get_logger(__name__)

console = Console()

PROMPT_STYLE = PromptStyle.from_dict({"prompt": "#0066ff bold", "pending": "#d19a00 bold"})

EXIT_WORDS = {"/exit", "/quit", "exit", "quit"}
ACCEPT_WORDS = {"y", "yes"}
REJECT_WORDS = {"n", "no"}


class TerminalRenderer:
    """Draw UI events on a rich Console"""

    def __init__(self, console: Console):
        self.console = console
        self.streaming = False

    def __call__(self, event: UIEvent) -> None:
        if event.type == "message_appended":
            self._message(event)
        elif event.type == "message_chunk_appended":
            self.console.print(event.chunk, end="", markup=False, highlight=False, soft_wrap=True)
        elif event.type == "confirmation_pending":
            self._pending(event.batch)
        elif event.type == "confirmation_resolved":
            self._resolved(event.result)
        else:
            raise TypeError(f"Unknown UI event: {event.type}")

    def end_stream(self) -> None:
        if self.streaming:
            self.console.print()
            self.streaming = False

    def _message(self, event: UIEvent) -> None:
        message = event.message
        self.end_stream()
        if message.role == Role.ASSISTANT:
            self.console.print("\n[bold bright_blue]assistant[/bold bright_blue]")
            self.console.print(message.content, end="", markup=False, highlight=False, soft_wrap=True)
            self.streaming = message.in_progress
        elif message.role == Role.TOOL:
            preview = message.content if len(message.content) <= 160 else message.content[:157] + "..."
            self.console.print(f"tool {message.intent}: {preview}", style="dim", markup=False, highlight=False)
        elif message.role == Role.SYSTEM and message.intent == NOTICE:
            self.console.print(message.content, style="yellow", markup=False, highlight=False)
        # user input is already on screen

    def _pending(self, batch: PendingConfirmation) -> None:
        self.end_stream()
        for change in batch.changes:
            op = change.operation
            if change.diff is None:
                self.console.print(
                    Panel(
                        change.unresolved_reason or "unresolved",
                        title=f"{op.kind} {op.path}",
                        border_style="red",
                    )
                )
                continue
            body = change.diff.unified_diff or "(no textual change)"
            self.console.print(
                Panel(
                    Syntax(body, "diff", theme="ansi_dark", word_wrap=True),
                    title=f"{op.kind} {op.path}  [{change.diff.confidence.label()}]",
                    border_style="blue",
                )
            )
        self.console.print("[bold]Apply these changes?[/bold] [dim](y/n, /diff to show again)[/dim]")

    def _resolved(self, result: ConfirmationResult) -> None:
        style = "green" if not result.failures and result.results else "yellow"
        self.console.print(describe_result(result), style=style, markup=False, highlight=False)


async def read_actions(engine: ConversationEngine, renderer: TerminalRenderer, actions: asyncio.Queue) -> None:
    """Read lines until EOF; Ctrl-C cancels a streaming reply"""
    history_file = Path.home() / ".pair_agent" / "prompt_history"
    history_file.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(history_file)), style=PROMPT_STYLE)

    while True:
        pending = engine.gate.pending is not None
        prompt = [("class:pending", "apply? y/n > ")] if pending else [("class:prompt", "> ")]
        try:
            with patch_stdout():
                text = await session.prompt_async(prompt)
        except KeyboardInterrupt:
            if engine.is_streaming:
                await actions.put(CancelAction())
            continue
        except EOFError:
            await actions.put(QuitAction())
            return

        renderer.end_stream()
        stripped = text.strip()
        if not stripped:
            continue
        if stripped.lower() in EXIT_WORDS:
            await actions.put(QuitAction())
            return
        action: UserAction
        if engine.gate.pending is not None and stripped.lower() in ACCEPT_WORDS | REJECT_WORDS:
            action = ResolveAction(accept=stripped.lower() in ACCEPT_WORDS)
        else:
            action = SubmitAction(text=stripped)
        await actions.put(action)


async def interactive(engine: ConversationEngine, renderer: TerminalRenderer) -> None:
    actions: asyncio.Queue[UserAction] = asyncio.Queue()
    reader = asyncio.create_task(read_actions(engine, renderer, actions))
    try:
        await engine.run(actions)
    finally:
        reader.cancel()


async def run_once(engine: ConversationEngine, renderer: TerminalRenderer, text: str) -> int:
    """Run a single turn without prompting; pending changes are left unapplied"""
    try:
        engine.process_input(text)
        state = await engine.wait_for_turn()
    finally:
        await engine.session.close()
    renderer.end_stream()
    if engine.gate.pending is not None:
        console.print("[dim]Changes were not applied (one-shot mode).[/dim]")
    return 0 if state in ("done", "idle") else 1


def build_engine(config: dict, root: Path, renderer: TerminalRenderer) -> ConversationEngine:
    """Wire the provider, filesystem and tools into an engine"""
    settings = AgentSettings.model_validate(config.get("agent", {}))
    provider = LLMService(
        config,
        connect_timeout=settings.connect_timeout,
        request_timeout=settings.request_timeout,
    )
    filesystem = LocalFileSystem(root)
    return ConversationEngine(
        provider,
        filesystem,
        settings=settings,
        tool_executor=DefaultToolExecutor(filesystem),
        ui_sink=renderer,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pair-agent", description="AI pair programming in your terminal")
    parser.add_argument("--once", metavar="TEXT", help="run a single turn non-interactively and exit")
    parser.add_argument("--root", default=".", help="project root the agent may read and edit (default: .)")
    parser.add_argument("--provider", choices=["openai", "vllm", "gemini"], help="override the configured provider")
    parser.add_argument("--model", help="override the configured model")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config_manager = ConfigManager.get_instance()
    log_path = configure_logging(config_manager.config_file.parent, args.log_level)
    logger.info("startup", version=__version__, root=str(Path(args.root).resolve()))

    config = config_manager.get_config()
    if args.provider:
        config["provider"] = args.provider
    if args.model:
        section = config["provider"]
        config[section] = {**config.get(section, {}), "model": args.model}

    renderer = TerminalRenderer(console)
    try:
        engine = build_engine(config, Path(args.root), renderer)
    except (ValidationError, ValueError) as e:
        console.print(f"Invalid configuration in {config_manager.config_file}: {e}", style="red", markup=False)
        return 2

    if args.once:
        try:
            return asyncio.run(run_once(engine, renderer, args.once))
        except PairAgentError as e:
            logger.exception("once_failed")
            console.print(str(e), style="red", markup=False)
            return 1

    console.print(
        Panel.fit(
            f"[bold bright_blue]Pair Agent {__version__}[/bold bright_blue]  "
            f"[dim]{engine.provider_name} / {engine.model or 'default model'}[/dim]\n"
            "[dim]/help for commands, @path to attach files, Ctrl+C to stop a reply, Ctrl+D to quit.\n"
            f"Log: {log_path}[/dim]",
            border_style="bright_blue",
        )
    )
    try:
        asyncio.run(interactive(engine, renderer))
    except KeyboardInterrupt:
        pass
    console.print("[dim]Bye.[/dim]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
