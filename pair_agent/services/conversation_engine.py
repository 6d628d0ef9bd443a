"""
Conversation Engine - orchestrates one turn from input to confirmed changes

Foreground only: the engine owns the message list and the confirmation gate,
and talks to the background producer exclusively through the streaming
session's queue.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from pair_agent.errors import ConversationError, NoPendingConfirmationError, PairAgentError, TurnInProgressError
from pair_agent.models.chat import (
    CancelAction,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    QuitAction,
    ResolveAction,
    Role,
    SubmitAction,
    TokenCountEvent,
    ToolCallEvent,
    TurnUpdate,
    UIEvent,
    UserAction,
)
from pair_agent.models.context import ConversationContext
from pair_agent.models.intent import Chat, Command, UserIntent
from pair_agent.models.modification import ConfirmationResult, PendingConfirmation, ProcessedResponse
from pair_agent.routers.commands import CommandRouter, router as default_router
from pair_agent.services.config_manager import AgentSettings
from pair_agent.services.confirmation_gate import ConfirmationGate
from pair_agent.services.context_assembler import ContextAssembler
from pair_agent.services.context_optimizer import ContextConfig, ContextWindowOptimizer
from pair_agent.services.filesystem import FileSystem
from pair_agent.services.intent_recognizer import IntentRecognizer
from pair_agent.services.prompts import build_request
from pair_agent.services.response_processor import ResponseProcessor
from pair_agent.services.rules import get_rule_text
from pair_agent.services.streaming_session import StreamingSession, StreamProvider
from pair_agent.services.text_matcher import TextMatcher
from pair_agent.services.tools import ToolExecutor

logger = structlog.get_logger(__name__)

# Messages tagged with this intent are local notices and never reach the model
NOTICE = "notice"

TOOL_FOLLOW_UP = "Continue with the task using the tool results above."


class ConversationEngine:
    """Drive turns: recognize, assemble, stream, process, confirm"""

    def __init__(
        self,
        provider: StreamProvider,
        filesystem: FileSystem,
        settings: AgentSettings | None = None,
        model: str = "",
        tool_executor: ToolExecutor | None = None,
        command_router: CommandRouter | None = None,
        rules_provider: Callable[[], str] = get_rule_text,
        ui_sink: Callable[[UIEvent], None] | None = None,
        session: StreamingSession | None = None,
    ):
        self.settings = settings or AgentSettings()
        self.provider = provider
        self.provider_name = getattr(provider, "provider", type(provider).__name__)
        self.model = model or getattr(provider, "model", "")
        self.filesystem = filesystem
        self.tool_executor = tool_executor
        self.commands = command_router or default_router
        self.ui_sink = ui_sink

        s = self.settings
        self.recognizer = IntentRecognizer(s.review_keywords, s.debug_keywords)
        optimizer = ContextWindowOptimizer(
            ContextConfig(
                max_tokens=s.max_context_tokens,
                reserve_output_tokens=s.reserve_output_tokens,
                min_messages_to_keep=s.min_messages_to_keep,
                enable_summarization=s.enable_summarization,
            )
        )
        self.assembler = ContextAssembler(
            filesystem,
            optimizer,
            rules_provider=rules_provider,
            tool_schemas=getattr(tool_executor, "schemas", None),
            max_file_bytes=s.max_file_bytes,
        )
        self.processor = ResponseProcessor(
            suggestion_cap=s.suggestion_cap,
            lookahead_chars=s.directive_lookahead_chars,
            matcher=TextMatcher(s.min_similarity),
        )
        self.gate = ConfirmationGate(filesystem, unsafe_auto_apply=s.unsafe_auto_apply)
        self.session = session or StreamingSession(
            provider, retry_policy=s.retry, queue_capacity=s.queue_capacity
        )

        self.messages: list[Message] = []
        self.last_response: ProcessedResponse | None = None
        self._turn_id: int | None = None
        self._turn_state = "idle"
        self._streaming_index: int | None = None
        self._tool_calls_this_turn = 0
        self._tool_rounds = 0

    # ========== State ==========

    @property
    def turn_state(self) -> str:
        """idle, streaming, done, error or cancelled"""
        return self._turn_state

    @property
    def is_streaming(self) -> bool:
        return self._turn_state == "streaming"

    def history(self) -> list[Message]:
        """Messages that are part of the model conversation"""
        return [m for m in self.messages if m.intent != NOTICE and not m.in_progress]

    def status(self) -> dict[str, str]:
        usage = self.session.last_usage
        pending = self.gate.pending
        return {
            "provider": str(self.provider_name),
            "model": self.model or "(default)",
            "messages": str(len(self.history())),
            "turn": self._turn_state,
            "last turn tokens": str(usage.total_tokens) if usage else "-",
            "session tokens": str(self.session.total_tokens),
            "pending changes": f"{len(pending.changes)} ({pending.id})" if pending else "none",
            "auto apply": "ON (unsafe)" if self.gate.unsafe_auto_apply else "off",
        }

    def _emit(self, event: UIEvent) -> None:
        if self.ui_sink is not None:
            self.ui_sink(event)

    def _append(self, message: Message) -> int:
        self.messages.append(message)
        index = len(self.messages) - 1
        self._emit(UIEvent(type="message_appended", message_index=index, message=message))
        return index

    def notify(self, text: str) -> None:
        """Show a local notice that is kept out of the model history"""
        self._append(Message(role=Role.SYSTEM, content=text, intent=NOTICE))

    # ========== Turns ==========

    def process_input(self, text: str) -> ConversationContext:
        """Start a turn for `text`; raises ConversationError when it cannot start"""
        intent = self.recognizer.recognize(text)

        if isinstance(intent, Command):
            return self._run_command(text, intent)

        if self.is_streaming or self.session.is_active:
            raise TurnInProgressError("A response is still streaming; cancel it or wait for it to finish")

        self._tool_rounds = 0
        return self._start_turn(text, intent, record_user=True)

    def _run_command(self, text: str, intent: Command) -> ConversationContext:
        self._append(Message(role=Role.USER, content=text.strip(), intent=NOTICE))
        try:
            output = self.commands.dispatch(intent, self)
        except ConversationError:
            raise
        except PairAgentError as e:
            output = str(e)
        if output:
            self.notify(output)
        logger.info("command_executed", command=intent.name, args=intent.args)
        return ConversationContext(input=text, intent=intent, metadata={"command": intent.name})

    def _start_turn(self, text: str, intent: UserIntent, record_user: bool) -> ConversationContext:
        context = self.assembler.build(text, intent, self.history())
        if record_user:
            self._append(Message(role=Role.USER, content=text.strip(), intent=intent.kind))
        for error in context.file_errors:
            self.notify(f"Could not load {error.path}: {error.reason}")

        request = build_request(
            context,
            self.model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_output_tokens,
        )
        self._turn_id = self.session.start(request)
        self._turn_state = "streaming"
        self._streaming_index = None
        self._tool_calls_this_turn = 0
        logger.info(
            "turn_started",
            turn_id=self._turn_id,
            intent=intent.kind,
            files=len(context.files),
            history_truncated=context.history_truncated,
        )
        return context

    def apply_update(self, update: TurnUpdate) -> None:
        """Fold one delivered update into the conversation"""
        if update.turn_id != self._turn_id or self._turn_state != "streaming":
            logger.debug("stale_update_ignored", turn_id=update.turn_id, current=self._turn_id)
            return

        event = update.event
        if isinstance(event, ContentEvent):
            self._append_content(event.text)
        elif isinstance(event, ToolCallEvent):
            self._execute_tool(event)
        elif isinstance(event, TokenCountEvent):
            logger.debug("token_count", turn_id=update.turn_id, total=event.total_tokens)
        elif isinstance(event, DoneEvent):
            self._finish_turn()
        elif isinstance(event, ErrorEvent):
            self._fail_turn(event)
        else:
            raise TypeError(f"Unknown stream event: {event!r}")

    def _append_content(self, text: str) -> None:
        if self._streaming_index is None:
            self._streaming_index = self._append(Message(role=Role.ASSISTANT, content="", in_progress=True))
        message = self.messages[self._streaming_index]
        message.append(text)
        self._emit(UIEvent(type="message_chunk_appended", message_index=self._streaming_index, chunk=text))

    def _close_streaming_message(self) -> Message | None:
        if self._streaming_index is None:
            return None
        message = self.messages[self._streaming_index]
        message.in_progress = False
        self._streaming_index = None
        return message

    def _finish_turn(self) -> None:
        message = self._close_streaming_message()
        self._turn_state = "done"
        logger.info("turn_done", turn_id=self._turn_id, chars=len(message.content) if message else 0)

        if message is not None and message.content.strip():
            self.process_response(message.content)

        if self._tool_calls_this_turn and self._tool_rounds < self.settings.max_tool_rounds:
            self._tool_rounds += 1
            try:
                self._start_turn(TOOL_FOLLOW_UP, Chat(query=TOOL_FOLLOW_UP), record_user=False)
            except ConversationError as e:
                self.notify(f"Could not continue after tool calls: {e}")

    def _fail_turn(self, event: ErrorEvent) -> None:
        if self._streaming_index is not None:
            message = self.messages[self._streaming_index]
            annotation = f"\n\n[response interrupted: {event.reason}]"
            message.append(annotation)
            self._emit(UIEvent(type="message_chunk_appended", message_index=self._streaming_index, chunk=annotation))
            self._close_streaming_message()
        else:
            self.notify(f"Error: {event.reason}")
        self._turn_state = "error"
        logger.warning("turn_failed", turn_id=self._turn_id, reason=event.reason, transient=event.transient)

    def _execute_tool(self, call: ToolCallEvent) -> None:
        self._tool_calls_this_turn += 1
        if self.tool_executor is None:
            result = f"Tool {call.name} is not available."
        else:
            result = self.tool_executor.execute(call)
        self._append(Message(role=Role.TOOL, content=result, intent=call.name))

    def process_response(self, text: str) -> ProcessedResponse:
        """Extract modifications from a finished reply and hand them to the gate"""
        processed = self.processor.process(text)
        self.last_response = processed
        if not processed.modifications:
            return processed

        changes = self.processor.plan_changes(processed.modifications, self.filesystem)
        outcome = self.gate.propose(changes)
        if isinstance(outcome, PendingConfirmation):
            self._emit(UIEvent(type="confirmation_pending", batch=outcome))
        else:
            self._report_resolution(outcome)
        return processed

    def cancel(self) -> bool:
        """Stop the streaming turn; the partial reply is kept as it is"""
        if self._turn_state != "streaming":
            return False
        for update in self.session.cancel():
            self.apply_update(update)
        if self._turn_state != "streaming":
            # the turn reached Done or Error in the drained updates
            return False

        self._close_streaming_message()
        self._turn_state = "cancelled"
        self.notify("Response cancelled.")
        logger.info("turn_cancelled", turn_id=self._turn_id)
        return True

    def resolve_confirmation(self, accept: bool) -> ConfirmationResult:
        """Apply or discard the pending batch; raises NoPendingConfirmationError"""
        result = self.gate.apply() if accept else self.gate.discard()
        self._report_resolution(result)
        return result

    def _report_resolution(self, result: ConfirmationResult) -> None:
        self._emit(UIEvent(type="confirmation_resolved", result=result))
        failures = result.failures
        if failures:
            self.notify("\n".join(f"Could not {r.operation.kind} {r.operation.path}: {r.message}" for r in failures))

    def clear(self) -> None:
        """Start a new conversation"""
        if self.is_streaming:
            self.cancel()
        if self.gate.pending is not None:
            self.gate.discard()
        self.messages.clear()
        self.last_response = None
        self._turn_state = "idle"
        self._tool_rounds = 0
        logger.info("conversation_cleared")

    # ========== Driving ==========

    async def wait_for_turn(self, timeout: float | None = None) -> str:
        """Apply updates until the current turn (and its tool follow-ups) end; returns the final state"""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._turn_state == "streaming":
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise asyncio.TimeoutError("Turn did not finish in time")
            poll = self.settings.poll_interval if remaining is None else min(self.settings.poll_interval, remaining)
            update = await self.session.next_update(poll)
            if update is None:
                self._housekeeping()
            else:
                self.apply_update(update)
        return self._turn_state

    async def run(self, actions: asyncio.Queue[UserAction]) -> None:
        """Foreground loop: alternate between user actions and stream updates until Quit"""
        action_task: asyncio.Future | None = None
        update_task: asyncio.Future | None = None
        try:
            while True:
                if action_task is None:
                    action_task = asyncio.ensure_future(actions.get())
                if update_task is None:
                    update_task = asyncio.ensure_future(self.session.queue.get())

                done, _ = await asyncio.wait(
                    {action_task, update_task},
                    timeout=self.settings.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    self._housekeeping()
                    continue

                # updates first, so a cancel never overtakes an already-delivered event
                if update_task in done:
                    self.apply_update(update_task.result())
                    update_task = None
                if action_task in done:
                    action = action_task.result()
                    action_task = None
                    if isinstance(action, QuitAction):
                        break
                    self.handle_action(action)
        finally:
            for task in (action_task, update_task):
                if task is not None:
                    task.cancel()
            await self.session.close()

    def handle_action(self, action: UserAction) -> None:
        """Execute one foreground action; failures become notices"""
        try:
            if isinstance(action, SubmitAction):
                self.process_input(action.text)
            elif isinstance(action, CancelAction):
                if not self.cancel():
                    self.notify("Nothing to cancel.")
            elif isinstance(action, ResolveAction):
                self.resolve_confirmation(action.accept)
            elif isinstance(action, QuitAction):
                pass
            else:
                raise TypeError(f"Unknown action: {action!r}")
        except (ConversationError, NoPendingConfirmationError) as e:
            logger.info("action_rejected", action=action.type, error=str(e))
            self.notify(str(e))

    def _housekeeping(self) -> None:
        if self._turn_state == "streaming" and not self.session.is_active and self.session.queue.empty():
            # producer ended without a terminal update
            logger.error("producer_lost", turn_id=self._turn_id)
            self._fail_turn(ErrorEvent(reason="response stream stopped unexpectedly"))
        elif self._turn_state == "streaming":
            logger.debug("stream_waiting", turn_id=self._turn_id, queued=self.session.queue.qsize())
