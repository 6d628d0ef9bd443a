"""
Streaming Session - one producer task per turn feeding a bounded queue

The producer owns the provider connection and is the only writer of the
queue; the conversation engine is the only reader. A full queue suspends
the producer instead of dropping events. Each turn ends with exactly one
Done or Error update unless it is cancelled.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Protocol

import structlog

from pair_agent.errors import ConversationError, ProviderError, TurnInProgressError
from pair_agent.models.chat import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenCountEvent,
    TurnUpdate,
)
from pair_agent.models.context import ModelRequest
from pair_agent.services.retry import RetryPolicy
from pair_agent.services.token_estimator import estimate_tokens

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_CAPACITY = 64


class StreamProvider(Protocol):
    """Anything that can stream events for a request"""

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        ...


class StreamingSession:
    """Run provider turns in the background and deliver their events in order"""

    def __init__(
        self,
        provider: StreamProvider,
        retry_policy: RetryPolicy | None = None,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.queue: asyncio.Queue[TurnUpdate] = asyncio.Queue(maxsize=queue_capacity)
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._turn_id = 0
        self._finished_turn = 0
        self._cancelled = False
        self._closed = False

        self.last_usage: TokenCountEvent | None = None
        self.total_tokens = 0

    @property
    def is_active(self) -> bool:
        """True while the current turn can still produce updates"""
        return (
            self._task is not None
            and not self._task.done()
            and not self._cancelled
            and self._finished_turn != self._turn_id
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self, request: ModelRequest) -> int:
        """Start a new turn and return its id; must be called from a running event loop"""
        if self._closed:
            raise ConversationError("Streaming session is closed")
        if self.is_active:
            raise TurnInProgressError("A response is still streaming; cancel it or wait for it to finish")

        self._turn_id += 1
        self._cancelled = False
        previous = self._task
        self._task = asyncio.get_running_loop().create_task(self._produce(self._turn_id, request, previous))
        logger.debug("turn_started", turn_id=self._turn_id, messages=len(request.messages))
        return self._turn_id

    def cancel(self) -> list[TurnUpdate]:
        """Stop the current turn; returns updates already queued so they can still be applied"""
        if self.is_active:
            self._task.cancel()
            self._cancelled = True
            logger.info("turn_cancelled", turn_id=self._turn_id)
        return self.drain()

    def drain(self) -> list[TurnUpdate]:
        updates = []
        while True:
            try:
                updates.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return updates

    async def next_update(self, timeout: float | None = None) -> TurnUpdate | None:
        """Wait for the next update; None when `timeout` elapses first"""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        """Cancel any running turn and wait for its task to unwind"""
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ========== Producer ==========

    async def _produce(self, turn_id: int, request: ModelRequest, previous: asyncio.Task | None = None) -> None:
        if previous is not None and not previous.done():
            # the previous producer has fully unwound before this one streams
            await asyncio.wait({previous})

        attempt = 0
        # retries only happen before the first event of the turn is enqueued
        delivered = False
        fragments: list[str] = []
        usage: TokenCountEvent | None = None

        while True:
            attempt += 1
            try:
                async for event in self.provider.stream(request):
                    if self._closed:
                        logger.info("producer_stopped", turn_id=turn_id, reason="session closed")
                        return
                    if isinstance(event, ContentEvent):
                        fragments.append(event.text)
                    elif isinstance(event, TokenCountEvent):
                        usage = event
                    await self._put(turn_id, event)
                    delivered = True
                    if isinstance(event, (DoneEvent, ErrorEvent)):
                        self._record_usage(request, fragments, usage)
                        return
                # A stream without a terminal record still ends the turn
                self._record_usage(request, fragments, usage)
                await self._put(turn_id, DoneEvent())
                return
            except ProviderError as e:
                if not delivered and self.retry_policy.should_retry(e, attempt):
                    delay = self.retry_policy.delay(attempt, e)
                    logger.warning(
                        "provider_retry",
                        turn_id=turn_id,
                        attempt=attempt,
                        max_attempts=self.retry_policy.max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await self._sleep(delay)
                    continue
                logger.error("provider_failed", turn_id=turn_id, attempt=attempt, error=str(e), mid_stream=delivered)
                await self._put(turn_id, ErrorEvent(reason=str(e), transient=e.transient))
                return
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.exception("provider_stream_invalid", turn_id=turn_id)
                await self._put(turn_id, ErrorEvent(reason=f"Invalid provider response: {e}"))
                return
            except Exception as e:
                logger.exception("producer_failed", turn_id=turn_id)
                await self._put(turn_id, ErrorEvent(reason=f"Unexpected provider failure: {e}"))
                return

    async def _put(self, turn_id: int, event: StreamEvent) -> None:
        await self.queue.put(TurnUpdate(turn_id=turn_id, event=event))
        if isinstance(event, (DoneEvent, ErrorEvent)):
            self._finished_turn = turn_id

    def _record_usage(self, request: ModelRequest, fragments: list[str], usage: TokenCountEvent | None) -> None:
        """Keep reported usage, or estimate it when the provider sent none"""
        if usage is None:
            prompt_tokens = sum(estimate_tokens(str(m.get("content", ""))) for m in request.messages)
            completion_tokens = estimate_tokens("".join(fragments))
            usage = TokenCountEvent(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
        self.last_usage = usage
        self.total_tokens += usage.total_tokens
