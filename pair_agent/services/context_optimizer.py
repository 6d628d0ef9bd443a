"""
Context Window Optimizer - compact message history to a token budget

The most recent messages are kept whole, newest first, until the budget is
reached. When too few survive, the dropped prefix is folded into a single
System summary message placed in front of them. The newest message is never
dropped, even when it alone exceeds the budget.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel

from pair_agent.models.chat import Message, Role
from pair_agent.services.token_estimator import (
    MESSAGE_OVERHEAD_TOKENS,
    estimate_message_tokens,
    estimate_total,
    tokens_to_chars,
)

logger = structlog.get_logger(__name__)

SUMMARY_HEADER = "[Earlier conversation summary]"
MIN_SUMMARY_TOKENS = 16


class ContextConfig(BaseModel):
    """Context window settings"""

    max_tokens: int = 4000
    reserve_output_tokens: int = 1000
    min_messages_to_keep: int = 5
    enable_summarization: bool = True
    summary_excerpt_chars: int = 80

    @property
    def available_tokens(self) -> int:
        return max(0, self.max_tokens - self.reserve_output_tokens)


class TokenUsage(BaseModel):
    """Token usage statistics"""

    system_tokens: int = 0
    messages_tokens: int = 0
    total_tokens: int = 0


class OptimizedContext(BaseModel):
    """Result of compaction"""

    messages: list[Message]
    was_truncated: bool = False
    token_usage: TokenUsage = TokenUsage()


class ContextWindowOptimizer:
    """Fit ordered message history into the configured token budget"""

    def __init__(self, config: ContextConfig | None = None):
        self.config = config or ContextConfig()

    def optimize(self, messages: list[Message], budget: int | None = None) -> OptimizedContext:
        """Compact `messages` so they fit `budget` (defaults to max_tokens) minus the output reserve"""
        max_tokens = self.config.max_tokens if budget is None else budget
        available = max(0, max_tokens - self.config.reserve_output_tokens)

        messages = list(messages)
        if estimate_total(messages) <= available:
            return OptimizedContext(messages=messages, token_usage=self.get_stats(messages))

        kept: list[Message] = []
        running = 0
        for message in reversed(messages):
            cost = estimate_message_tokens(message)
            if kept and running + cost > available:
                break
            kept.append(message)
            running += cost
        kept.reverse()

        dropped = messages[: len(messages) - len(kept)]
        if not dropped:
            # Only the newest message is left and it is over budget on its own
            logger.warning("context_over_budget", tokens=running, available=available)
            return OptimizedContext(messages=kept, token_usage=self.get_stats(kept))

        result = kept
        if self.config.enable_summarization and len(kept) < self.config.min_messages_to_keep:
            summary = self._create_summary_message(dropped, available - running)
            if summary is not None:
                result = [summary] + kept

        logger.info(
            "context_compacted",
            dropped=len(dropped),
            kept=len(kept),
            summarized=result is not kept,
            available=available,
        )
        return OptimizedContext(messages=result, was_truncated=True, token_usage=self.get_stats(result))

    def _create_summary_message(self, dropped: list[Message], room_tokens: int) -> Message | None:
        """Fold the dropped prefix into one System message that fits `room_tokens`"""
        content_tokens = room_tokens - MESSAGE_OVERHEAD_TOKENS
        if content_tokens < MIN_SUMMARY_TOKENS:
            return None

        excerpt_len = self.config.summary_excerpt_chars
        lines = [f"{SUMMARY_HEADER} {len(dropped)} earlier messages:"]
        for message in dropped:
            text = " ".join(message.content.split())
            if len(text) > excerpt_len:
                text = text[: excerpt_len - 3].rstrip() + "..."
            lines.append(f"- {message.role.value}: {text}")
        summary = "\n".join(lines)

        limit = tokens_to_chars(content_tokens)
        if len(summary) > limit:
            summary = summary[: limit - 3].rstrip() + "..."
        return Message(role=Role.SYSTEM, content=summary)

    def get_stats(self, messages: list[Message]) -> TokenUsage:
        """Get message token statistics"""
        system_tokens = sum(estimate_message_tokens(m) for m in messages if m.role == Role.SYSTEM)
        total = estimate_total(messages)
        return TokenUsage(system_tokens=system_tokens, messages_tokens=total - system_tokens, total_tokens=total)

    def needs_optimization(self, messages: list[Message], budget: int | None = None) -> bool:
        """Check whether optimize() would change anything"""
        max_tokens = self.config.max_tokens if budget is None else budget
        return estimate_total(messages) > max(0, max_tokens - self.config.reserve_output_tokens)
