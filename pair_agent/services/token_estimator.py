"""
Token Estimator - cheap text to token-count heuristic

One token per four characters, applied uniformly so that every budget check
in the process agrees with every other one.
"""

from __future__ import annotations

import math

from pair_agent.models.chat import Message

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role framing per message


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate the token cost of one message including its framing"""
    return estimate_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS


def estimate_total(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def tokens_to_chars(tokens: int) -> int:
    """Inverse of estimate_tokens: the longest text fitting in `tokens`"""
    return max(0, tokens) * CHARS_PER_TOKEN
