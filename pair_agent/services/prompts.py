"""
Prompt builders - turn a ConversationContext into provider messages
"""

from __future__ import annotations

from typing import Any

from pair_agent.models.chat import Message, Role
from pair_agent.models.context import ConversationContext, ModelRequest
from pair_agent.models.intent import Chat, Command, CodeReview, Debug, FileMention

BASE_ROLE = (
    "You are an expert AI pair programming assistant working in the user's terminal. "
    "Write clean, maintainable code, explain the reasoning behind recommendations, "
    "and use the available tools to inspect the project when you need more context."
)

REVIEW_FOCUS = (
    "You are reviewing code. Cover correctness, performance, maintainability, "
    "security and testing, most impactful issues first."
)

DEBUG_FOCUS = (
    "You are debugging. Form hypotheses from the evidence, name the most likely "
    "root cause, and propose the smallest fix that addresses it."
)


def adaptive_hint(message_count: int) -> str:
    """Adjust tone to how much shared context the conversation already has"""
    if message_count == 0:
        return "This is the start of a new session. Ask clarifying questions when the goal is unclear."
    if message_count <= 4:
        return "You're building context with the user. Be thorough and educational."
    if message_count <= 10:
        return "You have good context now. Be concise and reference earlier discussion when relevant."
    return "You have extensive context. Give focused, expert-level answers and anticipate next steps."


def build_role_prompt(intent, message_count: int) -> str:
    """Concise system role definition; behavioral rules live in the user content"""
    parts = [BASE_ROLE]
    if isinstance(intent, CodeReview):
        parts.append(REVIEW_FOCUS)
    elif isinstance(intent, Debug):
        parts.append(DEBUG_FOCUS)
    elif not isinstance(intent, (FileMention, Chat, Command)):
        raise TypeError(f"Unknown intent: {intent!r}")
    parts.append(adaptive_hint(message_count))
    return "\n\n".join(parts)


def build_user_content(context: ConversationContext) -> str:
    """Rules, loaded files and the user's request, in that order"""
    sections = []
    if context.rules:
        sections.append(context.rules)

    for loaded in context.files:
        sections.append(
            f"FILE ({loaded.path}, {loaded.language}, {loaded.line_count} lines):\n"
            f"```{loaded.language.lower()}\n{loaded.content}\n```"
        )

    if context.file_errors:
        missing = "\n".join(f"- {error.path}: {error.reason}" for error in context.file_errors)
        sections.append(f"These referenced files could not be loaded:\n{missing}")

    sections.append(f"USER REQUEST:\n{context.input}")
    return "\n\n".join(sections)


def history_to_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Convert history to provider messages; tool results become system notes"""
    messages = []
    for message in history:
        if message.role == Role.TOOL:
            messages.append({"role": "system", "content": f"Tool result:\n{message.content}"})
        else:
            messages.append({"role": message.role.value, "content": message.content})
    return messages


def build_request(
    context: ConversationContext,
    model: str,
    temperature: float = 0.0,
    max_tokens: int = 4096,
) -> ModelRequest:
    """Assemble the provider-agnostic request for one turn"""
    messages = [{"role": "system", "content": build_role_prompt(context.intent, len(context.history))}]
    messages.extend(history_to_messages(context.history))
    messages.append({"role": "user", "content": build_user_content(context)})
    return ModelRequest(
        model=model,
        messages=messages,
        tools=context.tools,
        temperature=temperature,
        max_tokens=max_tokens,
    )
