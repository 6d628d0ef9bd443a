import pytest

from pair_agent.models.chat import Message, Role
from pair_agent.services.context_optimizer import SUMMARY_HEADER, ContextConfig, ContextWindowOptimizer
from pair_agent.services.token_estimator import estimate_message_tokens, estimate_tokens, estimate_total


def make_history(count, size=200):
    roles = [Role.USER, Role.ASSISTANT]
    return [Message(role=roles[i % 2], content=f"message {i} " + "x" * size) for i in range(count)]


@pytest.fixture
def optimizer():
    return ContextWindowOptimizer(ContextConfig(max_tokens=600, reserve_output_tokens=100, min_messages_to_keep=5))


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_history_within_budget_is_untouched(optimizer):
    history = make_history(3, size=20)
    result = optimizer.optimize(history)
    assert result.messages == history
    assert result.was_truncated is False


def test_over_budget_keeps_newest_messages(optimizer):
    history = make_history(20)
    result = optimizer.optimize(history)
    assert result.was_truncated is True
    assert result.messages[-1] == history[-1]
    assert estimate_total(result.messages) <= 500
    kept = [m for m in result.messages if not m.content.startswith(SUMMARY_HEADER)]
    assert kept == history[len(history) - len(kept):]


def test_summary_added_when_too_few_messages_survive(optimizer):
    history = make_history(20, size=600)
    result = optimizer.optimize(history)
    assert result.messages[0].role == Role.SYSTEM
    assert result.messages[0].content.startswith(SUMMARY_HEADER)


def test_summary_disabled():
    optimizer = ContextWindowOptimizer(
        ContextConfig(max_tokens=600, reserve_output_tokens=100, enable_summarization=False)
    )
    result = optimizer.optimize(make_history(20, size=600))
    assert result.was_truncated is True
    assert all(m.role != Role.SYSTEM for m in result.messages)


def test_final_message_never_dropped_even_when_oversized(optimizer):
    history = make_history(3) + [Message(role=Role.USER, content="y" * 10_000)]
    result = optimizer.optimize(history)
    assert result.messages[-1] == history[-1]


@pytest.mark.parametrize("count, budget", [(1, 50), (4, 300), (20, 600), (40, 900), (7, 2000)])
def test_optimize_is_idempotent(optimizer, count, budget):
    history = make_history(count)
    once = optimizer.optimize(history, budget).messages
    twice = optimizer.optimize(once, budget).messages
    assert twice == once


def test_explicit_budget_overrides_config(optimizer):
    history = make_history(10)
    assert optimizer.optimize(history, budget=100_000).was_truncated is False
    assert optimizer.optimize(history, budget=400).was_truncated is True


def test_needs_optimization_matches_budget(optimizer):
    assert optimizer.needs_optimization(make_history(20)) is True
    assert optimizer.needs_optimization(make_history(1, size=10)) is False


def test_stats_split_system_tokens(optimizer):
    messages = [Message(role=Role.SYSTEM, content="s" * 40), Message(role=Role.USER, content="u" * 40)]
    stats = optimizer.get_stats(messages)
    assert stats.system_tokens == estimate_message_tokens(messages[0])
    assert stats.total_tokens == stats.system_tokens + stats.messages_tokens
