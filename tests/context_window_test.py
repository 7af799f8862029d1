import pytest

from pulse_chatbot.models.schemas import ChatMessage
from pulse_chatbot.utils.context_window import (
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_RESERVE_FOR_RESPONSE,
    TruncationStrategy,
    get_available_tokens,
    get_context_limit,
    get_context_usage,
    prepare_messages_for_api,
    truncate_messages,
    would_exceed_limit,
)
from pulse_chatbot.utils.tokens import estimate_conversation_tokens, estimate_message_tokens

# "x" * 38 costs 6 tokens + 4 overhead
TEN_TOKENS = "x" * 38
# "x" * 400 costs 51 tokens + 4 overhead
BIG = "x" * 400


def msg(i: int, role: str = "user", content: str = TEN_TOKENS) -> ChatMessage:
    # the prefix keeps contents distinct without changing the estimate
    return ChatMessage(role=role, content=f"{i:02d}{content[2:]}")


def history(n: int) -> list[ChatMessage]:
    return [msg(i, "user" if i % 2 == 0 else "assistant") for i in range(n)]


def test_fixture_messages_cost_ten_tokens():
    assert all(estimate_message_tokens(m) == 10 for m in history(25))
    assert estimate_message_tokens(msg(0, content=BIG)) == 55


@pytest.mark.parametrize("strategy", list(TruncationStrategy))
def test_history_that_fits_is_unchanged(strategy):
    messages = history(3)
    result = truncate_messages(messages, 30, strategy)
    assert result.messages == messages
    assert result.truncated is False
    assert result.removed_count == 0


@pytest.mark.parametrize("strategy", list(TruncationStrategy))
def test_empty_history_fits(strategy):
    result = truncate_messages([], 0, strategy)
    assert result.messages == []
    assert result.truncated is False


def test_keep_recent_keeps_newest_in_order():
    messages = history(5)
    result = truncate_messages(messages, 25, TruncationStrategy.KEEP_RECENT)
    assert result.messages == messages[3:]
    assert result.truncated is True
    assert result.removed_count == 3


def test_keep_recent_still_checks_older_messages_after_a_skip():
    messages = [msg(0), msg(1, content=BIG), msg(2)]
    result = truncate_messages(messages, 20, TruncationStrategy.KEEP_RECENT)
    assert result.messages == [messages[0], messages[2]]
    assert result.removed_count == 1


def test_keep_recent_single_oversized_message_yields_nothing():
    messages = [ChatMessage(role="user", content="x" * 8000)]
    assert estimate_conversation_tokens(messages) > 1000

    result = truncate_messages(messages, 500, TruncationStrategy.KEEP_RECENT)

    assert result.messages == []
    assert result.truncated is True
    assert result.removed_count == 1


def test_non_positive_budget_includes_nothing():
    result = truncate_messages(history(3), -10, TruncationStrategy.KEEP_RECENT)
    assert result.messages == []
    assert result.removed_count == 3


def test_keep_first_last_anchors_first_message_and_adds_marker():
    messages = history(6)
    result = truncate_messages(messages, 35, TruncationStrategy.KEEP_FIRST_LAST)

    assert result.messages[0] == messages[0]
    assert result.messages[1].role == "system"
    assert result.messages[1].content == "[3 earlier messages omitted for context length]"
    assert result.messages[2:] == messages[4:]
    assert result.truncated is True
    assert result.removed_count == 3
    # the marker is extra, not a removal
    assert result.removed_count == len(messages) - len(result.messages) + 1


def test_keep_first_last_keeps_first_even_when_nothing_else_fits():
    messages = [msg(0, content=BIG), msg(1), msg(2)]
    result = truncate_messages(messages, 50, TruncationStrategy.KEEP_FIRST_LAST)
    assert result.messages[0] == messages[0]
    assert result.messages[1].content == "[2 earlier messages omitted for context length]"
    assert len(result.messages) == 2
    assert result.removed_count == 2


def test_keep_first_last_short_history_falls_back_to_keep_recent():
    messages = [msg(0), msg(1, content=BIG)]
    result = truncate_messages(messages, 30, TruncationStrategy.KEEP_FIRST_LAST)
    assert result.messages == [messages[0]]
    assert result.removed_count == 1


def test_sliding_window_keeps_last_twenty():
    messages = history(25)
    result = truncate_messages(messages, 240, TruncationStrategy.SLIDING_WINDOW)
    assert result.messages == messages[5:]
    assert result.truncated is True
    assert result.removed_count == 5


def test_sliding_window_narrows_window_that_is_still_too_large():
    messages = history(25)
    result = truncate_messages(messages, 150, TruncationStrategy.SLIDING_WINDOW)
    assert result.messages == messages[10:]
    assert result.removed_count == 10
    assert len(messages) - len(result.messages) == result.removed_count


def test_summarize_falls_back_to_keep_recent():
    messages = history(5)
    summarized = truncate_messages(messages, 25, TruncationStrategy.SUMMARIZE)
    recent = truncate_messages(messages, 25, TruncationStrategy.KEEP_RECENT)
    assert summarized == recent


def test_strategy_accepts_plain_strings_and_unknown_names():
    messages = history(5)
    assert truncate_messages(messages, 25, "keep-first-last").messages[0] == messages[0]
    assert truncate_messages(messages, 25, "no-such-strategy").messages == messages[3:]


def test_context_limits():
    assert get_context_limit("claude-3-haiku-20240307") == 200_000
    assert get_context_limit("gemini-2.0-flash") == 1_048_576
    assert get_context_limit("mystery-model") == DEFAULT_CONTEXT_LIMIT == 100_000


def test_available_tokens():
    assert get_available_tokens("mystery-model", "") == 100_000 - DEFAULT_RESERVE_FOR_RESPONSE
    assert get_available_tokens("mystery-model", "hello world", 1000) == 100_000 - 3 - 1000
    assert get_available_tokens("mystery-model", "", 200_000) < 0


def test_context_usage_is_not_clamped():
    huge = [ChatMessage(role="user", content="x" * 400_000) for _ in range(3)]
    usage = get_context_usage(huge, "mystery-model", "")
    assert usage.used == 3 * 50_005
    assert usage.available == 100_000
    assert usage.percentage == 150
    assert usage.display_percentage == 100


def test_context_usage_grows_with_history():
    system_prompt = "You are a helpful assistant."
    messages: list[ChatMessage] = []
    last = get_context_usage(messages, "mystery-model", system_prompt).percentage
    for i in range(10):
        messages.append(ChatMessage(role="user", content="word " * 2000 * (i + 1)))
        percentage = get_context_usage(messages, "mystery-model", system_prompt).percentage
        assert percentage >= last
        last = percentage


def test_prepare_messages_without_truncation():
    messages = history(4)
    prepared = prepare_messages_for_api(messages, "Be brief.", "mystery-model")
    assert prepared.system_message == "Be brief."
    assert prepared.messages == messages
    assert prepared.truncated is False
    assert prepared.original_count == prepared.final_count == 4
    assert prepared.estimated_tokens == 40 + 3


def test_prepare_messages_defaults_to_keep_first_last():
    messages = history(6)
    prepared = prepare_messages_for_api(
        messages, "", "mystery-model", reserve_for_response=100_000 - 35
    )
    assert prepared.truncated is True
    assert prepared.original_count == 6
    assert prepared.final_count == 4
    assert prepared.messages[0] == messages[0]
    assert prepared.messages[1].role == "system"
    assert prepared.estimated_tokens == estimate_conversation_tokens(prepared.messages)


def test_would_exceed_limit():
    current = history(4)
    assert would_exceed_limit(current, msg(9), "mystery-model", "") is False
    huge = ChatMessage(role="user", content="x" * 400_000)
    assert would_exceed_limit([huge], huge, "mystery-model", "") is True


def test_context_usage_rounds_halves_up():
    # one 19956-char word costs 2496 tokens + 4 overhead: exactly 2.5% of 100k
    usage = get_context_usage([ChatMessage(role="user", content="x" * 19_956)], "mystery-model", "")
    assert usage.used == 2_500
    assert usage.percentage == 3
