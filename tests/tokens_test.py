from pulse_chatbot.models.schemas import ChatMessage
from pulse_chatbot.utils.tokens import (
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
)


def test_empty_text_is_free():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0


def test_averages_word_and_char_estimates():
    # 2 words * 1.3 = 2.6, 11 chars / 4 = 2.75, average 2.675
    assert estimate_tokens("hello world") == 3
    # 1 word * 1.3 = 1.3, 38 chars / 4 = 9.5, average 5.4
    assert estimate_tokens("x" * 38) == 6


def test_whitespace_runs_count_as_one_separator():
    assert estimate_tokens("hello   \n\t world") == estimate_tokens("hello world") + 1


def test_estimate_is_deterministic():
    text = "The quick brown fox jumps over the lazy dog. " * 20
    assert estimate_tokens(text) == estimate_tokens(text)


def test_message_overhead():
    message = ChatMessage(role="user", content="hello world")
    assert estimate_message_tokens(message) == 7
    assert estimate_message_tokens(ChatMessage(role="assistant", content="")) == 4


def test_conversation_tokens_sum_messages_with_overhead():
    messages = [
        ChatMessage(role="user", content="hello world"),
        ChatMessage(role="assistant", content="hi"),
    ]
    assert estimate_conversation_tokens(messages) == (3 + 4) + (1 + 4)
    assert estimate_conversation_tokens([]) == 0
