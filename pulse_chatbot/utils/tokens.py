"""Token estimation heuristics.

Exact counts need the model's own tokenizer; these estimates only have to be
self-consistent, since they are used to budget the context window.
"""
import math
from typing import Iterable

from pulse_chatbot.models.schemas import ChatMessage

# role/formatting overhead per message
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str | None) -> int:
    """Average of a word-based (~1.3 tokens/word) and char-based (~4 chars/token) estimate."""
    if not text:
        return 0
    words = len(text.split())
    chars = len(text)
    word_based_estimate = words * 1.3
    char_based_estimate = chars / 4
    return math.ceil((word_based_estimate + char_based_estimate) / 2)


def estimate_message_tokens(message: ChatMessage) -> int:
    return estimate_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS


def estimate_conversation_tokens(messages: Iterable[ChatMessage]) -> int:
    return sum(estimate_message_tokens(msg) for msg in messages)
