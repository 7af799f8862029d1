"""
Context window management.

Budgets the tokens a model can accept and decides which part of a
conversation history is sent along with the next request.
"""
import enum
import math
import logging
from typing import List, Sequence

from pydantic import BaseModel, computed_field

from pulse_chatbot.models.schemas import ChatMessage
from pulse_chatbot.utils.tokens import (
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

MODEL_CONTEXT_LIMITS = {
    "claude-sonnet-4-20250514": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    "claude-3-haiku-20240307": 200_000,
    "claude-3-opus-20240229": 200_000,
    "gemini-2.0-flash": 1_048_576,
    "gemini-1.5-flash": 1_048_576,
    "gemini-1.5-pro": 2_097_152,
}
DEFAULT_CONTEXT_LIMIT = 100_000
DEFAULT_RESERVE_FOR_RESPONSE = 4096
SLIDING_WINDOW_SIZE = 20


class TruncationStrategy(str, enum.Enum):
    KEEP_RECENT = "keep-recent"
    KEEP_FIRST_LAST = "keep-first-last"
    SLIDING_WINDOW = "sliding-window"
    # TODO: condense dropped messages with an LLM call; falls back to KEEP_RECENT for now
    SUMMARIZE = "summarize"


class TruncationResult(BaseModel):
    messages: List[ChatMessage]
    truncated: bool
    removed_count: int


class PreparedMessages(BaseModel):
    system_message: str
    messages: List[ChatMessage]
    truncated: bool
    original_count: int
    final_count: int
    estimated_tokens: int


class ContextUsage(BaseModel):
    used: int
    available: int
    percentage: int

    @computed_field  # type: ignore[misc]
    @property
    def display_percentage(self) -> int:
        """Percentage clamped to 0-100 for progress bars."""
        return max(0, min(self.percentage, 100))


def get_context_limit(model_id: str) -> int:
    return MODEL_CONTEXT_LIMITS.get(model_id, DEFAULT_CONTEXT_LIMIT)


def get_available_tokens(
    model_id: str,
    system_prompt: str,
    reserve_for_response: int = DEFAULT_RESERVE_FOR_RESPONSE,
) -> int:
    """
    Tokens left for conversation history.

    Can be zero or negative when the system prompt alone fills the window;
    callers treat that as no room for history.
    """
    return get_context_limit(model_id) - estimate_tokens(system_prompt) - reserve_for_response


def get_context_usage(
    messages: Sequence[ChatMessage], model_id: str, system_prompt: str
) -> ContextUsage:
    used = estimate_tokens(system_prompt) + estimate_conversation_tokens(messages)
    available = get_context_limit(model_id)
    return ContextUsage(
        used=used,
        available=available,
        percentage=math.floor(used * 100 / available + 0.5),
    )


def truncate_messages(
    messages: Sequence[ChatMessage],
    max_tokens: int,
    strategy: TruncationStrategy | str = TruncationStrategy.KEEP_RECENT,
) -> TruncationResult:
    """
    Select the part of ``messages`` that fits in ``max_tokens``.

    Histories that already fit are returned unchanged whatever the strategy.
    """
    if estimate_conversation_tokens(messages) <= max_tokens:
        return TruncationResult(messages=list(messages), truncated=False, removed_count=0)

    try:
        strategy = TruncationStrategy(strategy)
    except ValueError:
        logger.warning(f"Unknown truncation strategy {strategy!r}, using keep-recent")
        strategy = TruncationStrategy.KEEP_RECENT

    if strategy == TruncationStrategy.KEEP_FIRST_LAST:
        result = truncate_keep_first_last(messages, max_tokens)
    elif strategy == TruncationStrategy.SLIDING_WINDOW:
        result = truncate_sliding_window(messages, max_tokens)
    elif strategy == TruncationStrategy.SUMMARIZE:
        logger.warning("Summarize truncation is not implemented, falling back to keep-recent")
        result = truncate_keep_recent(messages, max_tokens)
    else:
        result = truncate_keep_recent(messages, max_tokens)

    logger.info(
        f"Truncated history with {strategy.value}: "
        f"{len(messages)} -> {len(result.messages)} messages ({result.removed_count} removed)"
    )
    return result


def truncate_keep_recent(
    messages: Sequence[ChatMessage], max_tokens: int
) -> TruncationResult:
    """
    Walk newest to oldest and keep every message that still fits.

    A message that would overflow is dropped; older messages are still
    checked against what is left of the budget.
    """
    kept: List[ChatMessage] = []
    total_tokens = 0
    removed_count = 0

    for msg in reversed(messages):
        msg_tokens = estimate_message_tokens(msg)
        if total_tokens + msg_tokens <= max_tokens:
            kept.append(msg)
            total_tokens += msg_tokens
        else:
            removed_count += 1

    kept.reverse()
    return TruncationResult(
        messages=kept, truncated=removed_count > 0, removed_count=removed_count
    )


def omitted_marker(removed_count: int) -> ChatMessage:
    return ChatMessage(
        role="system",
        content=f"[{removed_count} earlier messages omitted for context length]",
    )


def truncate_keep_first_last(
    messages: Sequence[ChatMessage], max_tokens: int
) -> TruncationResult:
    """Keep the opening message as an anchor plus as many recent ones as fit."""
    if len(messages) <= 2:
        return truncate_keep_recent(messages, max_tokens)

    first_message = messages[0]
    remaining_tokens = max_tokens - estimate_message_tokens(first_message)

    recent = truncate_keep_recent(messages[1:], remaining_tokens)

    result: List[ChatMessage] = [first_message]
    if recent.removed_count > 0:
        result.append(omitted_marker(recent.removed_count))
    result.extend(recent.messages)

    return TruncationResult(
        messages=result,
        truncated=recent.removed_count > 0,
        removed_count=recent.removed_count,
    )


def truncate_sliding_window(
    messages: Sequence[ChatMessage],
    max_tokens: int,
    window_size: int = SLIDING_WINDOW_SIZE,
) -> TruncationResult:
    windowed = list(messages[-window_size:]) if window_size > 0 else []
    removed_count = len(messages) - len(windowed)

    if estimate_conversation_tokens(windowed) > max_tokens:
        narrowed = truncate_keep_recent(windowed, max_tokens)
        return TruncationResult(
            messages=narrowed.messages,
            truncated=True,
            removed_count=removed_count + narrowed.removed_count,
        )

    return TruncationResult(
        messages=windowed, truncated=removed_count > 0, removed_count=removed_count
    )


def prepare_messages_for_api(
    messages: Sequence[ChatMessage],
    system_prompt: str,
    model_id: str,
    strategy: TruncationStrategy | str = TruncationStrategy.KEEP_FIRST_LAST,
    reserve_for_response: int = DEFAULT_RESERVE_FOR_RESPONSE,
) -> PreparedMessages:
    available_tokens = get_available_tokens(model_id, system_prompt, reserve_for_response)
    result = truncate_messages(messages, available_tokens, strategy)

    estimated_tokens = estimate_conversation_tokens(result.messages) + estimate_tokens(
        system_prompt
    )

    return PreparedMessages(
        system_message=system_prompt,
        messages=result.messages,
        truncated=result.truncated,
        original_count=len(messages),
        final_count=len(result.messages),
        estimated_tokens=estimated_tokens,
    )


def would_exceed_limit(
    current_messages: Sequence[ChatMessage],
    new_message: ChatMessage,
    model_id: str,
    system_prompt: str,
) -> bool:
    all_messages = [*current_messages, new_message]
    available_tokens = get_available_tokens(model_id, system_prompt)
    return estimate_conversation_tokens(all_messages) > available_tokens
