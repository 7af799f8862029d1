"""
Chat flow: persist the user turn, fit the history into the model's context
window, call the model, and persist the reply.
"""
import logging
from typing import Iterator

from langchain_core.language_models.chat_models import BaseChatModel
from pydantic import BaseModel

from pulse_chatbot.db.conversation_store import ConversationStore
from pulse_chatbot.models.schemas import Message
from pulse_chatbot.services.llm import message_text, to_langchain_messages
from pulse_chatbot.utils.context_window import (
    DEFAULT_RESERVE_FOR_RESPONSE,
    PreparedMessages,
    TruncationStrategy,
    prepare_messages_for_api,
)
from pulse_chatbot.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)


class ContextOverflowError(Exception):
    """The newest message cannot be sent within the model's context window."""

    def __init__(self, conversation_id: str, model_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} is too large for model {model_id}")
        self.conversation_id = conversation_id
        self.model_id = model_id


class ChatTurn(BaseModel):
    conversation_id: str
    user_message: Message
    prepared: PreparedMessages


class ChatReply(BaseModel):
    conversation_id: str
    message: Message
    truncated: bool
    original_count: int
    final_count: int
    estimated_tokens: int


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        chat_model: BaseChatModel,
        system_prompt: str,
        model_id: str,
        strategy: TruncationStrategy | str = TruncationStrategy.KEEP_FIRST_LAST,
        reserve_for_response: int = DEFAULT_RESERVE_FOR_RESPONSE,
    ) -> None:
        self.store = store
        self.chat_model = chat_model
        self.system_prompt = system_prompt
        self.model_id = model_id
        self.strategy = strategy
        self.reserve_for_response = reserve_for_response

    def start_turn(
        self,
        content: str,
        conversation_id: str | None = None,
        screenshot_path: str | None = None,
    ) -> ChatTurn:
        """
        Store the user message and prepare the history to send.

        A missing or unknown ``conversation_id`` starts a new conversation.

        Raises:
            ContextOverflowError: if the new message does not make it into the
                prepared history.
        """
        if not conversation_id or self.store.get_conversation(conversation_id) is None:
            conversation_id = self.store.create_conversation().id

        user_message = self.store.add_message(
            conversation_id,
            "user",
            content,
            screenshot_path=screenshot_path,
            tokens_used=estimate_tokens(content),
        )
        if user_message is None:
            # deleted between the lookup and the insert
            raise LookupError(f"Conversation {conversation_id} not found")

        history = self.store.get_messages(conversation_id, limit=None)
        prepared = prepare_messages_for_api(
            history,
            self.system_prompt,
            self.model_id,
            strategy=self.strategy,
            reserve_for_response=self.reserve_for_response,
        )

        if not any(
            isinstance(msg, Message) and msg.id == user_message.id for msg in prepared.messages
        ):
            logger.warning(
                f"Conversation {conversation_id} does not fit in {self.model_id}: "
                f"{prepared.original_count} messages, none sendable"
            )
            raise ContextOverflowError(conversation_id, self.model_id)

        return ChatTurn(
            conversation_id=conversation_id, user_message=user_message, prepared=prepared
        )

    def complete(self, turn: ChatTurn) -> ChatReply:
        response = self.chat_model.invoke(
            to_langchain_messages(turn.prepared.system_message, turn.prepared.messages)
        )
        text = message_text(response.content)
        usage = getattr(response, "usage_metadata", None) or {}
        return self._save_reply(turn, text, usage.get("output_tokens"))

    def stream(self, turn: ChatTurn) -> Iterator[str]:
        """Yield the reply as it streams; the full reply is stored at the end."""
        chunks = []
        for chunk in self.chat_model.stream(
            to_langchain_messages(turn.prepared.system_message, turn.prepared.messages)
        ):
            text = message_text(chunk.content)
            if text:
                chunks.append(text)
                yield text
        self._save_reply(turn, "".join(chunks), None)

    def send_message(
        self,
        content: str,
        conversation_id: str | None = None,
        screenshot_path: str | None = None,
    ) -> ChatReply:
        return self.complete(self.start_turn(content, conversation_id, screenshot_path))

    def _save_reply(self, turn: ChatTurn, text: str, tokens_used: int | None) -> ChatReply:
        message = self.store.add_message(
            turn.conversation_id,
            "assistant",
            text,
            tokens_used=tokens_used if tokens_used is not None else estimate_tokens(text),
        )
        if message is None:
            raise LookupError(f"Conversation {turn.conversation_id} not found")
        return ChatReply(
            conversation_id=turn.conversation_id,
            message=message,
            truncated=turn.prepared.truncated,
            original_count=turn.prepared.original_count,
            final_count=turn.prepared.final_count,
            estimated_tokens=turn.prepared.estimated_tokens,
        )
