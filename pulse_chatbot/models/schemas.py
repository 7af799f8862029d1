from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant", "system"]


class CamelModel(BaseModel):
    """Base for records that serialize with the camelCase keys used in exports."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class ChatMessage(CamelModel):
    """The part of a message the context window cares about."""
    role: Role = Field(..., description="Role of the message sender (system, user, assistant)")
    content: str = Field(..., description="Content of the message")


class Message(ChatMessage):
    id: str
    conversation_id: str
    screenshot_path: Optional[str] = None
    tokens_used: int = Field(default=0, ge=0)
    created_at: int = Field(..., description="Epoch milliseconds")


class Conversation(CamelModel):
    id: str
    title: str
    created_at: int
    updated_at: int
    pinned: bool = False
    archived: bool = False
    # derived at query time, not stored
    message_count: Optional[int] = None
    last_message: Optional[str] = None


class ConversationWithMessages(Conversation):
    messages: List[Message] = Field(default_factory=list)


class StoreStats(CamelModel):
    total_conversations: int
    total_messages: int
    total_tokens: int
