from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List

from pulse_chatbot.models.schemas import CamelModel, Message, Role
from pulse_chatbot.utils.export import ImportResult


class ConversationCreateRequest(CamelModel):
    """Request model for conversation creation"""
    title: Optional[str] = Field(None, description="Title; derived from the first user message when omitted")

    model_config = ConfigDict(json_schema_extra={"example": {"title": "Trip planning"}})


class ConversationUpdateRequest(CamelModel):
    """Request model for conversation metadata updates"""
    title: Optional[str] = Field(None, min_length=1)
    pinned: Optional[bool] = None
    archived: Optional[bool] = None

    model_config = ConfigDict(json_schema_extra={"example": {"pinned": True}})


class MessageCreateRequest(CamelModel):
    """Request model for appending a message without calling the model"""
    role: Role = Field(..., description="Role of the message sender (system, user, assistant)")
    content: str = Field(..., description="Content of the message")
    screenshot_path: Optional[str] = Field(None, description="Path of an attached screenshot")
    tokens_used: int = Field(0, ge=0)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "role": "user",
                "content": "Can you summarize this page for me?",
                "screenshotPath": None,
                "tokensUsed": 0,
            }
        }
    )


class MessageRequest(CamelModel):
    """Request model for sending messages"""
    conversation_id: Optional[str] = Field(None, description="Optional conversation ID to continue existing conversation")
    message: str = Field(..., min_length=1, max_length=100000, description="The user's message")
    screenshot_path: Optional[str] = Field(None, description="Path of an attached screenshot")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "conversationId": "a542db3f-0e80-4d34-8574-982966e038c6",
                "message": "What does this error in my terminal mean?",
            }
        }
    )


class MessageResponse(CamelModel):
    """Response model for message sending"""
    conversation_id: str = Field(..., description="Unique identifier for the conversation")
    response: str = Field(..., description="The assistant's response")
    message: Message = Field(..., description="The stored assistant message")
    truncated: bool = Field(..., description="Whether older history was left out of the request")
    original_count: int
    final_count: int
    estimated_tokens: int


class DeleteResponse(BaseModel):
    deleted: bool


class ImportResponse(BaseModel):
    """Result of an import; ``imported`` counts conversations that were stored"""
    imported: int
    skipped: List[str] = Field(default_factory=list, description="Ids that already existed")
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ImportResult, skipped: List[str]) -> "ImportResponse":
        return cls(
            imported=result.imported - len(skipped),
            skipped=skipped,
            errors=result.errors,
        )


class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Additional error details")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Conversation not found",
                "detail": "No conversation exists with the provided ID",
            }
        }
    )
