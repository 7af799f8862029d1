from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from typing import List, Literal, Optional
import json
import logging

from pulse_chatbot.db.conversation_store import ConversationStore
from pulse_chatbot.models.schemas import (
    Conversation,
    ConversationWithMessages,
    Message,
    StoreStats,
)
from pulse_chatbot.routes.chatbot.schemas import (
    ConversationCreateRequest,
    ConversationUpdateRequest,
    DeleteResponse,
    ErrorResponse,
    ImportResponse,
    MessageCreateRequest,
    MessageRequest,
    MessageResponse,
)
from pulse_chatbot.services.chat import ChatService, ContextOverflowError
from pulse_chatbot.utils.context_window import ContextUsage, get_context_usage
from pulse_chatbot.utils.export import (
    MEDIA_TYPES,
    ImportFormatError,
    export_all_filename,
    export_all_to_json,
    export_conversation,
    export_filename,
    import_conversations,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

router = APIRouter()

NOT_FOUND = {404: {"model": ErrorResponse}}


# --- Dependencies ---
def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_chat_service(request: Request) -> ChatService:
    chat_service = getattr(request.app.state, "chat_service", None)
    if chat_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat model is not configured",
        )
    return chat_service


def conversation_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")


def validate_query(query: str) -> str:
    """
    Validate and clean user query.

    Args:
        query: Raw user query

    Returns:
        Query with surrounding whitespace removed
    """
    if not query or not query.strip():
        raise ValueError("Query cannot be empty")
    return query.strip()


# --- Conversations ---


@router.post(
    "/conversation",
    response_model=Conversation,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new conversation",
)
def create_conversation(
    request: Optional[ConversationCreateRequest] = None,
    store: ConversationStore = Depends(get_store),
):
    return store.create_conversation(request.title if request else None)


@router.get(
    "/conversations",
    response_model=List[Conversation],
    summary="List conversations",
    description="Pinned first, then most recently updated; archived ones are hidden unless requested",
)
def list_conversations(
    include_archived: bool = False,
    pinned_first: bool = True,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    search: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
):
    return store.get_conversations(
        include_archived=include_archived,
        pinned_first=pinned_first,
        limit=limit,
        offset=offset,
        search=search,
    )


@router.get(
    "/conversation/{conversation_id}",
    response_model=ConversationWithMessages,
    responses=NOT_FOUND,
    summary="Get conversation with its messages",
)
def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    conversation = store.get_conversation_with_messages(conversation_id)
    if conversation is None:
        raise conversation_not_found()
    return conversation


@router.patch(
    "/conversation/{conversation_id}",
    response_model=Conversation,
    responses=NOT_FOUND,
    summary="Rename, pin or archive a conversation",
)
def update_conversation(
    conversation_id: str,
    request: ConversationUpdateRequest,
    store: ConversationStore = Depends(get_store),
):
    conversation = store.update_conversation(
        conversation_id,
        title=request.title,
        pinned=request.pinned,
        archived=request.archived,
    )
    if conversation is None:
        raise conversation_not_found()
    return conversation


@router.delete(
    "/conversation/{conversation_id}",
    response_model=DeleteResponse,
    responses=NOT_FOUND,
    summary="Delete a conversation and all of its messages",
)
def delete_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    if not store.delete_conversation(conversation_id):
        raise conversation_not_found()
    return DeleteResponse(deleted=True)


# --- Messages ---


@router.get(
    "/conversation/{conversation_id}/messages",
    response_model=List[Message],
    summary="List messages oldest first",
)
def list_messages(
    conversation_id: str,
    limit: int = Query(1000, ge=1),
    offset: int = Query(0, ge=0),
    store: ConversationStore = Depends(get_store),
):
    return store.get_messages(conversation_id, limit=limit, offset=offset)


@router.post(
    "/conversation/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses=NOT_FOUND,
    summary="Append a message",
)
def add_message(
    conversation_id: str,
    request: MessageCreateRequest,
    store: ConversationStore = Depends(get_store),
):
    message = store.add_message(
        conversation_id,
        request.role,
        request.content,
        screenshot_path=request.screenshot_path,
        tokens_used=request.tokens_used,
    )
    if message is None:
        raise conversation_not_found()
    return message


@router.delete(
    "/message/{message_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a single message",
)
def delete_message(message_id: str, store: ConversationStore = Depends(get_store)):
    if not store.delete_message(message_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return DeleteResponse(deleted=True)


@router.get("/stats", response_model=StoreStats, summary="Totals across the store")
def get_stats(store: ConversationStore = Depends(get_store)):
    return store.get_stats()


@router.get(
    "/conversation/{conversation_id}/context",
    response_model=ContextUsage,
    responses=NOT_FOUND,
    summary="Estimated context window usage",
)
def get_conversation_context(
    conversation_id: str,
    http_request: Request,
    model_id: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
):
    conversation = store.get_conversation_with_messages(conversation_id, limit=None)
    if conversation is None:
        raise conversation_not_found()
    settings = http_request.app.state.settings
    return get_context_usage(
        conversation.messages,
        model_id or settings.gemini_model,
        settings.system_prompt,
    )


# --- Export / import ---


@router.get(
    "/conversation/{conversation_id}/export",
    responses=NOT_FOUND,
    summary="Export a conversation as Markdown, JSON or text",
)
def export_single(
    conversation_id: str,
    format: Literal["markdown", "json", "text"] = "markdown",
    model: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
):
    conversation = store.get_conversation_with_messages(conversation_id, limit=None)
    if conversation is None:
        raise conversation_not_found()
    filename = export_filename(conversation.title, format)
    return Response(
        content=export_conversation(conversation, format, model=model),
        media_type=MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export", summary="Export every conversation as JSON")
def export_all(store: ConversationStore = Depends(get_store)):
    conversations = []
    for conversation in store.get_conversations(include_archived=True, limit=100000):
        full = store.get_conversation_with_messages(conversation.id, limit=None)
        if full is not None:
            conversations.append(full)
    return Response(
        content=export_all_to_json(conversations),
        media_type=MEDIA_TYPES["json"],
        headers={"Content-Disposition": f'attachment; filename="{export_all_filename()}"'},
    )


@router.post(
    "/import",
    response_model=ImportResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Import conversations from a JSON export",
)
async def import_payload(request: Request, store: ConversationStore = Depends(get_store)):
    payload = await request.body()
    try:
        result = import_conversations(payload)
    except ImportFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    skipped = []
    for conversation in result.conversations:
        stored = await run_in_threadpool(store.import_conversation, conversation)
        if not stored:
            skipped.append(conversation.id)
    return ImportResponse.from_result(result, skipped)


# --- Chat ---


@router.post(
    "/message",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}},
    summary="Send a message",
    description="Send a message to the assistant and get a response",
)
def send_message(request: MessageRequest, chat_service: ChatService = Depends(get_chat_service)):
    try:
        user_message = validate_query(request.message)
        reply = chat_service.send_message(
            user_message,
            conversation_id=request.conversation_id,
            screenshot_path=request.screenshot_path,
        )
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ContextOverflowError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Conversation is too large for this model: {e}",
        )
    except Exception as e:
        logger.error(f"Error sending message: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process message. Please try again later.",
        )

    return MessageResponse(
        conversation_id=reply.conversation_id,
        response=reply.message.content,
        message=reply.message,
        truncated=reply.truncated,
        original_count=reply.original_count,
        final_count=reply.final_count,
        estimated_tokens=reply.estimated_tokens,
    )


@router.post(
    "/message/stream",
    summary="Send a message with streaming response",
    description="Send a message and get the response as server-sent events",
)
def send_message_stream(
    request: MessageRequest, chat_service: ChatService = Depends(get_chat_service)
):
    try:
        user_message = validate_query(request.message)
        turn = chat_service.start_turn(
            user_message,
            conversation_id=request.conversation_id,
            screenshot_path=request.screenshot_path,
        )
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ContextOverflowError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Conversation is too large for this model: {e}",
        )

    def streamer():
        yield f"data: {json.dumps({'type': 'info', 'conversation_id': turn.conversation_id, 'truncated': turn.prepared.truncated})}\n\n"
        try:
            for content in chat_service.stream(turn):
                yield f"data: {json.dumps({'type': 'content', 'content': content})}\n\n"
            yield f"data: {json.dumps({'type': 'done', 'conversation_id': turn.conversation_id})}\n\n"
        except Exception as e:
            logger.error(f"Streaming error: {e}", exc_info=True)
            yield f"data: {json.dumps({'type': 'error', 'content': f'Error processing request: {str(e)}'})}\n\n"
            yield f"data: {json.dumps({'type': 'done', 'error': True})}\n\n"

    return StreamingResponse(
        streamer(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
