"""
Conversation store.

Durable conversations and messages on top of the CRUD helpers. All writes
go through one lock so the store behaves as a single writer even when the
web layer calls it from a thread pool.
"""
import logging
import threading
import time
import uuid
from typing import Any, Callable

from sqlalchemy import func, or_, select, exists

from pulse_chatbot.db import SessionFactory, like_condition
from pulse_chatbot.db.crud_helper import ConversationCRUD, MessageCRUD, SettingCRUD
from pulse_chatbot.models import schemas
from pulse_chatbot.models.chat import (
    DEFAULT_TITLE,
    MESSAGE_ROLES,
    Conversation,
    Message,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
TITLE_MIN_WORD_CUT = 20
# default page of messages; pass limit=None for the whole history
MESSAGE_PAGE_SIZE = 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_title(content: str) -> str:
    """
    Derive a conversation title from the first user message.

    Keeps the first 50 characters, backs up to the last whole word when the
    cut lands past character 20, and appends an ellipsis if anything was cut.
    """
    title = content[:TITLE_MAX_CHARS].strip()

    if len(content) > TITLE_MAX_CHARS:
        last_space = title.rfind(" ")
        if last_space > TITLE_MIN_WORD_CUT:
            title = title[:last_space]
        title += "..."

    title = " ".join(title.split())
    return title or DEFAULT_TITLE


class ConversationStore:
    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.conversation_crud = ConversationCRUD(session_factory)
        self.message_crud = MessageCRUD(session_factory)
        self.setting_crud = SettingCRUD(session_factory)
        self.clock = clock or now_ms
        self._write_lock = threading.RLock()

    # --- conversations ---

    def create_conversation(self, title: str | None = None) -> schemas.Conversation:
        now = self.clock()
        with self._write_lock:
            row = self.conversation_crud.create_resource(
                {
                    "id": str(uuid.uuid4()),
                    "title": title or DEFAULT_TITLE,
                    "created_at": now,
                    "updated_at": now,
                    "pinned": False,
                    "archived": False,
                }
            )
        logger.info(f"Created conversation {row['id']}")
        return schemas.Conversation.model_validate(row)

    def get_conversation(self, conversation_id: str) -> schemas.Conversation | None:
        row = self.conversation_crud.get_resource(conversation_id)
        if row is None:
            return None
        return schemas.Conversation.model_validate(row)

    def get_conversation_with_messages(
        self, conversation_id: str, limit: int | None = MESSAGE_PAGE_SIZE
    ) -> schemas.ConversationWithMessages | None:
        with self.conversation_crud.session_scope() as session:
            row = self.conversation_crud.get_resource(conversation_id, session=session)
            if row is None:
                return None
            messages = self.message_crud.list_resource(
                where=[Message.conversation_id == conversation_id],
                order_by=["created_at"],
                limit=limit,
                session=session,
            )
            message_count = self.message_crud.count_resource(
                [Message.conversation_id == conversation_id], session=session
            )
            last_message = session.execute(
                select(Message.content)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc())
                .limit(1)
            ).scalar()
        return schemas.ConversationWithMessages.model_validate(
            {
                **row,
                "messages": messages,
                "message_count": message_count,
                "last_message": last_message,
            }
        )

    def get_conversations(
        self,
        include_archived: bool = False,
        pinned_first: bool = True,
        limit: int = 100,
        offset: int = 0,
        search: str | None = None,
    ) -> list[schemas.Conversation]:
        message_count = (
            select(func.count(Message.id))
            .where(Message.conversation_id == Conversation.id)
            .correlate(Conversation)
            .scalar_subquery()
        )
        last_message = (
            select(Message.content)
            .where(Message.conversation_id == Conversation.id)
            .order_by(Message.created_at.desc())
            .limit(1)
            .correlate(Conversation)
            .scalar_subquery()
        )
        stmt = select(
            Conversation,
            message_count.label("message_count"),
            last_message.label("last_message"),
        )

        if not include_archived:
            stmt = stmt.where(Conversation.archived.is_(False))

        if search:
            content_match = exists().where(
                Message.conversation_id == Conversation.id,
                like_condition(Message.content, search),
            )
            stmt = stmt.where(or_(like_condition(Conversation.title, search), content_match))

        if pinned_first:
            stmt = stmt.order_by(Conversation.pinned.desc(), Conversation.updated_at.desc())
        else:
            stmt = stmt.order_by(Conversation.updated_at.desc())

        stmt = stmt.limit(limit).offset(offset)

        with self.conversation_crud.session_scope() as session:
            rows = session.execute(stmt).all()
            return [
                schemas.Conversation.model_validate(
                    {
                        **self.conversation_crud.db_row_to_model(conversation),
                        "message_count": count,
                        "last_message": last,
                    }
                )
                for conversation, count, last in rows
            ]

    def update_conversation(
        self,
        conversation_id: str,
        title: str | None = None,
        pinned: bool | None = None,
        archived: bool | None = None,
    ) -> schemas.Conversation | None:
        with self._write_lock, self.conversation_crud.session_scope() as session:
            current = self.conversation_crud.get_resource(conversation_id, session=session)
            if current is None:
                return None

            data: dict[str, Any] = {"updated_at": max(self.clock(), current["created_at"])}
            if title is not None:
                data["title"] = title
            if pinned is not None:
                data["pinned"] = pinned
            if archived is not None:
                data["archived"] = archived

            row = self.conversation_crud.update_resource(
                data, conversation_id, session=session
            )
        return schemas.Conversation.model_validate(row)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and all of its messages in one transaction."""
        with self._write_lock, self.conversation_crud.session_scope() as session:
            removed_messages = self.message_crud.delete_where(
                [Message.conversation_id == conversation_id], session=session
            )
            removed = self.conversation_crud.delete_where(
                [Conversation.id == conversation_id], session=session
            )
        if removed:
            logger.info(
                f"Deleted conversation {conversation_id} with {removed_messages} messages"
            )
        return removed > 0

    # --- messages ---

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        screenshot_path: str | None = None,
        tokens_used: int | None = 0,
    ) -> schemas.Message | None:
        """
        Append a message and bump the conversation's ``updated_at``.

        The first user message of an untitled conversation also names it.
        Returns None if the conversation does not exist.
        """
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Invalid message role: {role!r}")
        tokens_used = tokens_used or 0
        if tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")

        with self._write_lock, self.conversation_crud.session_scope() as session:
            conversation = self.conversation_crud.get_resource(conversation_id, session=session)
            if conversation is None:
                return None

            created_at = max(self.clock(), conversation["created_at"])
            last_created_at = session.execute(
                select(func.max(Message.created_at)).where(
                    Message.conversation_id == conversation_id
                )
            ).scalar()
            # created_at orders messages, keep it strictly increasing
            if last_created_at is not None and created_at <= last_created_at:
                created_at = last_created_at + 1

            row = self.message_crud.create_resource(
                {
                    "id": str(uuid.uuid4()),
                    "conversation_id": conversation_id,
                    "role": role,
                    "content": content,
                    "screenshot_path": screenshot_path or None,
                    "tokens_used": tokens_used,
                    "created_at": created_at,
                },
                session=session,
            )

            updates: dict[str, Any] = {
                "updated_at": max(created_at, conversation["updated_at"])
            }
            if conversation["title"] == DEFAULT_TITLE and role == "user":
                updates["title"] = generate_title(content)
            self.conversation_crud.update_resource(updates, conversation_id, session=session)

        return schemas.Message.model_validate(row)

    def get_messages(
        self, conversation_id: str, limit: int | None = MESSAGE_PAGE_SIZE, offset: int = 0
    ) -> list[schemas.Message]:
        rows = self.message_crud.list_resource(
            where=[Message.conversation_id == conversation_id],
            order_by=["created_at"],
            limit=limit,
            offset=offset,
        )
        return [schemas.Message.model_validate(row) for row in rows]

    def delete_message(self, message_id: str) -> bool:
        with self._write_lock:
            removed = self.message_crud.delete_where([Message.id == message_id])
        return removed > 0

    def get_stats(self) -> schemas.StoreStats:
        with self.conversation_crud.session_scope() as session:
            total_conversations = self.conversation_crud.count_resource(session=session)
            total_messages = self.message_crud.count_resource(session=session)
            total_tokens = session.execute(
                select(func.coalesce(func.sum(Message.tokens_used), 0))
            ).scalar_one()
        return schemas.StoreStats(
            total_conversations=total_conversations,
            total_messages=total_messages,
            total_tokens=total_tokens,
        )

    # --- import ---

    def import_conversation(self, conversation: schemas.ConversationWithMessages) -> bool:
        """
        Recreate an exported conversation with its original ids and timestamps.

        Returns False when a conversation with the same id already exists.
        """
        with self._write_lock, self.conversation_crud.session_scope() as session:
            if self.conversation_crud.get_resource(conversation.id, session=session):
                return False

            self.conversation_crud.create_resource(
                {
                    "id": conversation.id,
                    "title": conversation.title,
                    "created_at": conversation.created_at,
                    "updated_at": max(conversation.updated_at, conversation.created_at),
                    "pinned": conversation.pinned,
                    "archived": conversation.archived,
                },
                session=session,
            )
            for message in conversation.messages:
                message_id = message.id
                if session.get(Message, message_id) is not None:
                    message_id = str(uuid.uuid4())
                self.message_crud.create_resource(
                    {
                        "id": message_id,
                        "conversation_id": conversation.id,
                        "role": message.role,
                        "content": message.content,
                        "screenshot_path": message.screenshot_path,
                        "tokens_used": message.tokens_used,
                        "created_at": message.created_at,
                    },
                    session=session,
                )
        logger.info(
            f"Imported conversation {conversation.id} with {len(conversation.messages)} messages"
        )
        return True

    # --- settings sidecar ---

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        row = self.setting_crud.get_resource(key)
        return row["value"] if row is not None else default

    def set_setting(self, key: str, value: str) -> None:
        with self._write_lock, self.setting_crud.session_scope() as session:
            data = {"value": value, "updated_at": self.clock()}
            if self.setting_crud.update_resource(data, key, session=session) is None:
                self.setting_crud.create_resource({"key": key, **data}, session=session)
