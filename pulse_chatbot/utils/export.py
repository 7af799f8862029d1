"""
Conversation export and import.

Exports are plain strings in Markdown, JSON or text. Imports accept a JSON
export of a single conversation or the bulk ``{"conversations": [...]}``
format and validate every conversation on its own.
"""
import json
import logging
import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError

from pulse_chatbot.models.schemas import (
    CamelModel,
    ConversationWithMessages,
    Message,
    Role,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
FILENAME_TITLE_MAX_CHARS = 50

ROLE_LABELS = {"user": "You", "assistant": "Pulse", "system": "System"}

EXTENSIONS = {"markdown": "md", "json": "json", "text": "txt"}
MEDIA_TYPES = {
    "markdown": "text/markdown",
    "json": "application/json",
    "text": "text/plain",
}

Number = Union[StrictInt, StrictFloat]


class ImportFormatError(ValueError):
    """The import payload is not parseable JSON."""


class ImportedMessage(CamelModel):
    id: Optional[StrictStr] = None
    role: Role
    content: StrictStr
    screenshot_path: Optional[StrictStr] = None
    tokens_used: StrictInt = Field(default=0, ge=0)
    created_at: Optional[Number] = None


class ImportedConversation(CamelModel):
    id: StrictStr
    title: StrictStr
    messages: List[ImportedMessage]
    created_at: Number
    updated_at: Number
    pinned: StrictBool = False
    archived: StrictBool = False

    def to_conversation(self) -> ConversationWithMessages:
        created_at = int(self.created_at)
        messages = [
            Message(
                id=msg.id or str(uuid.uuid4()),
                conversation_id=self.id,
                role=msg.role,
                content=msg.content,
                screenshot_path=msg.screenshot_path,
                tokens_used=msg.tokens_used,
                # keep export order for messages without a timestamp
                created_at=int(msg.created_at) if msg.created_at is not None else created_at + i,
            )
            for i, msg in enumerate(self.messages)
        ]
        return ConversationWithMessages(
            id=self.id,
            title=self.title,
            created_at=created_at,
            updated_at=int(self.updated_at),
            pinned=self.pinned,
            archived=self.archived,
            messages=messages,
        )


class ImportResult(BaseModel):
    imported: int = 0
    errors: List[str] = Field(default_factory=list)
    conversations: List[ConversationWithMessages] = Field(default_factory=list)


def _format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%H:%M:%S")


def export_to_markdown(conversation: ConversationWithMessages, model: str | None = None) -> str:
    lines: List[str] = [
        f"# {conversation.title}",
        "",
        f"**Created:** {_format_timestamp(conversation.created_at)}",
        f"**Last updated:** {_format_timestamp(conversation.updated_at)}",
    ]
    if model:
        lines.append(f"**Model:** {model}")
    lines += ["", "---", ""]

    for message in conversation.messages:
        label = ROLE_LABELS.get(message.role, message.role)
        lines.append(f"### {label} ({_format_time(message.created_at)})")
        lines.append("")
        lines.append(message.content)
        lines.append("")
        if message.screenshot_path:
            lines.append("*[Screenshot attached]*")
            lines.append("")

    return "\n".join(lines)


def _conversation_to_dict(conversation: ConversationWithMessages) -> dict[str, Any]:
    return conversation.model_dump(by_alias=True, mode="json")


def export_to_json(conversation: ConversationWithMessages) -> str:
    return json.dumps(_conversation_to_dict(conversation), indent=2, ensure_ascii=False)


def export_all_to_json(
    conversations: Sequence[ConversationWithMessages],
    exported_at: datetime | None = None,
) -> str:
    exported_at = exported_at or datetime.now(timezone.utc)
    return json.dumps(
        {
            "exportedAt": exported_at.isoformat(),
            "version": EXPORT_VERSION,
            "count": len(conversations),
            "conversations": [_conversation_to_dict(c) for c in conversations],
        },
        indent=2,
        ensure_ascii=False,
    )


def export_to_text(conversation: ConversationWithMessages) -> str:
    lines: List[str] = [
        f"Conversation: {conversation.title}",
        f"Date: {_format_timestamp(conversation.created_at)}",
        "=" * 50,
        "",
    ]
    for message in conversation.messages:
        lines.append(f"[{ROLE_LABELS.get(message.role, message.role)}]")
        lines.append(message.content)
        lines.append("")
    return "\n".join(lines)


def export_conversation(
    conversation: ConversationWithMessages, fmt: str, model: str | None = None
) -> str:
    if fmt == "markdown":
        return export_to_markdown(conversation, model=model)
    if fmt == "json":
        return export_to_json(conversation)
    if fmt == "text":
        return export_to_text(conversation)
    raise ValueError(f"Unsupported export format: {fmt}")


def export_filename(title: str, fmt: str, today: date | None = None) -> str:
    sanitized_title = re.sub(r"[^A-Za-z0-9]", "_", title)[:FILENAME_TITLE_MAX_CHARS]
    stamp = (today or date.today()).isoformat()
    return f"pulse_{sanitized_title}_{stamp}.{EXTENSIONS[fmt]}"


def export_all_filename(today: date | None = None) -> str:
    return f"pulse_all_conversations_{(today or date.today()).isoformat()}.json"


def _describe_errors(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'root'}: {err['msg']}"
        for err in error.errors()
    )


def import_conversations(payload: str | bytes) -> ImportResult:
    """
    Parse and validate an export payload.

    Invalid conversations are reported in ``errors`` and skipped; only
    unparseable JSON fails the whole import.

    Raises:
        ImportFormatError: if ``payload`` is not valid JSON.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ImportFormatError("Invalid JSON file") from e

    result = ImportResult()

    if isinstance(data, dict) and "conversations" in data:
        candidates = data["conversations"]
        if not isinstance(candidates, list):
            result.errors.append("Invalid export format: 'conversations' must be a list")
            return result
    else:
        candidates = [data]

    for candidate in candidates:
        try:
            imported = ImportedConversation.model_validate(candidate)
        except ValidationError as e:
            conv_id = candidate.get("id") if isinstance(candidate, dict) else None
            label = conv_id if isinstance(conv_id, str) else "unknown"
            logger.warning(f"Skipping invalid conversation {label}: {_describe_errors(e)}")
            result.errors.append(f"Invalid conversation format: {label} ({_describe_errors(e)})")
            continue
        result.conversations.append(imported.to_conversation())
        result.imported += 1

    return result
