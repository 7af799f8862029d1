import json
from datetime import date, datetime, timezone

import pytest

from pulse_chatbot.models.schemas import ConversationWithMessages, Message
from pulse_chatbot.utils.export import (
    ImportFormatError,
    export_all_filename,
    export_all_to_json,
    export_conversation,
    export_filename,
    export_to_json,
    export_to_markdown,
    export_to_text,
    import_conversations,
)

CREATED = 1_700_000_000_000  # 2023-11-14 22:13:20 UTC


def make_conversation(conversation_id: str = "conv-1", title: str = "Weekend plans"):
    return ConversationWithMessages(
        id=conversation_id,
        title=title,
        created_at=CREATED,
        updated_at=CREATED + 60_000,
        messages=[
            Message(
                id=f"{conversation_id}-m1",
                conversation_id=conversation_id,
                role="user",
                content="What should I do this weekend?",
                screenshot_path="/tmp/calendar.png",
                created_at=CREATED + 1_000,
            ),
            Message(
                id=f"{conversation_id}-m2",
                conversation_id=conversation_id,
                role="assistant",
                content="Go for a hike.",
                tokens_used=7,
                created_at=CREATED + 2_000,
            ),
        ],
    )


def test_markdown_export():
    markdown = export_to_markdown(make_conversation(), model="gemini-2.0-flash")
    lines = markdown.split("\n")

    assert lines[0] == "# Weekend plans"
    assert "**Created:** 2023-11-14 22:13:20 UTC" in lines
    assert "**Last updated:** 2023-11-14 22:14:20 UTC" in lines
    assert "**Model:** gemini-2.0-flash" in lines
    assert "### You (22:13:21)" in lines
    assert "### Pulse (22:13:22)" in lines
    assert lines.count("*[Screenshot attached]*") == 1


def test_markdown_export_without_model():
    assert "**Model:**" not in export_to_markdown(make_conversation())


def test_text_export():
    text = export_to_text(make_conversation())
    lines = text.split("\n")
    assert lines[0] == "Conversation: Weekend plans"
    assert lines[2] == "=" * 50
    assert lines[4:6] == ["[You]", "What should I do this weekend?"]
    assert "[Pulse]" in lines


def test_json_export_uses_camel_case_keys():
    data = json.loads(export_to_json(make_conversation()))
    assert data["createdAt"] == CREATED
    assert data["updatedAt"] == CREATED + 60_000
    assert data["messages"][0]["screenshotPath"] == "/tmp/calendar.png"
    assert data["messages"][1]["tokensUsed"] == 7


def test_export_conversation_dispatches_by_format():
    conversation = make_conversation()
    assert export_conversation(conversation, "markdown") == export_to_markdown(conversation)
    assert export_conversation(conversation, "json") == export_to_json(conversation)
    assert export_conversation(conversation, "text") == export_to_text(conversation)
    with pytest.raises(ValueError):
        export_conversation(conversation, "pdf")


def test_json_round_trip():
    conversation = make_conversation()
    result = import_conversations(export_to_json(conversation))
    assert result.imported == 1
    assert result.errors == []
    assert result.conversations == [conversation]


def test_bulk_export_round_trip():
    conversations = [make_conversation("a"), make_conversation("b", "Second")]
    exported_at = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
    payload = export_all_to_json(conversations, exported_at=exported_at)

    data = json.loads(payload)
    assert data["exportedAt"] == "2026-10-17T12:00:00+00:00"
    assert data["version"] == "1.0"
    assert data["count"] == 2

    result = import_conversations(payload)
    assert result.imported == 2
    assert [c.id for c in result.conversations] == ["a", "b"]


def test_invalid_conversations_are_reported_per_item():
    valid = json.loads(export_to_json(make_conversation()))
    payload = json.dumps(
        {
            "conversations": [
                valid,
                {**valid, "id": 5},
                {**valid, "id": "no-messages", "messages": "none"},
                {**valid, "id": "bad-date", "createdAt": "yesterday"},
                "not an object",
            ]
        }
    )
    result = import_conversations(payload)

    assert result.imported == 1
    assert len(result.errors) == 4
    assert result.errors[0].startswith("Invalid conversation format: unknown")
    assert result.errors[1].startswith("Invalid conversation format: no-messages")
    assert result.errors[2].startswith("Invalid conversation format: bad-date")


def test_messages_without_ids_or_timestamps_are_filled_in():
    payload = json.dumps(
        {
            "id": "legacy",
            "title": "Legacy",
            "createdAt": 1000,
            "updatedAt": 2000.0,
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
            ],
        }
    )
    conversation = import_conversations(payload).conversations[0]
    assert conversation.updated_at == 2000
    assert [m.created_at for m in conversation.messages] == [1000, 1001]
    assert all(m.id and m.conversation_id == "legacy" for m in conversation.messages)


def test_conversations_key_must_hold_a_list():
    result = import_conversations('{"conversations": {"id": "x"}}')
    assert result.imported == 0
    assert result.errors


def test_unparseable_json_fails_the_import():
    with pytest.raises(ImportFormatError):
        import_conversations("{not json")


def test_export_filenames():
    today = date(2026, 10, 17)
    assert export_filename("Hello, World!", "markdown", today) == "pulse_Hello__World__2026-10-17.md"
    assert export_filename("notes", "json", today) == "pulse_notes_2026-10-17.json"
    assert export_filename("notes", "text", today) == "pulse_notes_2026-10-17.txt"
    assert export_filename("x" * 80, "json", today) == f"pulse_{'x' * 50}_2026-10-17.json"
    assert export_all_filename(today) == "pulse_all_conversations_2026-10-17.json"
