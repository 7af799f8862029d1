from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pulse_chatbot.models.schemas import ConversationWithMessages, Message
from pulse_chatbot.services.chat import ChatService

LONG_HISTORY = 1000


def make_service(store):
    return ChatService(
        store,
        FakeListChatModel(responses=["Still here"]),
        system_prompt="You are Pulse.",
        model_id="gemini-2.0-flash",
    )


def long_conversation(conversation_id: str = "long") -> ConversationWithMessages:
    return ConversationWithMessages(
        id=conversation_id,
        title="Long running",
        created_at=1_000,
        updated_at=1_000 + LONG_HISTORY,
        messages=[
            Message(
                id=f"{conversation_id}-{i}",
                conversation_id=conversation_id,
                role="user" if i % 2 == 0 else "assistant",
                content=f"message {i}",
                created_at=1_000 + i,
            )
            for i in range(LONG_HISTORY)
        ],
    )


def test_send_message_starts_a_conversation(store):
    reply = make_service(store).send_message("Hi there")

    assert reply.message.content == "Still here"
    assert reply.original_count == reply.final_count == 1
    messages = store.get_messages(reply.conversation_id)
    assert [m.role for m in messages] == ["user", "assistant"]


def test_send_message_after_a_thousand_messages(store):
    assert store.import_conversation(long_conversation())

    reply = make_service(store).send_message("hello again", conversation_id="long")

    assert reply.conversation_id == "long"
    assert reply.truncated is False
    assert reply.original_count == LONG_HISTORY + 1
    assert reply.final_count == LONG_HISTORY + 1

    newest = store.get_messages("long", limit=None)[-2:]
    assert [m.content for m in newest] == ["hello again", "Still here"]


def test_stream_after_a_thousand_messages(store):
    store.import_conversation(long_conversation())
    service = make_service(store)

    turn = service.start_turn("stream please", conversation_id="long")
    assert turn.prepared.messages[-1].content == "stream please"
    assert "".join(service.stream(turn)) == "Still here"
