from typing import Any, List, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from pulse_chatbot.models.schemas import ChatMessage


def build_chat_model(api_key: str | None, model: str, temperature: float = 0.7) -> BaseChatModel:
    if not api_key:
        raise ValueError("gemini_api_key is not configured")
    return ChatGoogleGenerativeAI(
        model=model,
        google_api_key=api_key,
        temperature=temperature,
        streaming=True,
    )


def to_langchain_messages(
    system_prompt: str, messages: Sequence[ChatMessage]
) -> List[BaseMessage]:
    """
    Convert stored history to LangChain messages.

    Gemini takes a single leading system message, so system-role entries in
    the history (e.g. the omitted-messages marker) are folded into it.
    """
    system_parts = [system_prompt] if system_prompt else []
    history: List[BaseMessage] = []

    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        elif msg.role == "user":
            history.append(HumanMessage(content=msg.content))
        else:
            history.append(AIMessage(content=msg.content))

    if system_parts:
        return [SystemMessage(content="\n\n".join(system_parts)), *history]
    return history


def message_text(content: Any) -> str:
    """Flatten LangChain message content, which may be a list of parts."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)
