from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """You are Pulse, a friendly AI companion that lives next to the user's work.

Answer concisely, format your responses in Markdown, and use the conversation
history to understand follow-up questions. When the user shares a screenshot,
describe what is relevant to their question before answering it."""


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = Field(default="sqlite:///pulse.db")
    db_echo: bool = Field(default=False)
    gemini_api_key: str | None = Field(default=None)
    gemini_model: str = Field(default="gemini-2.0-flash")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    reserve_for_response: int = Field(default=4096, ge=0)
    truncation_strategy: str = Field(default="keep-first-last")
    log_level: str = Field(default="INFO")

config = Config() # type: ignore
