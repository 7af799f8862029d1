import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from pulse_chatbot.db import create_db_engine, create_session_factory
from pulse_chatbot.db.conversation_store import ConversationStore
from pulse_chatbot.db.migrations import run_migrations
from pulse_chatbot.settings import Config

TEST_DATABASE_URL = "sqlite:///:memory:"
START_MS = 1_700_000_000_000


class FakeClock:
    """Advances by ``step`` milliseconds on every read."""

    def __init__(self, start: int = START_MS, step: int = 1000) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_db_engine(TEST_DATABASE_URL)
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, clock):
    return ConversationStore(create_session_factory(engine), clock=clock)


def make_client(chat_model=None, **overrides) -> TestClient:
    from pulse_chatbot.__main__ import initialize_app

    settings = Config(db_url=TEST_DATABASE_URL, gemini_api_key=None, **overrides)
    app = initialize_app(settings, chat_model=chat_model, clock=FakeClock())
    return TestClient(app)


@pytest.fixture
def client_factory():
    return make_client


@pytest.fixture
def client():
    with make_client(FakeListChatModel(responses=["Hello from Pulse"])) as client:
        yield client
