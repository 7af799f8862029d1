import time
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware
from langchain_core.language_models.chat_models import BaseChatModel

from pulse_chatbot.db import create_db_engine, create_session_factory
from pulse_chatbot.db.conversation_store import ConversationStore
from pulse_chatbot.db.migrations import run_migrations
from pulse_chatbot.routes.chatbot.route import router as chatbot_router
from pulse_chatbot.services.chat import ChatService
from pulse_chatbot.services.llm import build_chat_model
from pulse_chatbot.settings import Config, config

# Configure logging
logging.basicConfig(level=config.log_level)
logger = logging.getLogger(__name__)


def initialize_app(
    settings: Config = config,
    chat_model: BaseChatModel | None = None,
    clock: Callable[[], int] | None = None,
) -> FastAPI:
    """
    Build the application. The database engine, store and chat service are
    created when the app starts and the engine is disposed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_db_engine(settings.db_url, echo=settings.db_echo)
        try:
            run_migrations(engine)
            store = ConversationStore(create_session_factory(engine), clock=clock)

            model = chat_model
            if model is None and settings.gemini_api_key:
                model = build_chat_model(settings.gemini_api_key, settings.gemini_model)
            if model is None:
                logger.warning("No chat model configured, /message endpoints are disabled")

            app.state.settings = settings
            app.state.store = store
            app.state.chat_service = (
                ChatService(
                    store,
                    model,
                    system_prompt=settings.system_prompt,
                    model_id=settings.gemini_model,
                    strategy=settings.truncation_strategy,
                    reserve_for_response=settings.reserve_for_response,
                )
                if model is not None
                else None
            )
            yield
        finally:
            logger.info("Closing database connection")
            engine.dispose()

    app = FastAPI(
        title="Pulse Companion API",
        description="Conversation history and context-window management for the Pulse AI companion",
        version="1.0.0",
        docs_url="/chatbot/docs",
        redoc_url="/chatbot/redoc",
        openapi_url="/chatbot/openapi.json",
        lifespan=lifespan,
    )

    app.include_router(chatbot_router, prefix="/api/v1/chatbot", tags=["chatbot"])
    return app


def add_middlewares(app: FastAPI):
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # the overlay and extension run on local origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response


app = initialize_app()
add_middlewares(app)


@app.get("/")
async def root():
    return {"message": "Pulse Companion API is running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    logger.info("Starting Pulse Companion API server...")
    import uvicorn

    uvicorn.run(
        "pulse_chatbot.__main__:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level="info",
    )
