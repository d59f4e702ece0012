"""
FastAPI main application.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import chat, notes, profile
from core.config import API_V1_PREFIX, CORS_ORIGINS, LOG_LEVEL, RETRY_COUNTDOWN_SECONDS, VALIDATE_CONFIG_ON_STARTUP
from core.config_validator import ConfigValidator
from core.database import Database
from core.ollama_client import OllamaClient
from core.pipeline import GenerationOrchestrator
from services.persistence.repositories import ChatRepository, NoteRepository, ProfileRepository, StorageRepository
from services.streaming.client import StreamingClient
from services.streaming.ollama_streaming import OllamaStreamingClient

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def validate_configuration(database: Database, check_ollama: bool = True):
    """Log configuration problems and abort startup on errors."""
    logger.info("🔍 Validating configuration...")
    result = ConfigValidator(database=database, check_ollama=check_ollama).validate_all()

    for warning in result["warnings"]:
        logger.warning(f"⚠️  {warning}")

    if not result["valid"]:
        for error in result["errors"]:
            logger.error(f"❌ {error}")
        logger.critical("🛑 Application startup aborted due to configuration errors.")
        raise SystemExit(1)

    logger.info("✅ Configuration validated successfully")


def create_app(
    streaming_client: Optional[StreamingClient] = None,
    database: Optional[Database] = None,
    validate_config: bool = VALIDATE_CONFIG_ON_STARTUP,
    retry_countdown_seconds: int = RETRY_COUNTDOWN_SECONDS,
) -> FastAPI:
    """
    Build the application with its services on ``app.state``.

    Tests pass a scripted streaming client and a temporary database.
    """
    database = database or Database()
    ollama: Optional[OllamaClient] = None
    if streaming_client is None:
        ollama = OllamaClient()
        streaming_client = OllamaStreamingClient(ollama)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if validate_config:
            validate_configuration(database, check_ollama=ollama is not None)
        yield
        if ollama is not None:
            await ollama.aclose()

    app = FastAPI(
        title="Synapse API",
        description="Study guide generation and tutoring API",
        version="1.0.0",
        lifespan=lifespan,
    )

    note_repository = NoteRepository(database)
    app.state.database = database
    app.state.client = streaming_client
    app.state.note_repository = note_repository
    app.state.profile_repository = ProfileRepository(database)
    app.state.chat_repository = ChatRepository(database)
    app.state.storage_repository = StorageRepository(database)
    app.state.orchestrator = GenerationOrchestrator(
        streaming_client,
        note_repository=note_repository,
        storage_repository=app.state.storage_repository,
    )
    app.state.retry_countdown_seconds = retry_countdown_seconds
    app.state.jobs = {}
    app.state.sessions = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(notes.router, prefix=f"{API_V1_PREFIX}/notes", tags=["notes"])
    app.include_router(profile.router, prefix=f"{API_V1_PREFIX}/profile", tags=["profile"])
    app.include_router(chat.router, prefix=f"{API_V1_PREFIX}/chat", tags=["chat"])

    @app.get("/")
    async def root():
        return {"message": "Synapse API", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "generation_status": app.state.orchestrator.status.value,
            "missing_tables": database.missing_tables(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
