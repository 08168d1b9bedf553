"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from health_assistant.api.routes import router
from health_assistant.core.conversation_manager import ConversationManager
from health_assistant.core.fallback_chain import FallbackChain
from health_assistant.core.health_source import HealthDataSource, InMemoryHealthDataSource
from health_assistant.core.prompt_builder import load_prompt_template
from health_assistant.core.registry import ProviderRegistry
from health_assistant.db.conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    PostgresConversationStore
)
from health_assistant.db.pool import DatabasePool
from health_assistant.settings import Settings, load_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ProviderRegistry] = None,
    store: Optional[ConversationStore] = None,
    health_source: Optional[HealthDataSource] = None
) -> FastAPI:
    """
    Build the application and wire its collaborators onto ``app.state``.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        registry: Provider registry (built from settings if omitted)
        store: Conversation store (PostgreSQL when DATABASE_URL is set,
            in-memory otherwise)
        health_source: Health data source (in-memory if omitted)

    Returns:
        Configured FastAPI application
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    db_pool: Optional[DatabasePool] = None
    if store is None:
        if settings.database_url:
            db_pool = DatabasePool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size
            )
            store = PostgresConversationStore(db_pool)
        else:
            store = InMemoryConversationStore()

    registry = registry or ProviderRegistry.from_settings(settings)
    chain = FallbackChain(registry, settings.provider_order)
    health_source = health_source or InMemoryHealthDataSource()

    template = None
    if settings.prompt_template_path:
        template = load_prompt_template(settings.prompt_template_path)

    manager = ConversationManager(
        store=store,
        chain=chain,
        health_source=health_source,
        max_history_messages=settings.max_history_messages,
        biometric_window=settings.biometric_window_days,
        emergency_region=settings.emergency_region,
        prompt_template=template,
        max_context_chars=settings.max_context_chars
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
        - Open the database pool and apply migrations (PostgreSQL only)

        Shutdown:
        - Close the database pool
        """
        logger.info("Starting Health Assistant service...")

        try:
            if db_pool is not None:
                await db_pool.initialize()
                await db_pool.apply_migrations()
                logger.info("Database pool initialized")
            else:
                logger.info("No DATABASE_URL set, conversations are kept in memory")

            logger.info(
                f"Provider order: {[p.value for p in chain.provider_order]}"
            )
            logger.info("Health Assistant service started successfully")

        except Exception as e:
            logger.error(f"Failed to start service: {e}")
            raise

        yield

        logger.info("Shutting down Health Assistant service...")
        if db_pool is not None:
            await db_pool.close()
        logger.info("Service shutdown complete")

    app = FastAPI(
        title="Health Assistant API",
        description="Provider orchestration and conversational safety for a health assistant",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.chain = chain
    app.state.store = store
    app.state.health_source = health_source
    app.state.manager = manager

    # CORS middleware (configure as needed for production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Health Assistant API",
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs"
        }

    return app


_app: Optional[FastAPI] = None


def __getattr__(name: str):
    """Build ``app`` on first access so `uvicorn health_assistant.main:app` works."""
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()

    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower()
    )
