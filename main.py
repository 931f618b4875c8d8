"""FastAPI app entry point."""

from __future__ import annotations

import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents import build_registry
from api.routes import router
from api.sessions import SessionRegistry
from config import settings
from core.graph import create_runnable
from core.orchestrator import Orchestrator
from memory.checkpoints import CheckpointStore
from memory.postgres import postgres_backend

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _configure_langsmith() -> None:
    """Export tracing variables for LangChain/LangGraph runs. Off unless tracing and a key are set."""
    if not (settings.langsmith_tracing and settings.langsmith_api_key):
        return
    exports = {
        "LANGSMITH_TRACING": "true",
        "LANGCHAIN_TRACING_V2": "true",
        "LANGCHAIN_API_KEY": settings.langsmith_api_key,
        "LANGCHAIN_PROJECT": settings.langsmith_project,
        "LANGSMITH_ENDPOINT": settings.langsmith_endpoint,
        "LANGCHAIN_ENDPOINT": settings.langsmith_endpoint,
        "LANGSMITH_WORKSPACE_ID": settings.langsmith_workspace_id,
    }
    os.environ.update({name: value for name, value in exports.items() if value})
    logger.info("LangSmith tracing enabled for project %s", settings.langsmith_project)


async def _build_store(stack: AsyncExitStack) -> CheckpointStore:
    if not settings.database_url:
        logger.info("No DATABASE_URL, keeping checkpoints in memory")
        return CheckpointStore()
    backend = await stack.enter_async_context(postgres_backend(settings.database_url))
    return CheckpointStore(backend)


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the app. A ready orchestrator can be passed in (tests); otherwise one is built at start-up."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ReWOO orchestrator API...")
        _configure_langsmith()
        async with AsyncExitStack() as stack:
            if orchestrator is None:
                store = await _build_store(stack)
                registry = build_registry(settings)
                app.state.orchestrator = Orchestrator(create_runnable(registry), store)
            else:
                app.state.orchestrator = orchestrator
            app.state.sessions = SessionRegistry(
                settings.session_ttl_seconds, tool_timeout=settings.tool_response_timeout
            )
            yield
            await app.state.sessions.close()
        logger.info("Shutting down ReWOO orchestrator API...")

    app = FastAPI(
        title="ReWOO Orchestrator API",
        description="Plan / execute / solve task orchestration over LangGraph",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "rewoo-orchestrator"}

    return app


app = create_app()
