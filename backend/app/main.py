"""FastAPI application entry point."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.llm.chat.manager import init_session_manager, shutdown_session_manager

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    await init_session_manager()
    logger.info("Chat session manager started")

    yield

    await shutdown_session_manager()


app = FastAPI(
    title="Chat Session Gateway",
    description="Streamed assistant conversations with rolling context and history",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - allow any localhost port for local front ends
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://localhost(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from app.api import chat  # noqa: E402

app.include_router(chat.router, prefix="/api/v1", tags=["chat"])
