"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mcp_console import __version__
from mcp_console.app.config import API_PREFIX, ensure_directories
from mcp_console.app.routers import logs, mcp, selections, streams
from mcp_console.app.services.connection_manager import connection_manager
from mcp_console.app.services.logging_service import get_logger, setup_logging
from mcp_console.app.services.mcp_service import mcp_service
from mcp_console.app.services.response_stream import response_stream_manager

setup_logging(level=logging.DEBUG if os.environ.get("MCP_CONSOLE_DEBUG") == "1" else logging.INFO)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Startup
    logger.info("Starting MCP Console...")
    ensure_directories()
    connection_manager.set_config_source(mcp_service)
    # Bring up every enabled tool server; failures are recorded per server
    await connection_manager.sync(mcp_service.list_enabled())
    response_stream_manager.start_cleanup_task()
    logger.info("MCP Console started successfully")
    yield
    # Shutdown
    logger.info("Shutting down MCP Console...")
    await response_stream_manager.shutdown()
    await connection_manager.shutdown()


app = FastAPI(
    title="MCP Console API",
    description="Backend API for MCP Console - tool-server orchestration and streaming response assembly",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(logs.router, prefix=API_PREFIX)
app.include_router(mcp.router, prefix=API_PREFIX)
app.include_router(selections.router, prefix=API_PREFIX)
app.include_router(streams.router, prefix=API_PREFIX)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}
