"""FastAPI server for the Agent Manager."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import AgentManagerError, InvalidRequest, NotFound, ResourceExhausted, StartupTimeout
from ..sessions import SessionEvent, SessionManager
from ..workspace import get_workspace_root
from .events import ConnectionManager, EventType, websocket_route
from .routes import sessions, tasks
from .schemas import HealthResponse

logger = logging.getLogger(__name__)

# Vite and CRA dev servers
CORS_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]

ERROR_STATUS_CODES = {
    InvalidRequest: 400,
    NotFound: 404,
    ResourceExhausted: 503,
    StartupTimeout: 504,
}

SESSION_EVENT_TYPES = {
    'started': EventType.SESSION_STARTED,
    'stopped': EventType.SESSION_STOPPED,
    'exited': EventType.SESSION_EXITED,
    'failed': EventType.SESSION_FAILED,
}


def status_code_for(exc: AgentManagerError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_class):
            return status_code
    # SpawnFailure, StoreWriteFailure
    return 500


async def agent_manager_error_handler(request: Request, exc: AgentManagerError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed path or body values get the same 400 shape as store validation."""
    first = exc.errors()[0] if exc.errors() else {}
    location = '.'.join(str(part) for part in first.get('loc', ()) if part not in ('body', 'path', 'query'))
    detail = f"Invalid {location or 'request'}: {first.get('msg', 'validation failed')}"
    return JSONResponse(status_code=400, content={"detail": detail, "error": InvalidRequest.kind})


def create_app(workspace_root: Optional[str] = None, session_manager: Optional[SessionManager] = None) -> FastAPI:
    """
    Build the Agent Manager app.

    Args:
        workspace_root: Project directory holding .claude/; AGENT_MANAGER_ROOT or the cwd if omitted
        session_manager: Injected manager (tests); a default one otherwise
    """
    root = get_workspace_root(workspace_root)
    manager = session_manager if session_manager is not None else SessionManager(cwd=root)
    events = ConnectionManager()

    def forward_session_event(event: SessionEvent) -> None:
        events.publish(SESSION_EVENT_TYPES.get(event.kind, EventType.ERROR), event.to_dict())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info(f"[Agent Manager] Starting server for workspace {root}")
        events.bind_loop(asyncio.get_running_loop())
        manager.add_listener(forward_session_event)

        yield

        logger.info("[Agent Manager] Shutting down server...")
        manager.remove_listener(forward_session_event)
        stopped = manager.shutdown()
        if stopped:
            logger.info(f"[Agent Manager] Stopped {stopped} terminal session(s)")

    app = FastAPI(
        title="Agent Manager API",
        description="Terminal sessions and agent task state for Claude Code sub agents",
        version=__version__,
        lifespan=lifespan
    )
    app.state.workspace_root = root
    app.state.session_manager = manager
    app.state.events = events
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AgentManagerError, agent_manager_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(sessions.router, prefix="/api/terminal")
    app.include_router(tasks.router, prefix="/api")

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime=time.time() - app.state.started_at,
            timestamp=datetime.now(),
            sessions=len(manager.registry),
            connections=events.get_connection_stats()["total_connections"],
            workspace_root=root,
        )

    @app.get("/", tags=["root"])
    def root_info():
        """Root endpoint."""
        return {
            "message": "Agent Manager API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "websocket": "/ws"
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Event feed: session lifecycle and task store writes."""
        await websocket_route(websocket, events)

    return app
