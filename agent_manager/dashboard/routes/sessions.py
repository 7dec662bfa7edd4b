"""
FastAPI routes for terminal session management.

Each session is a terminal bridge subprocess on its own port; the UI embeds
the returned url. Handlers are sync so the blocking start/stop work runs in
the threadpool instead of on the event loop.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request

from ...sessions import SessionManager
from ..schemas import ErrorResponse, SessionInfo, SessionStartResponse, SessionStopResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["terminal"],
    responses={
        500: {"model": ErrorResponse, "description": "Terminal process could not be spawned"},
        503: {"model": ErrorResponse, "description": "No free port in the session range"},
        504: {"model": ErrorResponse, "description": "Terminal did not become reachable"},
    }
)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


@router.post("/start", response_model=SessionStartResponse)
def start_terminal(manager: SessionManager = Depends(get_session_manager)):
    """
    Start a new terminal session.

    Blocks until the terminal accepts connections or the readiness budget
    runs out.
    """
    session = manager.create_session()
    logger.info(f"[API] Started session {session['session_id']} at {session['url']}")
    return session


@router.post("/stop/{session_id}", response_model=SessionStopResponse)
def stop_terminal(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    """Stop a session. Unknown ids report ``not-found`` rather than an error."""
    status = manager.destroy_session(session_id)
    return {"session_id": session_id, "status": status}


@router.get("/sessions", response_model=List[SessionInfo])
def list_terminals(manager: SessionManager = Depends(get_session_manager)):
    return manager.list_sessions()
