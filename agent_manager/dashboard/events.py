"""
WebSocket event feed for the Agent Manager dashboard.

Every connected client receives every event: session lifecycle changes and
task store writes. Events raised on worker threads (sync route handlers, the
session exit watcher) are handed to the server's event loop with publish().
"""

import asyncio
import logging
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Server-to-client event types"""
    CONNECTION_STATUS = "connection_status"
    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    SESSION_EXITED = "session_exited"
    SESSION_FAILED = "session_failed"
    TASKS_REPLACED = "tasks_replaced"
    TASK_UPDATED = "task_updated"
    TASKS_CLEARED = "tasks_cleared"
    PONG = "pong"
    ERROR = "error"


@dataclass
class ClientConnection:
    """Represents a connected WebSocket client"""
    client_id: str
    websocket: WebSocket
    connected_at: datetime


class ConnectionManager:
    """Manages WebSocket connections and fans events out to all of them"""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the server loop so worker threads can publish onto it."""
        self._loop = loop

    def _connections_lock(self) -> asyncio.Lock:
        # Created on first use so it belongs to the running server loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def connect(self, websocket: WebSocket, client_id: str) -> ClientConnection:
        await websocket.accept()

        async with self._connections_lock():
            connection = ClientConnection(
                client_id=client_id,
                websocket=websocket,
                connected_at=datetime.now()
            )
            self._connections[client_id] = connection

        await websocket.send_json({
            "type": EventType.CONNECTION_STATUS.value,
            "status": "connected",
            "client_id": client_id,
            "timestamp": connection.connected_at.isoformat()
        })

        logger.info(f"Client {client_id} connected. Total connections: {len(self._connections)}")
        return connection

    async def disconnect(self, client_id: str):
        async with self._connections_lock():
            if self._connections.pop(client_id, None) is None:
                return
        logger.info(f"Client {client_id} disconnected. Remaining connections: {len(self._connections)}")

    async def broadcast(self, message: Dict[str, Any]):
        """
        Broadcast a message to all connected clients

        Args:
            message: Message to broadcast
        """
        disconnected = []
        for client_id, connection in list(self._connections.items()):
            try:
                await connection.websocket.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to {client_id}: {e}")
                disconnected.append(client_id)

        for client_id in disconnected:
            await self.disconnect(client_id)

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> Optional[Future]:
        """
        Thread-safe broadcast for code running outside the event loop.

        Returns the scheduled future, or None when nothing is listening.
        """
        if self._loop is None or self._loop.is_closed() or not self._connections:
            return None

        message = {"type": event_type.value, **payload}
        message.setdefault("timestamp", datetime.now().isoformat())

        future = asyncio.run_coroutine_threadsafe(self.broadcast(message), self._loop)
        future.add_done_callback(_log_publish_failure)
        return future

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "clients": [
                {
                    "client_id": conn.client_id,
                    "connected_at": conn.connected_at.isoformat(),
                }
                for conn in self._connections.values()
            ]
        }


def _log_publish_failure(future: Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error(f"Event broadcast failed: {future.exception()}")


async def websocket_route(websocket: WebSocket, manager: ConnectionManager):
    """
    Serve one WebSocket client until it goes away.

    The feed is server-push; the only client message understood is
    ``{"type": "ping"}``.
    """
    client_id = str(uuid.uuid4())

    try:
        await manager.connect(websocket, client_id)

        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": EventType.PONG.value, "timestamp": datetime.now().isoformat()})
            else:
                await websocket.send_json({"type": EventType.ERROR.value, "message": "Unknown message type"})

    except WebSocketDisconnect:
        logger.info(f"WebSocket client {client_id} disconnected normally")
    except ValueError as e:
        logger.warning(f"Invalid message from client {client_id}: {e}")
    finally:
        await manager.disconnect(client_id)
