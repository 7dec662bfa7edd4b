"""
Port allocation and the live-session registry.

The registry is the only shared mutable state of the session layer: the map
of live sessions and the set of reserved ports, both guarded by one lock.
A port is reserved in the same critical section in which it is probed, so two
concurrent session starts can never pick the same port.
"""

import socket
import logging
import threading
from typing import Callable, Dict, List, Optional, Set, TYPE_CHECKING

from .errors import ResourceExhausted

if TYPE_CHECKING:
    from .sessions import Session

logger = logging.getLogger(__name__)

PROBE_HOST = '127.0.0.1'


def is_port_bindable(port: int, host: str = PROBE_HOST) -> bool:
    """Check at the OS level whether a TCP port can currently be bound."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        return True
    except OSError:
        return False


class SessionRegistry:
    """Thread-safe registry of live sessions and reserved ports."""

    def __init__(self, base_port: int, port_range: int):
        """
        Args:
            base_port: First port of the allocation range
            port_range: Number of ports in the range
        """
        if port_range < 1:
            raise ValueError("port_range must be at least 1")

        self.base_port = base_port
        self.port_range = port_range
        self._lock = threading.Lock()
        self._sessions: Dict[str, "Session"] = {}
        self._reserved: Set[int] = set()

    @property
    def ports(self) -> range:
        return range(self.base_port, self.base_port + self.port_range)

    def reserve_port(self, probe: Callable[[int], bool] = is_port_bindable) -> int:
        """
        Reserve the first free port in range.

        Args:
            probe: OS-level availability check, called under the registry lock

        Returns:
            The reserved port

        Raises:
            ResourceExhausted: If every port is reserved or unbindable
        """
        with self._lock:
            for port in self.ports:
                if port in self._reserved:
                    continue
                if probe(port):
                    self._reserved.add(port)
                    logger.debug(f"Reserved port {port}")
                    return port

        raise ResourceExhausted(self.base_port, self.port_range)

    def release_port(self, port: int) -> None:
        with self._lock:
            self._reserved.discard(port)
        logger.debug(f"Released port {port}")

    def add(self, session: "Session") -> None:
        with self._lock:
            if session.port not in self._reserved:
                raise RuntimeError(f"Port {session.port} was not reserved for session {session.session_id}")
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional["Session"]:
        with self._lock:
            return self._sessions.get(session_id)

    def pop(self, session_id: str, release: bool = True) -> Optional["Session"]:
        """
        Remove a session from the registry.

        The caller that gets the session back owns its port reservation: with
        release=False it must call release_port() itself once the process is gone.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None and release:
                self._reserved.discard(session.port)
        return session

    def sessions(self) -> List["Session"]:
        with self._lock:
            return list(self._sessions.values())

    def reserved_ports(self) -> Set[int]:
        with self._lock:
            return set(self._reserved)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
