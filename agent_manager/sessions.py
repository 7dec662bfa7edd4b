"""
Live Session Management Module

This module handles interactive shell sessions exposed over the network:
- Spawning one terminal bridge subprocess (ttyd by default) per session
- Readiness polling with a bounded retry budget
- Teardown, plus observation of subprocesses that exit on their own

Every session runs on its own port from the SessionRegistry range and shares
no input or output with any other session.
"""

import os
import time
import uuid
import signal
import socket
import logging
import threading
import subprocess
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import SpawnFailure, StartupTimeout
from .ports import PROBE_HOST, SessionRegistry, is_port_bindable

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

SESSION_BASE_PORT = int(os.getenv('AGENT_MANAGER_SESSION_BASE_PORT', '7681'))  # ttyd default
SESSION_PORT_RANGE = int(os.getenv('AGENT_MANAGER_SESSION_PORT_RANGE', '20'))
STARTUP_DELAY = float(os.getenv('AGENT_MANAGER_STARTUP_DELAY', '0.5'))
READINESS_POLL_INTERVAL = float(os.getenv('AGENT_MANAGER_POLL_INTERVAL', '0.2'))
READINESS_MAX_ATTEMPTS = int(os.getenv('AGENT_MANAGER_POLL_ATTEMPTS', '10'))
TERMINATE_TIMEOUT = 5.0

TERMINAL_BINARY = os.getenv('AGENT_MANAGER_TERMINAL', 'ttyd')
TERMINAL_SHELL = os.getenv('AGENT_MANAGER_SHELL', 'bash')
PUBLIC_HOST = 'localhost'

SESSION_STATUSES = ('starting', 'running', 'error', 'stopped')

CommandFactory = Callable[[int, str], List[str]]
SessionListener = Callable[["SessionEvent"], None]


# ============================================================================
# SESSION RECORDS
# ============================================================================

@dataclass
class Session:
    """A live terminal session and the subprocess backing it."""
    session_id: str
    process: subprocess.Popen
    port: int
    status: str = 'starting'
    created_at: datetime = field(default_factory=datetime.now)
    public_host: str = PUBLIC_HOST

    @property
    def url(self) -> str:
        return f"http://{self.public_host}:{self.port}"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'url': self.url,
            'port': self.port,
            'status': self.status,
            'pid': self.pid,
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionEvent:
    """State-transition message about a session (started, stopped, exited, failed)."""
    kind: str
    session_id: str
    port: Optional[int] = None
    returncode: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': f"session_{self.kind}",
            'session_id': self.session_id,
            'port': self.port,
            'returncode': self.returncode,
            'timestamp': self.timestamp.isoformat(),
        }


# ============================================================================
# PROCESS HELPERS
# ============================================================================

def build_terminal_command(port: int, session_id: str) -> List[str]:
    """Command line for a writable ttyd bridge running an interactive shell."""
    return [
        TERMINAL_BINARY,
        '-p', str(port),
        '-W',  # Writable: the client may type into the shell
        '-t', f'titleFixed=Session {session_id}',
        TERMINAL_SHELL,
    ]


def check_port_reachable(port: int, host: str = PROBE_HOST, timeout: float = 0.1) -> bool:
    """Check whether something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _signal_process(process: subprocess.Popen, kill: bool) -> None:
    try:
        if os.name == 'posix':
            # Sessions run in their own process group so the shell goes down with the bridge
            os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)
        elif kill:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


def terminate_process(process: subprocess.Popen, timeout: float = TERMINATE_TIMEOUT) -> Optional[int]:
    """
    Terminate a session subprocess, escalating to SIGKILL after timeout seconds.

    Returns:
        The process exit code
    """
    if process.poll() is not None:
        return process.returncode

    _signal_process(process, kill=False)
    try:
        return process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} ignored SIGTERM for {timeout}s, killing it")
        _signal_process(process, kill=True)
        return process.wait()


# ============================================================================
# SESSION MANAGER
# ============================================================================

class SessionManager:
    """Creates, tracks and tears down isolated terminal sessions."""

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        *,
        command_factory: CommandFactory = build_terminal_command,
        cwd: Optional[str] = None,
        startup_delay: float = STARTUP_DELAY,
        poll_interval: float = READINESS_POLL_INTERVAL,
        max_attempts: int = READINESS_MAX_ATTEMPTS,
        terminate_timeout: float = TERMINATE_TIMEOUT,
        probe: Callable[[int], bool] = is_port_bindable,
        probe_host: str = PROBE_HOST,
        public_host: str = PUBLIC_HOST,
    ):
        """
        Initialize the session manager.

        Args:
            registry: Live-session registry; a fresh one over the configured port range if omitted
            command_factory: Builds the subprocess argv from (port, session_id)
            cwd: Working directory for spawned shells
            startup_delay: Seconds to wait before the first readiness check
            poll_interval: Seconds between readiness checks
            max_attempts: Readiness checks before giving up
            terminate_timeout: Grace period before SIGKILL on teardown
            probe: OS-level port availability check used during reservation
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.registry = registry if registry is not None else SessionRegistry(SESSION_BASE_PORT, SESSION_PORT_RANGE)
        self.command_factory = command_factory
        self.cwd = cwd
        self.startup_delay = startup_delay
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.terminate_timeout = terminate_timeout
        self.probe = probe
        self.probe_host = probe_host
        self.public_host = public_host
        self._listeners: List[SessionListener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: SessionListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: SessionEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Session listener failed for {event.kind} {event.session_id}: {e}")

    def handle_event(self, event: SessionEvent) -> None:
        """
        Deliver a state-transition message to the manager.

        An 'exited' message drops the session from the registry and frees its
        port, unless teardown already did. Listeners see every message.
        """
        if event.kind == 'exited':
            session = self.registry.pop(event.session_id)
            if session is None:
                # Already torn down by destroy_session or a failed start
                return
            session.status = 'stopped'
            logger.info(
                f"Session {event.session_id} exited with code {event.returncode}, "
                f"released port {session.port}"
            )
            event = replace(event, port=session.port)
        self._notify(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self) -> Dict[str, Any]:
        """
        Start a new terminal session and wait until it accepts connections.

        Returns:
            Session dict with session_id, url, port and status='running'

        Raises:
            ResourceExhausted: No free port in range
            SpawnFailure: The subprocess could not start or died during startup
            StartupTimeout: The subprocess never became reachable
        """
        port = self.registry.reserve_port(self.probe)
        session_id = self._new_session_id()

        try:
            command = self.command_factory(port, session_id)
            logger.info(f"Starting session {session_id} on port {port}: {' '.join(command)[:100]}")
            process = subprocess.Popen(
                command,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                start_new_session=(os.name == 'posix'),
            )
        except Exception as e:
            self.registry.release_port(port)
            logger.error(f"Failed to spawn session {session_id}: {e}")
            self._notify(SessionEvent('failed', session_id, port=port))
            raise SpawnFailure(str(e)) from e

        session = Session(session_id=session_id, process=process, port=port, public_host=self.public_host)
        self.registry.add(session)
        self._start_exit_watcher(session)

        if self._wait_until_ready(session):
            session.status = 'running'
            logger.info(f"Session {session_id} is ready at {session.url}")
            self._notify(SessionEvent('started', session_id, port=port))
            return session.to_dict()

        return self._abort_startup(session)

    def destroy_session(self, session_id: str) -> str:
        """
        Stop a session. Safe to call repeatedly.

        Returns:
            'stopped' if the session was live, 'not-found' otherwise
        """
        session = self.registry.pop(session_id, release=False)
        if session is None:
            logger.info(f"Session {session_id} not found (already stopped?)")
            return 'not-found'

        # Log the kill for audit trail
        logger.warning(f"Stopping session {session_id} (pid {session.pid}, port {session.port})")
        session.status = 'stopped'
        try:
            terminate_process(session.process, self.terminate_timeout)
        finally:
            self.registry.release_port(session.port)

        self._notify(SessionEvent('stopped', session_id, port=session.port, returncode=session.process.returncode))
        return 'stopped'

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.registry.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        sessions = sorted(self.registry.sessions(), key=lambda s: s.created_at)
        return [session.to_dict() for session in sessions]

    def shutdown(self) -> int:
        """Stop every live session. Returns the number stopped."""
        stopped = 0
        for session in self.registry.sessions():
            if self.destroy_session(session.session_id) == 'stopped':
                stopped += 1
        if stopped:
            logger.info(f"Stopped {stopped} session(s) on shutdown")
        return stopped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_session_id(self) -> str:
        while True:
            session_id = f"session-{uuid.uuid4().hex[:8]}"
            if session_id not in self.registry:
                return session_id

    def _start_exit_watcher(self, session: Session) -> None:
        watcher = threading.Thread(
            target=self._watch_exit,
            args=(session.session_id, session.process),
            name=f"{session.session_id}-watcher",
            daemon=True,
        )
        watcher.start()

    def _watch_exit(self, session_id: str, process: subprocess.Popen) -> None:
        returncode = process.wait()
        self.handle_event(SessionEvent('exited', session_id, returncode=returncode))

    def _wait_until_ready(self, session: Session) -> bool:
        if self.startup_delay > 0:
            time.sleep(self.startup_delay)

        for attempt in range(1, self.max_attempts + 1):
            if session.status == 'stopped':
                return False
            if check_port_reachable(session.port, self.probe_host):
                return True
            if session.process.poll() is not None:
                return False
            logger.debug(f"Session {session.session_id} not ready (attempt {attempt}/{self.max_attempts})")
            if attempt < self.max_attempts:
                time.sleep(self.poll_interval)

        return False

    def _abort_startup(self, session: Session) -> Dict[str, Any]:
        """Clean up a session that never became ready and raise the matching error."""
        destroyed = session.status == 'stopped'
        returncode = session.process.poll()

        if not destroyed:
            session.status = 'error'

        owned = self.registry.pop(session.session_id, release=False)
        terminate_process(session.process, self.terminate_timeout)
        if owned is not None:
            self.registry.release_port(session.port)

        self._notify(SessionEvent('failed', session.session_id, port=session.port, returncode=returncode))

        if destroyed:
            raise SpawnFailure("session was stopped before it became ready", session.process.returncode)
        if returncode is not None:
            logger.error(f"Session {session.session_id} exited with code {returncode} during startup")
            raise SpawnFailure(f"process exited with code {returncode} during startup", returncode)

        logger.error(f"Session {session.session_id} not reachable after {self.max_attempts} attempts, killed it")
        raise StartupTimeout(session.session_id, session.port, self.max_attempts)
