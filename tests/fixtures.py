"""
Test fixtures for the agent manager test suite.

Provides workspace builders (agent descriptors, legacy mirror files) and
subprocess command factories that stand in for the terminal bridge.
"""

import json
import os
import random
import sys
from typing import Any, Callable, Dict, List

from agent_manager.ports import is_port_bindable

SAMPLE_DESCRIPTOR_FRONT_MATTER = [
    "name: developer",
    "description: Writes and refactors application code",
    "tools: Read, Edit, Bash",
]

SAMPLE_DESCRIPTOR_BODY = "You are the developer sub agent.\n\nFollow the task list in order.\n"


def create_agent_descriptor(workspace_root: str, agent_id: str,
                            front_matter: List[str] = None, body: str = SAMPLE_DESCRIPTOR_BODY) -> str:
    """
    Create .claude/agents/<agent_id>.md with YAML front matter.

    Returns:
        Path to the created descriptor
    """
    agents_dir = os.path.join(workspace_root, ".claude", "agents")
    os.makedirs(agents_dir, exist_ok=True)
    lines = front_matter if front_matter is not None else SAMPLE_DESCRIPTOR_FRONT_MATTER
    path = os.path.join(agents_dir, f"{agent_id}.md")
    with open(path, "w", encoding="utf-8") as f:
        f.write("---\n" + "\n".join(lines) + "\n---\n" + body)
    return path


def create_flat_mirror(workspace_root: str, agent_id: str, entries: List[Any]) -> str:
    """Create a legacy .claude/tasks/<agent_id>-tasks.json file."""
    tasks_dir = os.path.join(workspace_root, ".claude", "tasks")
    os.makedirs(tasks_dir, exist_ok=True)
    path = os.path.join(tasks_dir, f"{agent_id}-tasks.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(entries, f, indent=2)
    return path


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def sample_task_list() -> List[Dict[str, Any]]:
    return [
        {"description": "Add login form", "status": "pending"},
        {"description": "Wire session cookie", "status": "in-progress", "progress": 40},
        {
            "description": "Write auth tests",
            "subtasks": [
                {"description": "happy path", "completed": True},
                {"description": "expired token", "completed": False},
            ],
        },
    ]


# ============================================================================
# PORTS AND SUBPROCESSES
# ============================================================================

def find_free_port_block(size: int, low: int = 20000, high: int = 60000, attempts: int = 200) -> int:
    """
    Find a base port such that base..base+size-1 are all bindable right now.

    Raises:
        RuntimeError: If no block was found
    """
    for _ in range(attempts):
        base = random.randrange(low, high - size)
        if all(is_port_bindable(port) for port in range(base, base + size)):
            return base
    raise RuntimeError(f"No free block of {size} ports found")


def http_server_command(port: int, session_id: str) -> List[str]:
    """A real listener on the session port, in place of ttyd."""
    return [sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"]


def silent_command(port: int, session_id: str) -> List[str]:
    """Runs but never listens, so readiness polling always fails."""
    return [sys.executable, "-c", "import time; time.sleep(60)"]


def exiting_command(code: int) -> Callable[[int, str], List[str]]:
    """Exits straight away with the given code."""
    def factory(port: int, session_id: str) -> List[str]:
        return [sys.executable, "-c", f"import sys; sys.exit({code})"]
    return factory


def missing_binary_command(port: int, session_id: str) -> List[str]:
    return ["/nonexistent/terminal-bridge-binary", "-p", str(port)]
