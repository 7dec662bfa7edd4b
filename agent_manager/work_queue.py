"""
Executable work queue built from the task store.

The queue holds every task that still needs doing and that no worker has
picked up yet. Dispatch instructions turn it into a plain-text command for an
orchestrating assistant, followed by the protocol each worker uses to report
back through the single-field patch route.
"""

import logging
from typing import Any, Dict, Iterable, List, Tuple

from .state_db import TASK_DONE_STATUSES

logger = logging.getLogger(__name__)

WORKER_PROTOCOL = """IMPORTANT: Each agent MUST:
1. Mark its task as queued: curl -X POST {base_url}/api/task/{{agent-name}}/{{task-index}}/queued/true
2. Set status to "in-progress" when starting: curl -X POST {base_url}/api/task/{{agent-name}}/{{task-index}}/status/in-progress
3. Report progress (0-100) while working: curl -X POST {base_url}/api/task/{{agent-name}}/{{task-index}}/progress/50
4. Set status to "completed" when done: curl -X POST {base_url}/api/task/{{agent-name}}/{{task-index}}/status/completed"""


def is_executable(task: Dict[str, Any]) -> bool:
    return task.get('status') not in TASK_DONE_STATUSES and not task.get('queued')


def build_work_queue(tasks: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Unfinished, unqueued tasks ordered by agent then index."""
    queue = [task for task in tasks if is_executable(task)]
    queue.sort(key=lambda task: (task['agent_id'], task['index']))
    return queue


def _group_by_agent(queue: List[Dict[str, Any]]) -> List[Tuple[str, List[Dict[str, Any]]]]:
    groups: List[Tuple[str, List[Dict[str, Any]]]] = []
    for task in queue:
        if groups and groups[-1][0] == task['agent_id']:
            groups[-1][1].append(task)
        else:
            groups.append((task['agent_id'], [task]))
    return groups


def format_dispatch_instructions(queue: List[Dict[str, Any]], base_url: str) -> str:
    """
    Render the work queue as a dispatch command plus the worker protocol.

    Example:
        "Use the developer sub agent to write docs [task 0] and fix bug [task 2],
        then use the tester sub agent to ..."

    Returns '' for an empty queue.
    """
    if not queue:
        return ''

    parts = []
    for agent_id, tasks in _group_by_agent(queue):
        descriptions = ' and '.join(f"{task['description']} [task {task['index']}]" for task in tasks)
        parts.append(f"use the {agent_id} sub agent to {descriptions}")

    command = ', '.join(f"then {part}" if i else part[0].upper() + part[1:] for i, part in enumerate(parts))

    logger.debug(f"Dispatch instructions for {len(queue)} task(s) across {len(parts)} agent(s)")
    return f"{command}\n\n{WORKER_PROTOCOL.format(base_url=base_url.rstrip('/'))}"
