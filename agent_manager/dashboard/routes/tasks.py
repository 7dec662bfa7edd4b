"""
FastAPI routes for agent task state.

Two write paths share one store:
- whole-list replace, used by the UI when it saves an agent's task board
- single-row patch, used by workers reporting progress (JSON body or the
  curl-friendly ``/api/task/{agent}/{index}/{field}/{value}`` form)

Every successful write is pushed to WebSocket clients.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, Query, Request

from ...errors import InvalidRequest
from ...state_db import (
    clear_all_tasks,
    list_all_tasks,
    list_tasks,
    parse_field_value,
    patch_task,
    replace_agent_tasks,
)
from ...work_queue import build_work_queue, format_dispatch_instructions
from ..events import ConnectionManager, EventType
from ..schemas import (
    ClearTasksResponse,
    ErrorResponse,
    PatchTaskResponse,
    ReplaceTasksResponse,
    TaskItem,
    WorkQueueResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["tasks"],
    responses={
        400: {"model": ErrorResponse, "description": "Malformed task data"},
        404: {"model": ErrorResponse, "description": "Task not found"},
        500: {"model": ErrorResponse, "description": "Task store write failed"},
    }
)


def get_workspace_root(request: Request) -> str:
    return request.app.state.workspace_root


def get_event_manager(request: Request) -> ConnectionManager:
    return request.app.state.events


def _extract_task_list(payload: Any) -> Any:
    """Accept either a bare array or ``{"tasks": [...]}``."""
    if isinstance(payload, dict):
        if 'tasks' not in payload:
            raise InvalidRequest('tasks', "body must be an array or an object with a tasks array")
        return payload['tasks']
    return payload


@router.post("/update-agent-tasks/{agent_id}", response_model=ReplaceTasksResponse)
def update_agent_tasks(
    agent_id: str,
    payload: Any = Body(...),
    workspace_root: str = Depends(get_workspace_root),
    events: ConnectionManager = Depends(get_event_manager),
):
    """Replace an agent's whole task list; indices are reassigned 0..n-1."""
    result = replace_agent_tasks(
        workspace_root=workspace_root,
        agent_id=agent_id,
        tasks=_extract_task_list(payload),
    )
    events.publish(EventType.TASKS_REPLACED, {"agent_id": agent_id, "count": result["count"]})
    return result


def _apply_patch(workspace_root: str, events: ConnectionManager, agent_id: str, index: int,
                 fields: Dict[str, Any]) -> Dict[str, Any]:
    result = patch_task(workspace_root=workspace_root, agent_id=agent_id, index=index, fields=fields)
    events.publish(EventType.TASK_UPDATED, {"agent_id": agent_id, "index": index, "task": result["task"]})
    return result


@router.post("/task-progress/{agent_id}/{index}", response_model=PatchTaskResponse)
def update_task_progress(
    agent_id: str,
    index: int,
    fields: Any = Body(...),
    workspace_root: str = Depends(get_workspace_root),
    events: ConnectionManager = Depends(get_event_manager),
):
    """
    Patch one task. Only the fields present in the body change.

    Body example: ``{"status": "in-progress", "progress": 30}``
    """
    return _apply_patch(workspace_root, events, agent_id, index, fields)


@router.post("/task/{agent_id}/{index}/{field}/{value}", response_model=PatchTaskResponse)
def set_task_field(
    agent_id: str,
    index: int,
    field: str,
    value: str,
    workspace_root: str = Depends(get_workspace_root),
    events: ConnectionManager = Depends(get_event_manager),
):
    """Set a single field from the path, e.g. ``/api/task/developer/0/queued/true``."""
    typed_value = parse_field_value(field, value)
    return _apply_patch(workspace_root, events, agent_id, index, {field: typed_value})


@router.get("/task-progress/{agent_id}", response_model=List[TaskItem])
def get_agent_tasks(
    agent_id: str,
    include_deleted: bool = Query(False, description="Include soft-deleted tasks"),
    workspace_root: str = Depends(get_workspace_root),
):
    return list_tasks(workspace_root=workspace_root, agent_id=agent_id, include_deleted=include_deleted)


@router.get("/task-progress", response_model=List[TaskItem])
def get_all_tasks(
    include_deleted: bool = Query(False, description="Include soft-deleted tasks"),
    workspace_root: str = Depends(get_workspace_root),
):
    return list_all_tasks(workspace_root=workspace_root, include_deleted=include_deleted)


@router.delete("/task-progress", response_model=ClearTasksResponse)
def delete_all_tasks(
    workspace_root: str = Depends(get_workspace_root),
    events: ConnectionManager = Depends(get_event_manager),
):
    result = clear_all_tasks(workspace_root=workspace_root)
    events.publish(EventType.TASKS_CLEARED, {"deleted": result["deleted"]})
    return result


@router.get("/work-queue", response_model=WorkQueueResponse)
def get_work_queue(request: Request, workspace_root: str = Depends(get_workspace_root)):
    """Tasks ready to hand out, with dispatch instructions for the orchestrating assistant."""
    queue = build_work_queue(list_all_tasks(workspace_root=workspace_root))
    return {
        "tasks": queue,
        "instructions": format_dispatch_instructions(queue, str(request.base_url)),
    }
