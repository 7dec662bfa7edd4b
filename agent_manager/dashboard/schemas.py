"""Pydantic models for the Agent Manager API."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base for response models serialised with camelCase aliases."""
    model_config = ConfigDict(populate_by_name=True)


# Session schemas
class SessionStartResponse(ApiModel):
    """A freshly started terminal session."""
    session_id: str = Field(alias="sessionId")
    url: str
    port: int
    status: Literal["starting", "running", "error", "stopped"]


class SessionStopResponse(ApiModel):
    """Result of stopping a session; stopping an unknown id is not an error."""
    session_id: str = Field(alias="sessionId")
    status: Literal["stopped", "not-found"]


class SessionInfo(ApiModel):
    session_id: str = Field(alias="sessionId")
    url: str
    port: int
    status: Literal["starting", "running", "error", "stopped"]
    pid: Optional[int] = None
    created_at: datetime = Field(alias="createdAt")


# Task schemas
class Subtask(BaseModel):
    description: str
    completed: bool = False


class TaskItem(ApiModel):
    """One task row as stored (or read from a legacy mirror)."""
    agent_id: str = Field(alias="agentId")
    index: int = Field(ge=0)
    description: str
    status: str
    progress: int = Field(ge=0, le=100)
    queued: bool = False
    subtasks: List[Subtask] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class ReplaceTasksResponse(ApiModel):
    success: bool = True
    agent_id: str = Field(alias="agentId")
    count: int
    warnings: List[str] = Field(default_factory=list)


class PatchTaskResponse(BaseModel):
    success: bool = True
    task: TaskItem
    warnings: List[str] = Field(default_factory=list)


class ClearTasksResponse(BaseModel):
    success: bool = True
    deleted: int
    warnings: List[str] = Field(default_factory=list)


class WorkQueueResponse(BaseModel):
    """Executable tasks plus the text used to dispatch them."""
    tasks: List[TaskItem]
    instructions: str


# Error / health schemas
class ErrorResponse(BaseModel):
    """Error response."""
    detail: str
    error: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    uptime: float
    timestamp: datetime
    sessions: int = 0
    connections: int = 0
    workspace_root: str
