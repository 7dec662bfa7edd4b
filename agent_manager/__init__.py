"""
Claude Agent Manager

Runs terminal sessions for Claude Code and keeps the task lists of its sub
agents, for a local web UI and for the agents themselves.

Modules:
- errors: Error taxonomy shared by the session layer and the task store
- workspace: Workspace layout, config file discovery, agent name validation
- ports: Session registry and port reservation
- sessions: Terminal session lifecycle (spawn, readiness, teardown, exit watch)
- mirrors: Legacy task mirrors (flat JSON file, descriptor front matter)
- state_db: SQLite task store
- work_queue: Executable work queue and dispatch instructions
- dashboard: FastAPI control surface
"""

__version__ = "1.0.0"

from .errors import (
    AgentManagerError,
    ResourceExhausted,
    SpawnFailure,
    StartupTimeout,
    NotFound,
    InvalidRequest,
    StoreWriteFailure,
)

from .workspace import (
    get_workspace_root,
    get_agents_dir,
    get_tasks_dir,
    validate_agent_id,
    find_config_file,
    load_config,
    write_default_config,
)

from .ports import (
    SessionRegistry,
    is_port_bindable,
)

from .sessions import (
    Session,
    SessionEvent,
    SessionManager,
    build_terminal_command,
)

from .state_db import (
    TASK_STATUSES,
    ensure_db,
    replace_agent_tasks,
    patch_task,
    parse_field_value,
    get_task,
    list_tasks,
    list_all_tasks,
    clear_all_tasks,
)

from .work_queue import (
    build_work_queue,
    format_dispatch_instructions,
)

__all__ = [
    '__version__',
    # Errors
    'AgentManagerError',
    'ResourceExhausted',
    'SpawnFailure',
    'StartupTimeout',
    'NotFound',
    'InvalidRequest',
    'StoreWriteFailure',
    # Workspace
    'get_workspace_root',
    'get_agents_dir',
    'get_tasks_dir',
    'validate_agent_id',
    'find_config_file',
    'load_config',
    'write_default_config',
    # Sessions
    'SessionRegistry',
    'is_port_bindable',
    'Session',
    'SessionEvent',
    'SessionManager',
    'build_terminal_command',
    # Task store
    'TASK_STATUSES',
    'ensure_db',
    'replace_agent_tasks',
    'patch_task',
    'parse_field_value',
    'get_task',
    'list_tasks',
    'list_all_tasks',
    'clear_all_tasks',
    # Work queue
    'build_work_queue',
    'format_dispatch_instructions',
]
