"""
Workspace Management Module for the Agent Manager

Handles the workspace directory layout (task database, legacy mirror files,
agent descriptors), project config file discovery, and agent name validation.
"""

import os
import re
import json
import logging
from typing import Any, Dict, Optional

import yaml

from .errors import InvalidRequest

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

# AGENT_MANAGER_ROOT: project directory holding .claude/ (tasks.db, tasks/, agents/)
# Example: export AGENT_MANAGER_ROOT=/Users/yourname/Developer/Projects/yourproject
# Default: the server's current working directory
ROOT_ENV_VAR = 'AGENT_MANAGER_ROOT'
CONFIG_ENV_VAR = 'AGENT_MANAGER_CONFIG'
AGENTS_DIR_ENV_VAR = 'AGENT_MANAGER_AGENTS_DIR'

DEFAULT_AGENTS_DIR = os.path.join('.claude', 'agents')
TASKS_DIR = os.path.join('.claude', 'tasks')
STATE_DIR = '.claude'

CONFIG_FILE_NAMES = ('.claude-agents.json', '.claude-agents.yaml', '.claude-agents.yml')
PROJECT_ROOT_INDICATORS = ('.git', 'pyproject.toml', 'package.json') + CONFIG_FILE_NAMES

# Agent names end up in file names, so keep them to a safe charset
AGENT_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
MAX_AGENT_ID_LENGTH = 100

# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    # Constants
    'ROOT_ENV_VAR',
    'CONFIG_ENV_VAR',
    'AGENTS_DIR_ENV_VAR',
    'DEFAULT_AGENTS_DIR',
    'CONFIG_FILE_NAMES',
    # Functions
    'get_workspace_root',
    'get_agents_dir',
    'get_tasks_dir',
    'get_flat_mirror_path',
    'get_descriptor_path',
    'validate_agent_id',
    'find_config_file',
    'find_project_root',
    'load_config',
    'default_config',
    'write_default_config',
]


# ============================================================================
# WORKSPACE PATH FUNCTIONS
# ============================================================================

def get_workspace_root(workspace_root: Optional[str] = None) -> str:
    """
    Resolve the workspace root.

    An explicit argument wins, then AGENT_MANAGER_ROOT, then the cwd.
    """
    root = workspace_root or os.getenv(ROOT_ENV_VAR) or os.getcwd()
    return os.path.abspath(os.path.expanduser(root))


def get_agents_dir(workspace_root: str) -> str:
    """Directory holding agent descriptor files (``<name>.md``)."""
    agents_dir = os.getenv(AGENTS_DIR_ENV_VAR) or DEFAULT_AGENTS_DIR
    if os.path.isabs(agents_dir):
        return agents_dir
    return os.path.join(workspace_root, agents_dir)


def get_tasks_dir(workspace_root: str) -> str:
    """Directory holding the flat ``<name>-tasks.json`` mirror files."""
    return os.path.join(workspace_root, TASKS_DIR)


def get_flat_mirror_path(workspace_root: str, agent_id: str) -> str:
    return os.path.join(get_tasks_dir(workspace_root), f"{agent_id}-tasks.json")


def get_descriptor_path(workspace_root: str, agent_id: str) -> str:
    return os.path.join(get_agents_dir(workspace_root), f"{agent_id}.md")


def validate_agent_id(agent_id: str) -> str:
    """
    Validate an agent name before it is used in a query or a file path.

    Args:
        agent_id: Agent name from the request

    Returns:
        The agent name unchanged

    Raises:
        InvalidRequest: If the name is empty, too long or could escape the workspace
    """
    if not agent_id:
        raise InvalidRequest('agent_id', 'must not be empty', agent_id)

    if len(agent_id) > MAX_AGENT_ID_LENGTH:
        raise InvalidRequest('agent_id', f'too long (max {MAX_AGENT_ID_LENGTH} characters)', agent_id)

    if not AGENT_ID_PATTERN.match(agent_id) or '..' in agent_id:
        raise InvalidRequest('agent_id', 'must match [A-Za-z0-9][A-Za-z0-9_.-]*', agent_id)

    return agent_id


# ============================================================================
# PROJECT CONFIG FILE
# ============================================================================

def find_project_root(start_dir: str) -> str:
    """
    Walk up from start_dir to the first directory that looks like a project root.

    Falls back to start_dir when no indicator is found.
    """
    current_dir = os.path.abspath(start_dir)
    while True:
        for indicator in PROJECT_ROOT_INDICATORS:
            if os.path.exists(os.path.join(current_dir, indicator)):
                return current_dir
        parent = os.path.dirname(current_dir)
        if parent == current_dir:  # Reached filesystem root
            return os.path.abspath(start_dir)
        current_dir = parent


def find_config_file(start_dir: str) -> Optional[str]:
    """
    Search for a project config file by walking up the directory tree.

    Stops at the first directory that is a project root (.git, pyproject.toml,
    package.json) so a config from an unrelated parent project is never used.
    """
    current_dir = os.path.abspath(start_dir)
    while True:
        for name in CONFIG_FILE_NAMES:
            candidate = os.path.join(current_dir, name)
            if os.path.isfile(candidate):
                return candidate

        if any(os.path.exists(os.path.join(current_dir, marker))
               for marker in ('.git', 'pyproject.toml', 'package.json')):
            return None

        parent = os.path.dirname(current_dir)
        if parent == current_dir:
            return None
        current_dir = parent


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load a JSON or YAML project config file.

    Raises:
        ValueError: If the extension is unsupported or the file is not a mapping
    """
    ext = os.path.splitext(config_path)[1].lower()
    with open(config_path, 'r', encoding='utf-8') as f:
        if ext == '.json':
            config = json.load(f)
        elif ext in ('.yaml', '.yml'):
            config = yaml.safe_load(f) or {}
        else:
            raise ValueError(f"Unsupported config file format: {ext}")

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    logger.info(f"Loaded config from {config_path}")
    return config


def default_config(project_dir: str) -> Dict[str, Any]:
    return {
        "projectName": os.path.basename(os.path.abspath(project_dir)),
        "agentsDirectory": DEFAULT_AGENTS_DIR.replace(os.sep, '/'),
    }


def write_default_config(project_dir: str) -> str:
    """
    Write a default .claude-agents.json into project_dir.

    Raises:
        FileExistsError: If a config file is already there
    """
    config_path = os.path.join(project_dir, CONFIG_FILE_NAMES[0])
    if os.path.exists(config_path):
        raise FileExistsError(config_path)

    with open(config_path, 'w', encoding='utf-8') as f:
        json.dump(default_config(project_dir), f, indent=2)
        f.write('\n')

    logger.info(f"Created config file {config_path}")
    return config_path
