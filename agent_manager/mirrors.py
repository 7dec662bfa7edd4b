"""
Legacy task mirrors.

Two backward-compatible copies of each agent's task list are regenerated
wholesale from the task store after every write:

- the flat mirror ``.claude/tasks/<agent>-tasks.json`` (JSON array)
- the ``tasks:`` block inside the YAML front matter of ``<agent>.md``

Both are derived caches. Only the one shape we write is understood; the rest
of the descriptor front matter is preserved line for line and never parsed.
"""

import os
import re
import json
import logging
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .workspace import get_descriptor_path, get_flat_mirror_path

logger = logging.getLogger(__name__)

MIRROR_FIELDS = ('description', 'status', 'queued', 'progress', 'subtasks')

FRONT_MATTER_PATTERN = re.compile(r'\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)(.*)\Z', re.DOTALL)
TASKS_KEY_PATTERN = re.compile(r'^tasks:(\s|$)')


class MirrorError(Exception):
    """Raised when a mirror file cannot be written or has an unexpected shape."""


# ============================================================================
# ENTRY SCHEMA
# ============================================================================

def serialize_task_entry(task: Dict[str, Any]) -> Dict[str, Any]:
    """Fixed-schema mirror entry for one task row."""
    return {
        'description': task.get('description', ''),
        'status': task.get('status', 'pending'),
        'queued': bool(task.get('queued', False)),
        'progress': int(task.get('progress', 0)),
        'subtasks': [
            {'description': st.get('description', ''), 'completed': bool(st.get('completed', False))}
            for st in task.get('subtasks') or []
        ],
    }


def _coerce_legacy_subtask(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {'description': str(raw), 'completed': False}
    return {'description': str(raw.get('description') or ''), 'completed': raw.get('completed') in (True, 'true', 1)}


def coerce_legacy_entry(raw: Any) -> Dict[str, Any]:
    """
    Read one entry from a legacy mirror.

    Accepts the string shorthand (``- do the thing``) and the object form;
    missing or unreadable fields fall back to their defaults.
    """
    if isinstance(raw, str):
        return serialize_task_entry({'description': raw})
    if not isinstance(raw, dict):
        return serialize_task_entry({'description': str(raw)})

    try:
        progress = int(raw.get('progress') or 0)
    except (TypeError, ValueError):
        progress = 0

    subtasks = raw.get('subtasks')
    if not isinstance(subtasks, list):
        subtasks = []

    return serialize_task_entry({
        'description': str(raw.get('description') or raw.get('task') or ''),
        'status': str(raw.get('status') or 'pending'),
        'queued': raw.get('queued') in (True, 'true', 1),
        'progress': max(0, min(100, progress)),
        'subtasks': [_coerce_legacy_subtask(st) for st in subtasks],
    })


def _atomic_write(path: str, text: str) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


# ============================================================================
# FLAT MIRROR (<agent>-tasks.json)
# ============================================================================

def write_flat_mirror(path: str, tasks: Sequence[Dict[str, Any]]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    entries = [serialize_task_entry(task) for task in tasks]
    _atomic_write(path, json.dumps(entries, indent=2) + '\n')


def read_flat_mirror(path: str) -> Optional[List[Dict[str, Any]]]:
    """Entries from a flat mirror, or None if the file does not exist."""
    if not os.path.isfile(path):
        return None

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise MirrorError(f"{path} does not contain a JSON array")
    return [coerce_legacy_entry(entry) for entry in data]


# ============================================================================
# DESCRIPTOR FRONT-MATTER BLOCK (<agent>.md)
# ============================================================================

def split_front_matter(content: str) -> Tuple[str, str]:
    """Split a descriptor into (front matter, body)."""
    match = FRONT_MATTER_PATTERN.match(content)
    if not match:
        raise MirrorError("Invalid agent file format: missing front matter")
    return match.group(1), match.group(2)


def _partition_tasks_block(front_matter: str) -> Tuple[List[str], List[str]]:
    """Separate the top-level ``tasks:`` block from all other front-matter lines."""
    kept: List[str] = []
    block: List[str] = []
    in_block = False

    for line in front_matter.split('\n'):
        if TASKS_KEY_PATTERN.match(line):
            in_block = True
            block.append(line)
            continue
        if in_block and (not line.strip() or line[0] in ' \t-'):
            block.append(line)
            continue
        in_block = False
        kept.append(line)

    return kept, block


def render_tasks_block(tasks: Sequence[Dict[str, Any]]) -> str:
    """YAML for the embedded ``tasks:`` block, or '' when there are no tasks."""
    if not tasks:
        return ''
    entries = [serialize_task_entry(task) for task in tasks]
    return yaml.safe_dump({'tasks': entries}, sort_keys=False, default_flow_style=False, allow_unicode=True).rstrip('\n')


def replace_tasks_block(front_matter: str, tasks: Sequence[Dict[str, Any]]) -> str:
    kept, _ = _partition_tasks_block(front_matter)
    text = '\n'.join(kept).strip('\n')
    block = render_tasks_block(tasks)
    if block:
        text = f"{text}\n{block}" if text else block
    return text


def extract_tasks_block(front_matter: str) -> Optional[List[Dict[str, Any]]]:
    """Entries from the embedded ``tasks:`` block, or None if there is none."""
    _, block = _partition_tasks_block(front_matter)
    if not block:
        return None

    data = yaml.safe_load('\n'.join(block)) or {}
    entries = data.get('tasks') if isinstance(data, dict) else None
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise MirrorError("tasks block is not a list")
    return [coerce_legacy_entry(entry) for entry in entries]


def write_descriptor_block(path: str, tasks: Sequence[Dict[str, Any]]) -> None:
    """
    Rewrite the ``tasks:`` block of an existing agent descriptor.

    Raises:
        MirrorError: If the descriptor is missing or has no front matter
    """
    if not os.path.isfile(path):
        raise MirrorError(f"Agent descriptor not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    front_matter, body = split_front_matter(content)
    updated = f"---\n{replace_tasks_block(front_matter, tasks)}\n---\n{body}"
    if updated != content:
        _atomic_write(path, updated)


def read_descriptor_block(path: str) -> Optional[List[Dict[str, Any]]]:
    if not os.path.isfile(path):
        return None
    with open(path, 'r', encoding='utf-8') as f:
        front_matter, _ = split_front_matter(f.read())
    return extract_tasks_block(front_matter)


# ============================================================================
# REGENERATION
# ============================================================================

def regenerate_mirrors(workspace_root: str, agent_id: str, tasks: Sequence[Dict[str, Any]]) -> List[str]:
    """
    Rewrite both mirrors for an agent from committed task rows.

    Failures never propagate: each one is logged and returned as a warning.
    """
    warnings: List[str] = []

    flat_path = get_flat_mirror_path(workspace_root, agent_id)
    try:
        write_flat_mirror(flat_path, tasks)
    except (OSError, TypeError, ValueError) as e:
        warnings.append(f"Flat mirror not updated ({flat_path}): {e}")

    descriptor_path = get_descriptor_path(workspace_root, agent_id)
    try:
        write_descriptor_block(descriptor_path, tasks)
    except (OSError, MirrorError, yaml.YAMLError) as e:
        warnings.append(f"Descriptor block not updated ({descriptor_path}): {e}")

    for warning in warnings:
        logger.warning(f"[MIRROR] {agent_id}: {warning}")
    return warnings


def read_legacy_tasks(workspace_root: str, agent_id: str) -> Optional[List[Dict[str, Any]]]:
    """
    Tasks from the legacy mirrors for an agent that has no store rows.

    Reads the flat mirror first, then the descriptor block. Nothing is written back.
    """
    flat_path = get_flat_mirror_path(workspace_root, agent_id)
    try:
        entries = read_flat_mirror(flat_path)
        if entries is not None:
            return entries
    except (OSError, ValueError, MirrorError) as e:
        logger.warning(f"[MIRROR] Could not read flat mirror {flat_path}: {e}")

    descriptor_path = get_descriptor_path(workspace_root, agent_id)
    try:
        return read_descriptor_block(descriptor_path)
    except (OSError, MirrorError, yaml.YAMLError) as e:
        logger.warning(f"[MIRROR] Could not read descriptor block {descriptor_path}: {e}")
        return None
