"""
SQLite-backed task state for the Agent Manager.

Design:
- SQLite (<root>/.claude/tasks.db) is the single source of truth for task items.
- Each agent's list is written two ways: whole-list replace (the UI) and
  single-row patch (workers reporting progress).
- The flat <agent>-tasks.json file and the ``tasks:`` block of <agent>.md are
  mirrors. They are regenerated wholesale from committed rows after every
  write and a mirror failure never undoes a commit.
- Status values are validated, transitions are not: any valid status may
  replace any other.
"""

from __future__ import annotations

import os
import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Sequence

from .errors import InvalidRequest, NotFound, StoreWriteFailure
from .mirrors import coerce_legacy_entry, read_legacy_tasks, regenerate_mirrors
from .workspace import STATE_DIR, get_tasks_dir, validate_agent_id

logger = logging.getLogger(__name__)


TASK_STATUSES = ('pending', 'in-progress', 'completed', 'blocked', 'deleted')

# Statuses that take an item out of the executable work queue
TASK_DONE_STATUSES = {'completed', 'deleted'}

PATCHABLE_FIELDS = ('status', 'progress', 'queued', 'subtasks')

# Fields an external worker may set through the single-field path form
PATH_PATCHABLE_FIELDS = ('status', 'progress', 'queued')

_TRUE_VALUES = {'true', '1', 'yes'}
_FALSE_VALUES = {'false', '0', 'no'}

# One lock per "<db_path>:<agent>" key, kept for the life of the process;
# the map grows only with the number of distinct agents the server has seen.
_mirror_locks: Dict[str, threading.Lock] = {}
_mirror_locks_guard = threading.Lock()


def get_state_db_path(workspace_root: str) -> str:
    base = os.path.abspath(workspace_root)
    os.makedirs(os.path.join(base, STATE_DIR), exist_ok=True)
    return os.path.join(base, STATE_DIR, "tasks.db")


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=10, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")
    return conn


def _init_db(conn: sqlite3.Connection) -> None:
    """Initialize database schema."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS task_progress (
          agent_id TEXT NOT NULL,
          task_index INTEGER NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          status TEXT NOT NULL DEFAULT 'pending',
          progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
          queued INTEGER NOT NULL DEFAULT 0,
          subtasks TEXT NOT NULL DEFAULT '[]',  -- JSON array of {description, completed}
          created_at TEXT,
          updated_at TEXT,
          PRIMARY KEY (agent_id, task_index)
        );

        CREATE INDEX IF NOT EXISTS idx_task_progress_status ON task_progress(status);
        """
    )


def ensure_db(workspace_root: str) -> str:
    try:
        db_path = get_state_db_path(workspace_root)
        conn = _connect(db_path)
        try:
            _init_db(conn)
        finally:
            conn.close()
    except (OSError, sqlite3.Error) as e:
        logger.error(f"[SQLITE] Could not open task store under {workspace_root}: {e}")
        raise StoreWriteFailure(f"Could not open task store: {e}") from e
    return db_path


@contextmanager
def _write_transaction(db_path: str, action: str) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside BEGIN IMMEDIATE ... COMMIT.

    Any exception rolls the transaction back; sqlite errors surface as StoreWriteFailure.
    """
    try:
        conn = _connect(db_path)
    except sqlite3.Error as e:
        raise StoreWriteFailure(f"{action} failed: {e}") from e

    try:
        # Exclusive write lock from the start so concurrent writers serialize
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
    except sqlite3.Error as e:
        logger.error(f"[SQLITE] {action} failed: {e}")
        raise StoreWriteFailure(f"{action} failed: {e}") from e
    finally:
        conn.close()


def _read_rows(db_path: str, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    try:
        conn = _connect(db_path)
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"[SQLITE] Read failed: {e}")
        raise StoreWriteFailure(f"Task store read failed: {e}") from e


# ============================================================================
# VALIDATION
# ============================================================================

def _validate_status(value: Any, field: str = 'status') -> str:
    if not isinstance(value, str) or value not in TASK_STATUSES:
        raise InvalidRequest(field, f"must be one of {', '.join(TASK_STATUSES)}", value)
    return value


def _validate_progress(value: Any, field: str = 'progress') -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(field, "must be an integer", value)
    if not 0 <= value <= 100:
        raise InvalidRequest(field, "must be between 0 and 100", value)
    return value


def _validate_queued(value: Any, field: str = 'queued') -> bool:
    if not isinstance(value, bool):
        raise InvalidRequest(field, "must be true or false", value)
    return value


def _validate_subtasks(value: Any, field: str = 'subtasks') -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise InvalidRequest(field, "must be a list", value)

    subtasks = []
    for i, item in enumerate(value):
        if isinstance(item, str):
            subtasks.append({'description': item, 'completed': False})
            continue
        if not isinstance(item, dict) or not isinstance(item.get('description'), str):
            raise InvalidRequest(f"{field}[{i}]", "must be a string or {description, completed}", item)
        completed = item.get('completed', False)
        if not isinstance(completed, bool):
            raise InvalidRequest(f"{field}[{i}].completed", "must be true or false", completed)
        subtasks.append({'description': item['description'], 'completed': completed})
    return subtasks


_FIELD_VALIDATORS = {
    'status': _validate_status,
    'progress': _validate_progress,
    'queued': _validate_queued,
    'subtasks': _validate_subtasks,
}


def normalize_task_descriptor(raw: Any, position: int = 0) -> Dict[str, Any]:
    """
    Turn one submitted task descriptor into a full task record.

    Accepts the string shorthand ("write the docs") or an object with
    description (or task), status, progress, queued and subtasks.
    Unrecognised keys are ignored.
    """
    field = f"tasks[{position}]"
    if isinstance(raw, str):
        return {'description': raw, 'status': 'pending', 'progress': 0, 'queued': False, 'subtasks': []}

    if not isinstance(raw, dict):
        raise InvalidRequest(field, "must be a string or an object", raw)

    description = raw.get('description')
    if description is None:
        description = raw.get('task', '')
    if not isinstance(description, str):
        raise InvalidRequest(f"{field}.description", "must be a string", description)

    return {
        'description': description,
        'status': _validate_status(raw.get('status', 'pending'), f"{field}.status"),
        'progress': _validate_progress(raw.get('progress', 0), f"{field}.progress"),
        'queued': _validate_queued(raw.get('queued', False), f"{field}.queued"),
        'subtasks': _validate_subtasks(raw.get('subtasks') or [], f"{field}.subtasks"),
    }


def normalize_task_list(tasks: Any) -> List[Dict[str, Any]]:
    if not isinstance(tasks, list):
        raise InvalidRequest('tasks', "must be a list of task descriptors", tasks)
    return [normalize_task_descriptor(raw, i) for i, raw in enumerate(tasks)]


def normalize_patch_fields(fields: Any) -> Dict[str, Any]:
    """Validate a partial update; only the supplied fields are returned."""
    if not isinstance(fields, dict) or not fields:
        raise InvalidRequest('fields', f"must set at least one of {', '.join(PATCHABLE_FIELDS)}", fields)

    unknown = sorted(set(fields) - set(PATCHABLE_FIELDS))
    if unknown:
        raise InvalidRequest(unknown[0], f"cannot be patched (allowed: {', '.join(PATCHABLE_FIELDS)})")

    return {name: _FIELD_VALIDATORS[name](value) for name, value in fields.items()}


def parse_field_value(field: str, raw: str) -> Any:
    """
    Convert the single-field path form (``/queued/true``, ``/progress/40``) to a typed value.

    Raises:
        InvalidRequest: If the field is not patchable by path or the value does not parse
    """
    if field not in PATH_PATCHABLE_FIELDS:
        raise InvalidRequest(field, f"cannot be set by path (allowed: {', '.join(PATH_PATCHABLE_FIELDS)})")

    if field == 'queued':
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise InvalidRequest(field, "must be true or false", raw)

    if field == 'progress':
        try:
            progress = int(raw.strip())
        except ValueError:
            raise InvalidRequest(field, "must be an integer", raw)
        return _validate_progress(progress)

    return _validate_status(raw)


def _validate_index(index: Any) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise InvalidRequest('index', "must be a non-negative integer", index)
    return index


# ============================================================================
# ROW CONVERSION
# ============================================================================

def _row_to_task(row: sqlite3.Row) -> Dict[str, Any]:
    try:
        subtasks = json.loads(row['subtasks'] or '[]')
    except ValueError:
        logger.warning(f"Unreadable subtasks for {row['agent_id']}[{row['task_index']}]")
        subtasks = []

    return {
        'agent_id': row['agent_id'],
        'index': row['task_index'],
        'description': row['description'],
        'status': row['status'],
        'progress': row['progress'],
        'queued': bool(row['queued']),
        'subtasks': subtasks,
        'created_at': row['created_at'],
        'updated_at': row['updated_at'],
    }


def _legacy_to_task(agent_id: str, index: int, entry: Dict[str, Any]) -> Dict[str, Any]:
    task = coerce_legacy_entry(entry)
    task.update({'agent_id': agent_id, 'index': index, 'created_at': None, 'updated_at': None})
    return task


_SELECT_COLUMNS = (
    "agent_id, task_index, description, status, progress, queued, subtasks, created_at, updated_at"
)


def _mirror_lock(key: str) -> threading.Lock:
    with _mirror_locks_guard:
        return _mirror_locks.setdefault(key, threading.Lock())


def _refresh_mirrors(workspace_root: str, db_path: str, agent_id: str) -> List[str]:
    """
    Regenerate both mirrors for an agent from the rows committed right now.

    Reading inside the per-agent lock means the last writer always leaves the
    newest rows in the mirrors. Deleted rows stay in so mirror positions match
    task indices.
    """
    with _mirror_lock(f"{db_path}:{agent_id}"):
        try:
            rows = _read_rows(
                db_path,
                f"SELECT {_SELECT_COLUMNS} FROM task_progress WHERE agent_id=? ORDER BY task_index",
                (agent_id,),
            )
        except StoreWriteFailure as e:
            warning = f"Mirrors not regenerated: {e}"
            logger.warning(f"[MIRROR] {agent_id}: {warning}")
            return [warning]
        return regenerate_mirrors(workspace_root, agent_id, [_row_to_task(row) for row in rows])


# ============================================================================
# WRITE PATHS
# ============================================================================

def replace_agent_tasks(*, workspace_root: str, agent_id: str, tasks: Any) -> Dict[str, Any]:
    """
    Replace an agent's whole task list.

    Deletes every existing row for the agent and inserts ``tasks`` with fresh
    indices 0..n-1 in a single transaction, then regenerates the mirrors.

    Returns:
        Dict with success, count and any mirror warnings

    Raises:
        InvalidRequest: If a descriptor is malformed (nothing is written)
        StoreWriteFailure: If the transaction fails (prior rows are kept)
    """
    validate_agent_id(agent_id)
    normalized = normalize_task_list(tasks)
    db_path = ensure_db(workspace_root)
    now = datetime.now().isoformat()

    with _write_transaction(db_path, f"Replace tasks for {agent_id}") as conn:
        conn.execute("DELETE FROM task_progress WHERE agent_id=?", (agent_id,))
        conn.executemany(
            """
            INSERT INTO task_progress (
                agent_id, task_index, description, status, progress, queued, subtasks,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    agent_id,
                    index,
                    task['description'],
                    task['status'],
                    task['progress'],
                    1 if task['queued'] else 0,
                    json.dumps(task['subtasks']),
                    now,
                    now,
                )
                for index, task in enumerate(normalized)
            ],
        )

    logger.info(f"[SQLITE] Replaced tasks for {agent_id} ({len(normalized)} item(s))")
    warnings = _refresh_mirrors(workspace_root, db_path, agent_id)
    return {"success": True, "agent_id": agent_id, "count": len(normalized), "warnings": warnings}


def patch_task(*, workspace_root: str, agent_id: str, index: int, fields: Any) -> Dict[str, Any]:
    """
    Update some fields of one task row; omitted fields keep their values.

    Returns:
        Dict with success, the updated task and any mirror warnings

    Raises:
        InvalidRequest: Unknown field or malformed value
        NotFound: No task at (agent_id, index); nothing is created
        StoreWriteFailure: The update could not be committed
    """
    validate_agent_id(agent_id)
    index = _validate_index(index)
    updates = normalize_patch_fields(fields)
    db_path = ensure_db(workspace_root)

    columns = []
    values: List[Any] = []
    for name, value in updates.items():
        columns.append(f"{name} = ?")
        if name == 'queued':
            values.append(1 if value else 0)
        elif name == 'subtasks':
            values.append(json.dumps(value))
        else:
            values.append(value)
    columns.append("updated_at = ?")
    values.append(datetime.now().isoformat())

    with _write_transaction(db_path, f"Patch task {agent_id}[{index}]") as conn:
        result = conn.execute(
            f"UPDATE task_progress SET {', '.join(columns)} WHERE agent_id=? AND task_index=?",
            (*values, agent_id, index),
        )
        if result.rowcount == 0:
            raise NotFound(f"Task {index} not found for agent '{agent_id}'")
        row = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM task_progress WHERE agent_id=? AND task_index=?",
            (agent_id, index),
        ).fetchone()

    task = _row_to_task(row)
    logger.info(f"[SQLITE] Patched {agent_id}[{index}]: {', '.join(updates)}")
    warnings = _refresh_mirrors(workspace_root, db_path, agent_id)
    return {"success": True, "task": task, "warnings": warnings}


def clear_all_tasks(*, workspace_root: str) -> Dict[str, Any]:
    """Delete every task row and empty the mirrors of the affected agents."""
    db_path = ensure_db(workspace_root)

    with _write_transaction(db_path, "Clear all tasks") as conn:
        agents = [row[0] for row in conn.execute("SELECT DISTINCT agent_id FROM task_progress").fetchall()]
        result = conn.execute("DELETE FROM task_progress")
        deleted = result.rowcount

    logger.warning(f"[SQLITE] Cleared {deleted} task(s) for {len(agents)} agent(s)")
    warnings: List[str] = []
    for agent_id in agents:
        warnings.extend(_refresh_mirrors(workspace_root, db_path, agent_id))
    return {"success": True, "deleted": deleted, "warnings": warnings}


# ============================================================================
# READ PATHS
# ============================================================================

def get_task(*, workspace_root: str, agent_id: str, index: int) -> Dict[str, Any]:
    validate_agent_id(agent_id)
    index = _validate_index(index)
    db_path = ensure_db(workspace_root)
    rows = _read_rows(
        db_path,
        f"SELECT {_SELECT_COLUMNS} FROM task_progress WHERE agent_id=? AND task_index=?",
        (agent_id, index),
    )
    if not rows:
        raise NotFound(f"Task {index} not found for agent '{agent_id}'")
    return _row_to_task(rows[0])


def list_tasks(*, workspace_root: str, agent_id: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
    """
    Tasks for one agent, ordered by index.

    An agent with no rows at all (a workspace that was never migrated) is
    served from its legacy mirror, read once and never written back.
    """
    validate_agent_id(agent_id)
    db_path = ensure_db(workspace_root)
    rows = _read_rows(
        db_path,
        f"SELECT {_SELECT_COLUMNS} FROM task_progress WHERE agent_id=? ORDER BY task_index",
        (agent_id,),
    )
    tasks = [_row_to_task(row) for row in rows]

    if not tasks:
        legacy = read_legacy_tasks(workspace_root, agent_id)
        if legacy:
            logger.info(f"No store rows for {agent_id}, serving {len(legacy)} task(s) from legacy mirror")
            tasks = [_legacy_to_task(agent_id, i, entry) for i, entry in enumerate(legacy)]

    if not include_deleted:
        tasks = [task for task in tasks if task['status'] != 'deleted']
    return tasks


def _legacy_agent_ids(workspace_root: str) -> List[str]:
    tasks_dir = get_tasks_dir(workspace_root)
    if not os.path.isdir(tasks_dir):
        return []
    suffix = '-tasks.json'
    return sorted(name[:-len(suffix)] for name in os.listdir(tasks_dir) if name.endswith(suffix))


def list_all_tasks(*, workspace_root: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
    """All tasks ordered by agent then index, with legacy-only agents folded in."""
    db_path = ensure_db(workspace_root)
    rows = _read_rows(db_path, f"SELECT {_SELECT_COLUMNS} FROM task_progress ORDER BY agent_id, task_index")
    tasks = [_row_to_task(row) for row in rows]

    known_agents = {task['agent_id'] for task in tasks}
    for agent_id in _legacy_agent_ids(workspace_root):
        if agent_id in known_agents:
            continue
        try:
            tasks.extend(list_tasks(workspace_root=workspace_root, agent_id=agent_id, include_deleted=True))
        except InvalidRequest:
            logger.debug(f"Skipping legacy mirror with unusable agent name: {agent_id}")
    tasks.sort(key=lambda task: (task['agent_id'], task['index']))

    if not include_deleted:
        tasks = [task for task in tasks if task['status'] != 'deleted']
    return tasks
