"""Projects, tasks, subtasks and project membership.

Every function takes an open connection and the acting user id. Failures raise
``werkzeug.exceptions`` HTTP errors before any write is issued; the caller owns
the transaction (commit on success, rollback on error), so a task write and
the project completion recompute always land together.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

from werkzeug.exceptions import BadRequest, Conflict, Forbidden, NotFound

from . import gating
from .utils import DB_INT_MAX, DB_INT_MIN, iso, to_int, valid_email

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_DESCRIPTION = "New project"
MAX_TEXT_LENGTH = 500


class TaskBlocked(Conflict):
    """Raised when a completed task would end up with its gate closed."""

    def __init__(self, reasons: Sequence[str], lead: str = "Cannot mark task as complete."):
        self.reasons = list(reasons)
        super().__init__(lead + " " + " ".join(self.reasons))


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def require_text(payload: Dict[str, Any], key: str, label: Optional[str] = None) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f"{label or key} is required")
    return value.strip()[:MAX_TEXT_LENGTH]


def optional_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if not isinstance(value, str):
        raise BadRequest(f"{key} must be a string")
    return value.strip()


def optional_bool(payload: Dict[str, Any], key: str) -> Optional[bool]:
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if not isinstance(value, bool):
        raise BadRequest(f"{key} must be a boolean")
    return value


def optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequest(f"{key} must be an integer")
    if not DB_INT_MIN <= value <= DB_INT_MAX:
        raise BadRequest(f"{key} is out of range")
    return value


def optional_id_list(payload: Dict[str, Any], key: str) -> Optional[List[int]]:
    if key not in payload or payload[key] is None:
        return None
    raw = payload[key]
    if not isinstance(raw, list):
        raise BadRequest(f"{key} must be an array")
    ids: List[int] = []
    for item in raw:
        parsed = to_int(item)
        if parsed is None:
            raise BadRequest(f"{key} must contain ids")
        if parsed not in ids:
            ids.append(parsed)
    return ids


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_user(row: Any) -> Dict[str, object]:
    return {"id": int(row["id"]), "name": row["name"], "email": row["email"], "avatar": row["avatar"]}


def serialize_person(row: Any) -> Dict[str, object]:
    return {
        "id": int(row["id"]),
        "name": row["name"],
        "email": row["email"],
        "avatar": row["avatar"],
        "userId": to_int(row["user_id"]),
    }


def serialize_subtask(row: Any) -> Dict[str, object]:
    return {
        "id": int(row["id"]),
        "text": row["text"],
        "completed": bool(row["completed"]),
        "order": int(row["sort_order"] or 0),
        "taskId": int(row["task_id"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def load_project_tasks(conn: sqlite3.Connection, project_id: int) -> List[Dict[str, Any]]:
    """Load every task of a project with subtasks, dependency edges and assignees.

    Each task also carries ``canComplete`` so clients can mirror the gate
    without re-deriving it.
    """
    task_rows = conn.execute(
        "SELECT * FROM tasks WHERE project_id = ? ORDER BY sort_order, id",
        (project_id,),
    ).fetchall()
    tasks: List[Dict[str, Any]] = []
    by_id: Dict[int, Dict[str, Any]] = {}
    for row in task_rows:
        task = {
            "id": int(row["id"]),
            "text": row["text"],
            "completed": bool(row["completed"]),
            "order": int(row["sort_order"] or 0),
            "projectId": int(row["project_id"]),
            "subtasks": [],
            "dependsOn": [],
            "dependencies": [],
            "assignees": [],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }
        tasks.append(task)
        by_id[task["id"]] = task
    if not tasks:
        return tasks

    for row in conn.execute(
        """
        SELECT s.*
        FROM subtasks s
        JOIN tasks t ON t.id = s.task_id
        WHERE t.project_id = ?
        ORDER BY s.sort_order, s.id
        """,
        (project_id,),
    ).fetchall():
        by_id[int(row["task_id"])]["subtasks"].append(serialize_subtask(row))

    for row in conn.execute(
        """
        SELECT d.id, d.dependent_task_id, d.dependency_task_id, dep.text AS dep_text, dep.completed AS dep_completed
        FROM task_dependencies d
        JOIN tasks t ON t.id = d.dependent_task_id
        JOIN tasks dep ON dep.id = d.dependency_task_id
        WHERE t.project_id = ?
        ORDER BY d.id
        """,
        (project_id,),
    ).fetchall():
        dependency_id = int(row["dependency_task_id"])
        owner = by_id[int(row["dependent_task_id"])]
        owner["dependsOn"].append(
            {
                "id": int(row["id"]),
                "dependencyTaskId": dependency_id,
                "dependencyTask": {"id": dependency_id, "text": row["dep_text"], "completed": bool(row["dep_completed"])},
            }
        )
        owner["dependencies"].append(dependency_id)

    for row in conn.execute(
        """
        SELECT a.task_id, u.id, u.name, u.email, u.avatar
        FROM task_assignees a
        JOIN tasks t ON t.id = a.task_id
        JOIN users u ON u.id = a.user_id
        WHERE t.project_id = ?
        ORDER BY a.id
        """,
        (project_id,),
    ).fetchall():
        by_id[int(row["task_id"])]["assignees"].append(serialize_user(row))

    for task in tasks:
        task["canComplete"] = gating.can_complete(task, tasks)
    return tasks


def load_project_people(conn: sqlite3.Connection, project_id: int) -> List[Dict[str, object]]:
    rows = conn.execute(
        """
        SELECT p.*
        FROM project_people pp
        JOIN people p ON p.id = pp.person_id
        WHERE pp.project_id = ?
        ORDER BY pp.id
        """,
        (project_id,),
    ).fetchall()
    return [serialize_person(row) for row in rows]


def serialize_project(conn: sqlite3.Connection, row: Any) -> Dict[str, object]:
    project_id = int(row["id"])
    creator = conn.execute("SELECT id, name, email, avatar FROM users WHERE id = ?", (row["creator_id"],)).fetchone()
    return {
        "id": project_id,
        "name": row["name"],
        "description": row["description"] or "",
        "completed": bool(row["completed"]),
        "creatorId": int(row["creator_id"]),
        "creator": serialize_user(creator) if creator else None,
        "tasks": load_project_tasks(conn, project_id),
        "people": load_project_people(conn, project_id),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def project_summary(conn: sqlite3.Connection, project_id: int) -> Dict[str, object]:
    row = conn.execute("SELECT id, completed FROM projects WHERE id = ?", (project_id,)).fetchone()
    return {"id": int(row["id"]), "completed": bool(row["completed"])}


def serialize_task(conn: sqlite3.Connection, project_id: int, task_id: int) -> Dict[str, object]:
    task = gating.find_task(task_id, load_project_tasks(conn, project_id))
    if task is None:
        raise NotFound(f"Task with ID {task_id} not found")
    task["project"] = project_summary(conn, project_id)
    return task


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def fetch_project(conn: sqlite3.Connection, project_id: object) -> Any:
    pid = to_int(project_id)
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (pid,)).fetchone() if pid is not None else None
    if not row:
        raise NotFound(f"Project with ID {project_id} not found")
    return row


def require_owner(project: Any, user_id: int, action: str) -> None:
    if int(project["creator_id"]) != int(user_id):
        logger.warning("User %s denied: %s (project %s)", user_id, action, project["id"])
        raise Forbidden(f"You are not authorized to {action}")


def is_member(conn: sqlite3.Connection, project_id: int, user_id: int) -> bool:
    row = conn.execute(
        """
        SELECT 1
        FROM project_people pp
        JOIN people p ON p.id = pp.person_id
        WHERE pp.project_id = ? AND p.user_id = ?
        LIMIT 1
        """,
        (project_id, user_id),
    ).fetchone()
    return row is not None


def require_reader(conn: sqlite3.Connection, project: Any, user_id: int) -> None:
    if int(project["creator_id"]) == int(user_id):
        return
    if not is_member(conn, int(project["id"]), user_id):
        raise Forbidden("You are not authorized to view this project")


def fetch_task(conn: sqlite3.Connection, task_id: object) -> Any:
    tid = to_int(task_id)
    row = None
    if tid is not None:
        row = conn.execute(
            """
            SELECT t.*, p.creator_id
            FROM tasks t
            JOIN projects p ON p.id = t.project_id
            WHERE t.id = ?
            """,
            (tid,),
        ).fetchone()
    if not row:
        raise NotFound(f"Task with ID {task_id} not found")
    return row


def fetch_subtask(conn: sqlite3.Connection, subtask_id: object) -> Any:
    sid = to_int(subtask_id)
    row = None
    if sid is not None:
        row = conn.execute(
            """
            SELECT s.*, t.project_id, t.completed AS task_completed, p.creator_id
            FROM subtasks s
            JOIN tasks t ON t.id = s.task_id
            JOIN projects p ON p.id = t.project_id
            WHERE s.id = ?
            """,
            (sid,),
        ).fetchone()
    if not row:
        raise NotFound(f"Subtask with ID {subtask_id} not found")
    return row


def _owner_row(row: Any) -> Dict[str, object]:
    # Task/subtask rows carry the project id and creator needed by require_owner.
    return {"id": row["project_id"], "creator_id": row["creator_id"]}


# ---------------------------------------------------------------------------
# Derived completion
# ---------------------------------------------------------------------------


def recompute_project_completion(conn: sqlite3.Connection, project_id: int) -> bool:
    rows = conn.execute("SELECT completed FROM tasks WHERE project_id = ?", (project_id,)).fetchall()
    completed = gating.project_completed([{"completed": bool(r["completed"])} for r in rows])
    conn.execute(
        "UPDATE projects SET completed = ?, updated_at = ? WHERE id = ?",
        (1 if completed else 0, iso(), project_id),
    )
    return completed


def _force_task_incomplete(conn: sqlite3.Connection, task_id: int) -> None:
    conn.execute("UPDATE tasks SET completed = 0, updated_at = ? WHERE id = ?", (iso(), task_id))


# ---------------------------------------------------------------------------
# Users and people
# ---------------------------------------------------------------------------


def list_users(conn: sqlite3.Connection, query: str = "", limit: int = 50) -> List[Dict[str, object]]:
    needle = (query or "").strip().lower()
    if needle:
        rows = conn.execute(
            """
            SELECT id, name, email, avatar
            FROM users
            WHERE is_active = 1 AND (LOWER(name) LIKE ? OR LOWER(email) LIKE ?)
            ORDER BY name, id
            LIMIT ?
            """,
            (f"%{needle}%", f"%{needle}%", limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT id, name, email, avatar FROM users WHERE is_active = 1 ORDER BY name, id LIMIT ?",
            (limit,),
        ).fetchall()
    return [serialize_user(row) for row in rows]


def person_for_user(conn: sqlite3.Connection, user: Any) -> Any:
    """Return the Person profile of a registered user, creating it on first use."""
    person = conn.execute("SELECT * FROM people WHERE user_id = ?", (user["id"],)).fetchone()
    if person:
        return person
    person = conn.execute("SELECT * FROM people WHERE LOWER(email) = LOWER(?)", (user["email"],)).fetchone()
    if person:
        conn.execute("UPDATE people SET user_id = ? WHERE id = ?", (user["id"], person["id"]))
        return conn.execute("SELECT * FROM people WHERE id = ?", (person["id"],)).fetchone()
    name = (user["name"] or "").strip() or str(user["email"]).split("@")[0]
    cursor = conn.execute(
        "INSERT INTO people (name, email, avatar, user_id, created_at) VALUES (?, ?, ?, ?, ?)",
        (name, user["email"], user["avatar"], user["id"], iso()),
    )
    logger.info("Person profile %s created for user %s", cursor.lastrowid, user["id"])
    return conn.execute("SELECT * FROM people WHERE id = ?", (cursor.lastrowid,)).fetchone()


def resolve_person(
    conn: sqlite3.Connection,
    email: Optional[str] = None,
    name: Optional[str] = None,
    person_id: object = None,
) -> Any:
    """Resolve an email, person id or display name to a registered user's Person.

    Business rule:
    - Lookup order is email, then person id, then exact user name.
    - Free-text contacts are never created; only registered users become People.
    """
    email = email.strip() if isinstance(email, str) else ""
    name = name.strip() if isinstance(name, str) else ""
    if not email and "@" in name:
        email, name = name, ""

    if email:
        if not valid_email(email):
            raise BadRequest("email must be a valid email address")
        person = conn.execute(
            "SELECT * FROM people WHERE LOWER(email) = LOWER(?) AND user_id IS NOT NULL",
            (email,),
        ).fetchone()
        if person:
            return person
        user = conn.execute(
            "SELECT * FROM users WHERE LOWER(email) = LOWER(?) AND is_active = 1",
            (email,),
        ).fetchone()
        if not user:
            raise NotFound(f"User with email {email} not found. Only registered users can be added to projects.")
        return person_for_user(conn, user)

    pid = to_int(person_id)
    if pid is not None:
        person = conn.execute("SELECT * FROM people WHERE id = ? AND user_id IS NOT NULL", (pid,)).fetchone()
        if person:
            return person
        raise NotFound(f"Person with ID {person_id} not found")

    if not name:
        raise BadRequest("email, personId or name is required")
    users = conn.execute(
        "SELECT * FROM users WHERE LOWER(name) = LOWER(?) AND is_active = 1 ORDER BY id",
        (name,),
    ).fetchall()
    if not users:
        raise NotFound(f"User named {name} not found. Only registered users can be added to projects.")
    if len(users) > 1:
        raise Conflict(f"More than one user is named {name}; add them by email instead.")
    return person_for_user(conn, users[0])


def _person_fields(entry: object) -> Dict[str, Any]:
    if isinstance(entry, str):
        return {"email": entry} if "@" in entry else {"name": entry}
    if isinstance(entry, dict):
        return {"email": entry.get("email"), "name": entry.get("name"), "person_id": entry.get("personId")}
    raise BadRequest("people entries must be strings or objects")


def add_person(conn: sqlite3.Connection, user_id: int, project_id: object, payload: Dict[str, Any]) -> Dict[str, object]:
    project = fetch_project(conn, project_id)
    require_owner(project, user_id, "add people to this project")
    person = resolve_person(conn, **_person_fields(payload))
    exists = conn.execute(
        "SELECT id FROM project_people WHERE project_id = ? AND person_id = ?",
        (project["id"], person["id"]),
    ).fetchone()
    if exists:
        raise Conflict(f"{person['name']} is already part of this project")
    conn.execute(
        "INSERT INTO project_people (project_id, person_id, created_at) VALUES (?, ?, ?)",
        (project["id"], person["id"], iso()),
    )
    return get_project(conn, user_id, project["id"])


def remove_person(conn: sqlite3.Connection, user_id: int, project_id: object, person_id: object) -> Dict[str, object]:
    project = fetch_project(conn, project_id)
    require_owner(project, user_id, "remove people from this project")
    cursor = conn.execute(
        "DELETE FROM project_people WHERE project_id = ? AND person_id = ?",
        (project["id"], to_int(person_id)),
    )
    if cursor.rowcount <= 0:
        raise NotFound("Person not found in this project")
    return get_project(conn, user_id, project["id"])


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def list_projects(conn: sqlite3.Connection, user_id: int) -> List[Dict[str, object]]:
    rows = conn.execute(
        """
        SELECT *
        FROM projects
        WHERE creator_id = ?
           OR id IN (
               SELECT pp.project_id
               FROM project_people pp
               JOIN people p ON p.id = pp.person_id
               WHERE p.user_id = ?
           )
        ORDER BY created_at DESC, id DESC
        """,
        (user_id, user_id),
    ).fetchall()
    return [serialize_project(conn, row) for row in rows]


def get_project(conn: sqlite3.Connection, user_id: int, project_id: object) -> Dict[str, object]:
    project = fetch_project(conn, project_id)
    require_reader(conn, project, user_id)
    return serialize_project(conn, project)


def _insert_task(conn: sqlite3.Connection, project_id: int, text: str, order: int, completed: bool = False) -> int:
    now = iso()
    cursor = conn.execute(
        "INSERT INTO tasks (project_id, text, completed, sort_order, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (project_id, text, 1 if completed else 0, order, now, now),
    )
    return int(cursor.lastrowid)


def _insert_subtask(conn: sqlite3.Connection, task_id: int, text: str, order: int, completed: bool = False) -> int:
    now = iso()
    cursor = conn.execute(
        "INSERT INTO subtasks (task_id, text, completed, sort_order, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (task_id, text, 1 if completed else 0, order, now, now),
    )
    return int(cursor.lastrowid)


def _set_dependencies(conn: sqlite3.Connection, task_id: int, dependency_ids: Iterable[int]) -> None:
    conn.execute("DELETE FROM task_dependencies WHERE dependent_task_id = ?", (task_id,))
    for dependency_id in dependency_ids:
        conn.execute(
            "INSERT INTO task_dependencies (dependent_task_id, dependency_task_id, created_at) VALUES (?, ?, ?)",
            (task_id, dependency_id, iso()),
        )


def _set_assignees(conn: sqlite3.Connection, task_id: int, user_ids: Iterable[int]) -> None:
    conn.execute("DELETE FROM task_assignees WHERE task_id = ?", (task_id,))
    for assignee_id in user_ids:
        conn.execute(
            "INSERT INTO task_assignees (task_id, user_id, created_at) VALUES (?, ?, ?)",
            (task_id, assignee_id, iso()),
        )


def _inline_tasks(raw_tasks: object) -> List[Dict[str, Any]]:
    inline: List[Dict[str, Any]] = []
    for entry in gating.normalize_tasks(raw_tasks):
        if isinstance(entry, str):
            entry = {"text": entry}
        if not isinstance(entry, dict):
            raise BadRequest("tasks entries must be strings or objects")
        subtasks = []
        for sub in gating.normalize_tasks(entry.get("subtasks")):
            sub_payload = {"text": sub} if isinstance(sub, str) else sub
            if not isinstance(sub_payload, dict):
                raise BadRequest("subtasks entries must be strings or objects")
            subtasks.append(require_text(sub_payload, "text", "subtask text"))
        deps = entry.get("dependencies") or []
        if not isinstance(deps, list):
            raise BadRequest("dependencies must be an array")
        inline.append({"text": require_text(entry, "text", "task text"), "subtasks": subtasks, "dependencies": deps})
    return inline


def _resolve_inline_dependency(ref: object, inline: List[Dict[str, Any]], position: int) -> int:
    """Map an inline dependency (list index or task text) to a payload position."""
    if isinstance(ref, int) and not isinstance(ref, bool):
        if 0 <= ref < len(inline):
            return ref
    elif isinstance(ref, str):
        for idx, item in enumerate(inline):
            if item["text"].lower() == ref.strip().lower():
                return idx
    raise BadRequest(f"Unknown dependency {ref!r} for task {inline[position]['text']!r}")


def create_project(conn: sqlite3.Connection, user_id: int, payload: Dict[str, Any]) -> Dict[str, object]:
    name = require_text(payload, "name")
    description = optional_text(payload, "description") or DEFAULT_PROJECT_DESCRIPTION
    inline = _inline_tasks(payload.get("tasks"))
    raw_people = payload.get("people") or []
    if not isinstance(raw_people, list):
        raise BadRequest("people must be an array")
    dependency_positions = [
        [_resolve_inline_dependency(ref, inline, idx) for ref in item["dependencies"]] for idx, item in enumerate(inline)
    ]
    # Resolve people before the first write so an unknown user rejects the whole call.
    people = [resolve_person(conn, **_person_fields(entry)) for entry in raw_people]

    now = iso()
    cursor = conn.execute(
        "INSERT INTO projects (name, description, completed, creator_id, created_at, updated_at) VALUES (?, ?, 0, ?, ?, ?)",
        (name, description, user_id, now, now),
    )
    project_id = int(cursor.lastrowid)

    task_ids = []
    for idx, item in enumerate(inline):
        task_id = _insert_task(conn, project_id, item["text"], idx)
        for sub_idx, sub_text in enumerate(item["subtasks"]):
            _insert_subtask(conn, task_id, sub_text, sub_idx)
        task_ids.append(task_id)
    for idx, positions in enumerate(dependency_positions):
        if positions:
            _set_dependencies(conn, task_ids[idx], [task_ids[pos] for pos in dict.fromkeys(positions)])

    seen = set()
    for person in people:
        if int(person["id"]) in seen:
            continue
        seen.add(int(person["id"]))
        conn.execute(
            "INSERT INTO project_people (project_id, person_id, created_at) VALUES (?, ?, ?)",
            (project_id, person["id"], now),
        )

    recompute_project_completion(conn, project_id)
    logger.info("Project %s created by user %s with %d tasks", project_id, user_id, len(task_ids))
    return get_project(conn, user_id, project_id)


def update_project(conn: sqlite3.Connection, user_id: int, project_id: object, payload: Dict[str, Any]) -> Dict[str, object]:
    project = fetch_project(conn, project_id)
    require_owner(project, user_id, "update this project")

    name = project["name"]
    if "name" in payload:
        name = require_text(payload, "name")
    description = optional_text(payload, "description")
    if description is None:
        description = project["description"]
    requested_completed = optional_bool(payload, "completed")
    if requested_completed is not None and requested_completed != bool(project["completed"]):
        raise BadRequest("completed is derived from task state and cannot be set directly")

    conn.execute(
        "UPDATE projects SET name = ?, description = ?, updated_at = ? WHERE id = ?",
        (name, description, iso(), project["id"]),
    )
    return get_project(conn, user_id, project["id"])


def delete_project(conn: sqlite3.Connection, user_id: int, project_id: object) -> Dict[str, object]:
    project = fetch_project(conn, project_id)
    require_owner(project, user_id, "delete this project")
    conn.execute("DELETE FROM projects WHERE id = ?", (project["id"],))
    logger.info("Project %s deleted by user %s", project["id"], user_id)
    return {"message": "Project deleted successfully", "id": int(project["id"])}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _validated_dependencies(conn: sqlite3.Connection, project_id: int, dependency_ids: List[int]) -> List[int]:
    for dependency_id in dependency_ids:
        row = conn.execute("SELECT project_id FROM tasks WHERE id = ?", (dependency_id,)).fetchone()
        if not row:
            raise NotFound(f"Task with ID {dependency_id} not found")
        if int(row["project_id"]) != int(project_id):
            raise BadRequest(f"Task {dependency_id} belongs to another project")
    return dependency_ids


def _validated_assignees(conn: sqlite3.Connection, user_ids: List[int]) -> List[int]:
    for assignee_id in user_ids:
        if not conn.execute("SELECT id FROM users WHERE id = ? AND is_active = 1", (assignee_id,)).fetchone():
            raise NotFound(f"User with ID {assignee_id} not found")
    return user_ids


def _check_gate(prospective: Dict[str, Any], project_tasks: List[Dict[str, Any]], lead: Optional[str] = None) -> None:
    reasons = gating.blocking_reasons(prospective, project_tasks)
    if reasons:
        logger.info("Completion of task %s rejected: %s", prospective.get("id"), " ".join(reasons))
        raise TaskBlocked(reasons, lead) if lead else TaskBlocked(reasons)


def create_task(conn: sqlite3.Connection, user_id: int, payload: Dict[str, Any]) -> Dict[str, object]:
    if payload.get("projectId") in (None, ""):
        raise BadRequest("projectId is required")
    project = fetch_project(conn, payload.get("projectId"))
    require_owner(project, user_id, "add tasks to this project")
    project_id = int(project["id"])

    text = require_text(payload, "text")
    completed = bool(optional_bool(payload, "completed"))
    order = optional_int(payload, "order")
    dependency_ids = _validated_dependencies(conn, project_id, optional_id_list(payload, "dependencyTaskIds") or [])
    assignee_ids = _validated_assignees(conn, optional_id_list(payload, "assigneeIds") or [])

    if completed:
        _check_gate({"id": None, "subtasks": [], "dependsOn": dependency_ids}, load_project_tasks(conn, project_id))

    if order is None:
        row = conn.execute("SELECT COUNT(*) AS c FROM tasks WHERE project_id = ?", (project_id,)).fetchone()
        order = int(row["c"])
    task_id = _insert_task(conn, project_id, text, order, completed)
    _set_dependencies(conn, task_id, dependency_ids)
    _set_assignees(conn, task_id, assignee_ids)
    recompute_project_completion(conn, project_id)
    return serialize_task(conn, project_id, task_id)


def update_task(conn: sqlite3.Connection, user_id: int, task_id: object, payload: Dict[str, Any]) -> Dict[str, object]:
    row = fetch_task(conn, task_id)
    require_owner(_owner_row(row), user_id, "update this task")
    project_id = int(row["project_id"])
    tid = int(row["id"])

    text = row["text"]
    if "text" in payload:
        text = require_text(payload, "text")
    requested = optional_bool(payload, "completed")
    order = optional_int(payload, "order")
    dependency_ids = optional_id_list(payload, "dependencyTaskIds")
    if dependency_ids is not None:
        dependency_ids = _validated_dependencies(conn, project_id, dependency_ids)
    assignee_ids = optional_id_list(payload, "assigneeIds")
    if assignee_ids is not None:
        assignee_ids = _validated_assignees(conn, assignee_ids)

    completed = bool(row["completed"]) if requested is None else requested
    if completed and (requested is True or dependency_ids is not None):
        project_tasks = load_project_tasks(conn, project_id)
        prospective = dict(gating.find_task(tid, project_tasks) or {"id": tid})
        if dependency_ids is not None:
            prospective["dependsOn"] = list(dependency_ids)
        lead = None
        if requested is not True:
            lead = "Cannot change dependencies of a completed task: the new dependencies would reopen its gate."
        _check_gate(prospective, project_tasks, lead)

    conn.execute(
        "UPDATE tasks SET text = ?, completed = ?, sort_order = ?, updated_at = ? WHERE id = ?",
        (text, 1 if completed else 0, row["sort_order"] if order is None else order, iso(), tid),
    )
    if dependency_ids is not None:
        _set_dependencies(conn, tid, dependency_ids)
    if assignee_ids is not None:
        _set_assignees(conn, tid, assignee_ids)
    recompute_project_completion(conn, project_id)
    return serialize_task(conn, project_id, tid)


def delete_task(conn: sqlite3.Connection, user_id: int, task_id: object) -> Dict[str, object]:
    row = fetch_task(conn, task_id)
    require_owner(_owner_row(row), user_id, "delete this task")
    project_id = int(row["project_id"])
    conn.execute("DELETE FROM tasks WHERE id = ?", (row["id"],))
    recompute_project_completion(conn, project_id)
    return {"message": "Task deleted successfully", "id": int(row["id"]), "project": project_summary(conn, project_id)}


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------


def _subtask_response(conn: sqlite3.Connection, project_id: int, subtask_id: int) -> Dict[str, object]:
    subtask = serialize_subtask(conn.execute("SELECT * FROM subtasks WHERE id = ?", (subtask_id,)).fetchone())
    subtask["task"] = serialize_task(conn, project_id, int(subtask["taskId"]))
    return subtask


def add_subtask(conn: sqlite3.Connection, user_id: int, task_id: object, payload: Dict[str, Any]) -> Dict[str, object]:
    row = fetch_task(conn, task_id)
    require_owner(_owner_row(row), user_id, "add subtasks to this task")
    text = require_text(payload, "text")
    completed = bool(optional_bool(payload, "completed"))
    order = optional_int(payload, "order")
    if order is None:
        count = conn.execute("SELECT COUNT(*) AS c FROM subtasks WHERE task_id = ?", (row["id"],)).fetchone()
        order = int(count["c"])

    subtask_id = _insert_subtask(conn, int(row["id"]), text, order, completed)
    if not completed and bool(row["completed"]):
        _force_task_incomplete(conn, int(row["id"]))
    recompute_project_completion(conn, int(row["project_id"]))
    return _subtask_response(conn, int(row["project_id"]), subtask_id)


def update_subtask(conn: sqlite3.Connection, user_id: int, subtask_id: object, payload: Dict[str, Any]) -> Dict[str, object]:
    row = fetch_subtask(conn, subtask_id)
    require_owner(_owner_row(row), user_id, "update this subtask")
    text = row["text"]
    if "text" in payload:
        text = require_text(payload, "text")
    requested = optional_bool(payload, "completed")
    completed = bool(row["completed"]) if requested is None else requested
    order = optional_int(payload, "order")

    conn.execute(
        "UPDATE subtasks SET text = ?, completed = ?, sort_order = ?, updated_at = ? WHERE id = ?",
        (text, 1 if completed else 0, row["sort_order"] if order is None else order, iso(), row["id"]),
    )
    # An unchecked subtask reopens its parent task.
    if bool(row["completed"]) and not completed and bool(row["task_completed"]):
        _force_task_incomplete(conn, int(row["task_id"]))
    recompute_project_completion(conn, int(row["project_id"]))
    return _subtask_response(conn, int(row["project_id"]), int(row["id"]))


def delete_subtask(conn: sqlite3.Connection, user_id: int, subtask_id: object) -> Dict[str, object]:
    row = fetch_subtask(conn, subtask_id)
    require_owner(_owner_row(row), user_id, "delete this subtask")
    conn.execute("DELETE FROM subtasks WHERE id = ?", (row["id"],))
    return {
        "message": "Subtask deleted successfully",
        "id": int(row["id"]),
        "task": serialize_task(conn, int(row["project_id"]), int(row["task_id"])),
    }
