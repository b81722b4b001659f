"""Task completion gating.

A task may only be marked complete when every subtask is complete and every task
it depends on is complete. A project counts as complete when it has at least one
task and all of its tasks are complete.

All functions here are pure and work on the serialized task shape produced by
``taskgate.projects.serialize_task`` (plain dicts), so the same rules apply to
server-side rows and to client-side cached projects.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, NamedTuple, Optional


class DependencyRef(NamedTuple):
    """A dependency edge normalized at the boundary.

    ``resolved`` holds the inline copy of the dependency task when the edge
    arrived in expanded form, otherwise ``None``.
    """

    id: Optional[str]
    resolved: Optional[Dict[str, Any]] = None


def _key(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def normalize_tasks(raw: object) -> List[Dict[str, Any]]:
    """Coerce list-ish task payloads into a list.

    Accepts a list, ``None``, a dict keyed by numeric strings (array-like JSON
    objects) or a single task dict.
    """
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, tuple):
        return list(raw)
    if isinstance(raw, dict):
        keys = list(raw.keys())
        if keys and all(str(k).lstrip("-").isdigit() for k in keys):
            return [raw[k] for k in sorted(keys, key=lambda k: int(str(k)))]
    return [raw]


def normalize_dependency(raw: object) -> DependencyRef:
    if isinstance(raw, dict):
        inline = raw.get("dependencyTask")
        if isinstance(inline, dict):
            return DependencyRef(_key(inline.get("id") or raw.get("dependencyTaskId")), inline)
        if "dependencyTaskId" in raw:
            return DependencyRef(_key(raw.get("dependencyTaskId")))
        if "completed" in raw:
            return DependencyRef(_key(raw.get("id")), raw)
        return DependencyRef(_key(raw.get("id")))
    return DependencyRef(_key(raw))


def dependency_refs(task: Dict[str, Any]) -> List[DependencyRef]:
    raw = task.get("dependsOn")
    if raw is None:
        raw = task.get("dependencies")
    return [normalize_dependency(item) for item in normalize_tasks(raw)]


def find_task(task_id: object, all_tasks: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    wanted = _key(task_id)
    if wanted is None:
        return None
    for candidate in all_tasks:
        if _key(candidate.get("id")) == wanted:
            return candidate
    return None


def subtasks_complete(task: Dict[str, Any]) -> bool:
    subtasks = normalize_tasks(task.get("subtasks"))
    return all(bool(subtask.get("completed")) for subtask in subtasks)


def _dependency_done(ref: DependencyRef, all_tasks: List[Dict[str, Any]]) -> bool:
    # The project task list wins over an inline snapshot; the snapshot only
    # answers for tasks missing from the list.
    target = find_task(ref.id, all_tasks)
    if target is not None:
        return bool(target.get("completed"))
    if ref.resolved is not None:
        return bool(ref.resolved.get("completed"))
    return False


def dependencies_complete(task: Dict[str, Any], all_tasks: object) -> bool:
    tasks = normalize_tasks(all_tasks)
    return all(_dependency_done(ref, tasks) for ref in dependency_refs(task))


def can_complete(task: Dict[str, Any], all_tasks: object) -> bool:
    return subtasks_complete(task) and dependencies_complete(task, all_tasks)


def can_complete_by_id(task_id: object, all_tasks: object) -> bool:
    tasks = normalize_tasks(all_tasks)
    task = find_task(task_id, tasks)
    if task is None:
        return False
    return can_complete(task, tasks)


def blocking_reasons(task: Dict[str, Any], all_tasks: object) -> List[str]:
    """Explain why ``task`` cannot be completed; empty when it can."""
    tasks = normalize_tasks(all_tasks)
    reasons: List[str] = []
    if not subtasks_complete(task):
        reasons.append("All subtasks must be completed first.")
    pending = []
    for ref in dependency_refs(task):
        if _dependency_done(ref, tasks):
            continue
        target = find_task(ref.id, tasks) or ref.resolved or {}
        pending.append(str(target.get("text") or f"task {ref.id}"))
    if pending:
        reasons.append("Waiting on dependencies: " + ", ".join(pending) + ".")
    return reasons


def project_completed(tasks: object) -> bool:
    items = normalize_tasks(tasks)
    return len(items) > 0 and all(bool(t.get("completed")) for t in items)
