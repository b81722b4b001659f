"""API client and dashboard state for TaskGate front ends.

``ApiClient`` wraps every endpoint and never raises on HTTP or network
failures; it returns an ``ApiResult`` whose ``error`` carries the server's
message verbatim. ``DashboardState`` holds the UI state of a dashboard
(modals, form inputs, selection, loading flags) and reconciles by replacing
local entities with the copies the server returns.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple
from urllib import error as urlerror
from urllib import request as urlrequest
from urllib.parse import urlencode

from . import gating

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, Dict[str, str], Optional[bytes]], Tuple[int, bytes]]


class ApiResult(NamedTuple):
    success: bool
    data: Any = None
    error: str = ""


def urllib_transport(method: str, url: str, headers: Dict[str, str], body: Optional[bytes]) -> Tuple[int, bytes]:
    req = urlrequest.Request(url, data=body, method=method)
    for name, value in headers.items():
        req.add_header(name, value)
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            return resp.status, resp.read()
    except urlerror.HTTPError as exc:
        return exc.code, exc.read()


class ApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None, transport: Optional[Transport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transport = transport or urllib_transport

    def _call(self, method: str, endpoint: str, payload: Optional[Dict[str, object]] = None) -> ApiResult:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        try:
            status, raw = self.transport(method, f"{self.base_url}{endpoint}", headers, body)
        except (urlerror.URLError, OSError) as exc:
            logger.warning("%s %s failed: %s", method, endpoint, exc)
            return ApiResult(False, error=str(getattr(exc, "reason", "") or exc) or "Network error")

        try:
            data = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, ValueError):
            data = {}
        if status >= 400:
            message = ""
            if isinstance(data, dict):
                message = str(data.get("message") or data.get("error") or "")
            return ApiResult(False, error=message or "An error occurred")
        return ApiResult(True, data)

    # auth
    def login(self, email: str, password: str) -> ApiResult:
        result = self._call("POST", "/auth", {"email": email, "password": password})
        if result.success:
            self.token = result.data.get("token")
        return result

    def signup(self, name: str, email: str, password: str) -> ApiResult:
        result = self._call("POST", "/auth", {"name": name, "email": email, "password": password, "isSignup": True})
        if result.success:
            self.token = result.data.get("token")
        return result

    def verify(self) -> ApiResult:
        return self._call("POST", "/auth", {"isVerify": True})

    def logout(self) -> ApiResult:
        result = self._call("POST", "/auth/logout")
        self.token = None
        return result

    # projects
    def list_projects(self) -> ApiResult:
        return self._call("GET", "/projects")

    def get_project(self, project_id: object) -> ApiResult:
        return self._call("GET", f"/projects/{project_id}")

    def create_project(self, payload: Dict[str, object]) -> ApiResult:
        return self._call("POST", "/projects", payload)

    def update_project(self, project_id: object, updates: Dict[str, object]) -> ApiResult:
        return self._call("PATCH", f"/projects/{project_id}", updates)

    def delete_project(self, project_id: object) -> ApiResult:
        return self._call("DELETE", f"/projects/{project_id}")

    def add_person(self, project_id: object, payload: Dict[str, object]) -> ApiResult:
        return self._call("POST", f"/projects/{project_id}/people", payload)

    def remove_person(self, project_id: object, person_id: object) -> ApiResult:
        return self._call("DELETE", f"/projects/{project_id}/people/{person_id}")

    # tasks
    def add_task(self, payload: Dict[str, object]) -> ApiResult:
        return self._call("POST", "/tasks", payload)

    def update_task(self, task_id: object, updates: Dict[str, object]) -> ApiResult:
        return self._call("PATCH", f"/tasks/{task_id}", updates)

    def delete_task(self, task_id: object) -> ApiResult:
        return self._call("DELETE", f"/tasks/{task_id}")

    def add_subtask(self, task_id: object, payload: Dict[str, object]) -> ApiResult:
        return self._call("POST", f"/tasks/{task_id}/subtasks", payload)

    def update_subtask(self, subtask_id: object, updates: Dict[str, object]) -> ApiResult:
        return self._call("PATCH", f"/tasks/subtasks/{subtask_id}", updates)

    def delete_subtask(self, subtask_id: object) -> ApiResult:
        return self._call("DELETE", f"/tasks/subtasks/{subtask_id}")

    def search_users(self, query: str = "") -> ApiResult:
        suffix = f"?{urlencode({'q': query})}" if query else ""
        return self._call("GET", f"/users{suffix}")


def _lines(raw: str, sep: str = "\n") -> List[str]:
    return [item.strip() for item in (raw or "").split(sep) if item.strip()]


class DashboardState:
    """UI state for the project dashboard.

    Actions return True on success. On failure they store the server message
    in ``error`` and leave projects, selection and inputs untouched.
    """

    def __init__(self, api: ApiClient):
        self.api = api
        self.user: Optional[Dict[str, Any]] = None
        self.projects: List[Dict[str, Any]] = []
        self.selected_id: Optional[int] = None
        self.details_open = False
        self.create_open = False

        self.new_name = ""
        self.new_description = ""
        self.new_tasks = ""
        self.new_people = ""

        self.task_input = ""
        self.person_input = ""
        self.subtask_input = ""
        self.selected_task_id: Optional[int] = None
        self.dependency_task_id: Optional[int] = None
        self.search_query = ""

        self.error = ""
        self.loading = False
        self.loading_task_id: Optional[int] = None
        self.loading_subtask_id: Optional[object] = None

    # derived views
    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def selected(self) -> Optional[Dict[str, Any]]:
        return self.project(self.selected_id)

    @property
    def visible_projects(self) -> List[Dict[str, Any]]:
        needle = self.search_query.strip().lower()
        if not needle:
            return list(self.projects)
        return [
            p
            for p in self.projects
            if needle in str(p.get("name", "")).lower() or needle in str(p.get("description", "")).lower()
        ]

    def project(self, project_id: object) -> Optional[Dict[str, Any]]:
        for project in self.projects:
            if project_id is not None and str(project.get("id")) == str(project_id):
                return project
        return None

    def task(self, task_id: object) -> Optional[Dict[str, Any]]:
        for project in self.projects:
            found = gating.find_task(task_id, project.get("tasks") or [])
            if found is not None:
                return found
        return None

    def task_toggle_enabled(self, task_id: object) -> bool:
        task = self.task(task_id)
        if task is None:
            return False
        return bool(task.get("completed")) or bool(task.get("canComplete"))

    # reconciliation
    def _fail(self, result: ApiResult) -> bool:
        self.error = result.error
        return False

    def _replace_project(self, project: Dict[str, Any]) -> None:
        for idx, current in enumerate(self.projects):
            if str(current.get("id")) == str(project.get("id")):
                self.projects[idx] = project
                return
        self.projects.insert(0, project)

    def _replace_task(self, task: Dict[str, Any]) -> None:
        project = self.project(task.get("projectId"))
        if project is None:
            return
        summary = task.pop("project", None)
        tasks = list(project.get("tasks") or [])
        for idx, current in enumerate(tasks):
            if str(current.get("id")) == str(task.get("id")):
                tasks[idx] = task
                break
        else:
            tasks.append(task)
        updated = dict(project, tasks=self._with_gate_flags(tasks))
        if summary:
            updated["completed"] = bool(summary.get("completed"))
        self._replace_project(updated)

    def _drop_task(self, project_id: object, task_id: object, summary: Optional[Dict[str, Any]]) -> None:
        project = self.project(project_id)
        if project is None:
            return
        tasks = []
        for task in project.get("tasks") or []:
            if str(task.get("id")) == str(task_id):
                continue
            deps = [d for d in task.get("dependsOn") or [] if gating.normalize_dependency(d).id != str(task_id)]
            tasks.append(dict(task, dependsOn=deps))
        updated = dict(project, tasks=self._with_gate_flags(tasks))
        if summary:
            updated["completed"] = bool(summary.get("completed"))
        self._replace_project(updated)

    @staticmethod
    def _with_gate_flags(tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        # A task write can open or close the gate of its dependents.
        return [dict(t, canComplete=gating.can_complete(t, tasks)) for t in tasks]

    # auth
    def login(self, email: str, password: str) -> bool:
        self.error = ""
        if not email.strip() or not password.strip():
            self.error = "Email and password are required"
            return False
        self.loading = True
        try:
            result = self.api.login(email.strip(), password)
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self.user = result.data.get("user")
        return True

    def signup(self, name: str, email: str, password: str, confirm_password: str) -> bool:
        self.error = ""
        if password != confirm_password:
            self.error = "Passwords do not match"
            return False
        if not name.strip():
            self.error = "Name is required"
            return False
        if not email.strip() or not password.strip():
            self.error = "Email and password are required"
            return False
        self.loading = True
        try:
            result = self.api.signup(name.strip(), email.strip(), password)
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self.user = result.data.get("user")
        return True

    def restore_session(self) -> bool:
        if not self.api.token:
            return False
        result = self.api.verify()
        if not result.success:
            self.api.token = None
            return self._fail(result)
        self.user = result.data.get("user")
        return True

    def logout(self) -> None:
        self.api.logout()
        self.user = None
        self.projects = []
        self.error = ""
        self.search_query = ""
        self.close_project()
        self.close_create()

    # projects
    def load_projects(self) -> bool:
        self.error = ""
        self.loading = True
        try:
            result = self.api.list_projects()
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self.projects = list(gating.normalize_tasks(result.data))
        if self.selected_id is not None and self.project(self.selected_id) is None:
            self.close_project()
        return True

    def open_project(self, project_id: object) -> None:
        project = self.project(project_id)
        if project is not None:
            self.selected_id = project["id"]
            self.details_open = True

    def close_project(self) -> None:
        self.selected_id = None
        self.details_open = False
        self.task_input = ""
        self.person_input = ""
        self.subtask_input = ""
        self.selected_task_id = None
        self.dependency_task_id = None

    def open_create(self) -> None:
        self.create_open = True

    def close_create(self) -> None:
        self.create_open = False
        self.new_name = ""
        self.new_description = ""
        self.new_tasks = ""
        self.new_people = ""

    def create_project(self) -> bool:
        name = self.new_name.strip()
        if not name:
            self.error = "Project name is required"
            return False
        self.error = ""
        payload: Dict[str, object] = {
            "name": name,
            "tasks": _lines(self.new_tasks),
            "people": _lines(self.new_people, ","),
        }
        if self.new_description.strip():
            payload["description"] = self.new_description.strip()
        self.loading = True
        try:
            result = self.api.create_project(payload)
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self.projects.insert(0, result.data)
        self.close_create()
        return True

    def delete_project(self, project_id: object) -> bool:
        self.error = ""
        result = self.api.delete_project(project_id)
        if not result.success:
            return self._fail(result)
        self.projects = [p for p in self.projects if str(p.get("id")) != str(project_id)]
        if str(self.selected_id) == str(project_id):
            self.close_project()
        return True

    def add_person(self) -> bool:
        identifier = self.person_input.strip()
        if not identifier or self.selected_id is None:
            return False
        self.error = ""
        field = "email" if "@" in identifier else "name"
        self.loading = True
        try:
            result = self.api.add_person(self.selected_id, {field: identifier})
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self._replace_project(result.data)
        self.person_input = ""
        return True

    def remove_person(self, person_id: object) -> bool:
        if self.selected_id is None:
            return False
        self.error = ""
        result = self.api.remove_person(self.selected_id, person_id)
        if not result.success:
            return self._fail(result)
        self._replace_project(result.data)
        return True

    # tasks
    def add_task(self) -> bool:
        text = self.task_input.strip()
        if not text or self.selected_id is None:
            return False
        self.error = ""
        payload: Dict[str, object] = {"text": text, "projectId": self.selected_id}
        if self.dependency_task_id is not None:
            payload["dependencyTaskIds"] = [self.dependency_task_id]
        self.loading = True
        try:
            result = self.api.add_task(payload)
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self._replace_task(result.data)
        self.task_input = ""
        self.dependency_task_id = None
        return True

    def toggle_task(self, task_id: object) -> bool:
        task = self.task(task_id)
        if task is None:
            return False
        self.error = ""
        if not self.task_toggle_enabled(task_id):
            # Disabled control: no request is sent.
            return False
        self.loading_task_id = task["id"]
        try:
            result = self.api.update_task(task["id"], {"completed": not bool(task.get("completed"))})
        finally:
            self.loading_task_id = None
        if not result.success:
            return self._fail(result)
        self._replace_task(result.data)
        return True

    def delete_task(self, task_id: object) -> bool:
        task = self.task(task_id)
        if task is None:
            return False
        self.error = ""
        result = self.api.delete_task(task["id"])
        if not result.success:
            return self._fail(result)
        self._drop_task(task.get("projectId"), task["id"], result.data.get("project"))
        return True

    # subtasks
    def add_subtask(self, task_id: object) -> bool:
        text = self.subtask_input.strip()
        if not text:
            return False
        self.error = ""
        self.loading = True
        try:
            result = self.api.add_subtask(task_id, {"text": text})
        finally:
            self.loading = False
        if not result.success:
            return self._fail(result)
        self._replace_task(result.data["task"])
        self.subtask_input = ""
        self.selected_task_id = None
        return True

    def toggle_subtask(self, subtask_id: object, currently_completed: bool) -> bool:
        self.error = ""
        self.loading_subtask_id = subtask_id
        try:
            result = self.api.update_subtask(subtask_id, {"completed": not currently_completed})
        finally:
            self.loading_subtask_id = None
        if not result.success:
            return self._fail(result)
        self._replace_task(result.data["task"])
        return True

    def delete_subtask(self, subtask_id: object) -> bool:
        self.error = ""
        result = self.api.delete_subtask(subtask_id)
        if not result.success:
            return self._fail(result)
        self._replace_task(result.data["task"])
        return True
