from conftest import WSGIClient


def get_project(client, token, project_id):
    reply = client.request("GET", f"/projects/{project_id}", token=token)
    assert reply.status == 200, reply.text
    return reply.json


def task_by_text(project, text):
    return next(t for t in project["tasks"] if t["text"] == text)


def test_create_project_defaults(client, owner, new_project):
    token, user = owner
    project = new_project("Launch", tasks=["Design", "Build"])
    assert project["description"] == "New project"
    assert project["completed"] is False
    assert project["creatorId"] == user["id"]
    assert project["creator"]["email"] == user["email"]
    assert [t["text"] for t in project["tasks"]] == ["Design", "Build"]
    assert [t["order"] for t in project["tasks"]] == [0, 1]
    assert all(t["canComplete"] for t in project["tasks"])

    listed = client.request("GET", "/projects", token=token).json
    assert [p["id"] for p in listed] == [project["id"]]


def test_project_without_tasks_is_not_complete(new_project):
    assert new_project("Empty")["completed"] is False


def test_projects_are_listed_newest_first(client, owner, new_project):
    token, _ = owner
    first = new_project("First")
    second = new_project("Second")
    listed = client.request("GET", "/projects", token=token).json
    assert [p["id"] for p in listed] == [second["id"], first["id"]]


def test_create_project_requires_name(client, owner):
    token, _ = owner
    reply = client.request("POST", "/projects", {"description": "no name"}, token=token)
    assert reply.status == 400
    assert reply.json["message"] == "name is required"


def test_inline_tasks_with_subtasks_and_dependencies(new_project):
    project = new_project(
        "Inline",
        tasks=[
            {"text": "Design", "subtasks": ["Sketch", {"text": "Review"}]},
            {"text": "Build", "dependencies": [0]},
            {"text": "Ship", "dependencies": ["build"]},
        ],
    )
    design = task_by_text(project, "Design")
    build = task_by_text(project, "Build")
    ship = task_by_text(project, "Ship")
    assert [s["text"] for s in design["subtasks"]] == ["Sketch", "Review"]
    assert design["canComplete"] is False
    assert build["dependencies"] == [design["id"]]
    assert build["dependsOn"][0]["dependencyTask"] == {"id": design["id"], "text": "Design", "completed": False}
    assert ship["dependencies"] == [build["id"]]


def test_inline_task_can_depend_on_itself(new_project):
    project = new_project("S", tasks=[{"text": "A", "dependencies": [0]}])
    task = task_by_text(project, "A")
    assert task["dependencies"] == [task["id"]]
    assert task["canComplete"] is False


def test_inline_dependency_must_resolve(client, owner):
    token, _ = owner
    reply = client.request("POST", "/projects", {"name": "Bad", "tasks": [{"text": "A", "dependencies": [5]}]}, token=token)
    assert reply.status == 400
    assert client.request("GET", "/projects", token=token).json == []


def test_subtask_gates_task_completion(client, owner, new_project):
    token, _ = owner
    project = new_project("Gate", tasks=["Write docs"])
    task_id = project["tasks"][0]["id"]

    sub = client.request("POST", f"/tasks/{task_id}/subtasks", {"text": "Outline"}, token=token)
    assert sub.status == 201
    assert sub.json["task"]["canComplete"] is False

    blocked = client.request("PATCH", f"/tasks/{task_id}", {"completed": True}, token=token)
    assert blocked.status == 409
    assert blocked.json["error"] == "TaskBlocked"
    assert "All subtasks must be completed first." in blocked.json["message"]
    assert get_project(client, token, project["id"])["tasks"][0]["completed"] is False

    done_sub = client.request("PATCH", f"/tasks/subtasks/{sub.json['id']}", {"completed": True}, token=token)
    assert done_sub.status == 200
    assert done_sub.json["completed"] is True
    assert done_sub.json["task"]["canComplete"] is True

    done = client.request("PATCH", f"/tasks/{task_id}", {"completed": True}, token=token)
    assert done.status == 200
    assert done.json["completed"] is True
    assert done.json["project"] == {"id": project["id"], "completed": True}
    assert get_project(client, token, project["id"])["completed"] is True


def test_dependency_gates_task_completion(client, owner, new_project):
    token, _ = owner
    project = new_project("Deps", tasks=["A", "B"])
    a, b = project["tasks"]

    linked = client.request("PATCH", f"/tasks/{b['id']}", {"dependencyTaskIds": [a["id"]]}, token=token)
    assert linked.status == 200
    assert linked.json["dependencies"] == [a["id"]]
    assert linked.json["canComplete"] is False

    blocked = client.request("PATCH", f"/tasks/{b['id']}", {"completed": True}, token=token)
    assert blocked.status == 409
    assert blocked.json["reasons"] == ["Waiting on dependencies: A."]

    first = client.request("PATCH", f"/tasks/{a['id']}", {"completed": True}, token=token)
    assert first.json["project"]["completed"] is False

    second = client.request("PATCH", f"/tasks/{b['id']}", {"completed": True}, token=token)
    assert second.status == 200
    assert second.json["project"]["completed"] is True


def test_completion_with_new_dependencies_is_checked_in_one_request(client, owner, new_project):
    token, _ = owner
    project = new_project("Same request", tasks=["A", "B"])
    a, b = project["tasks"]
    reply = client.request("PATCH", f"/tasks/{b['id']}", {"completed": True, "dependencyTaskIds": [a["id"]]}, token=token)
    assert reply.status == 409
    after = task_by_text(get_project(client, token, project["id"]), "B")
    assert after["completed"] is False
    assert after["dependencies"] == []


def test_new_dependencies_on_completed_task_are_checked(client, owner, new_project):
    token, _ = owner
    project = new_project("Reopen", tasks=["A", "B"])
    a, b = project["tasks"]
    assert client.request("PATCH", f"/tasks/{b['id']}", {"completed": True}, token=token).status == 200

    reply = client.request("PATCH", f"/tasks/{b['id']}", {"dependencyTaskIds": [a["id"]]}, token=token)
    assert reply.status == 409
    assert reply.json["error"] == "TaskBlocked"
    assert reply.json["message"].startswith("Cannot change dependencies of a completed task")
    assert reply.json["reasons"] == ["Waiting on dependencies: A."]
    assert task_by_text(get_project(client, token, project["id"]), "B")["dependencies"] == []


def test_unchecking_subtask_reopens_task_and_project(client, owner, new_project):
    token, _ = owner
    project = new_project("Reopen", tasks=[{"text": "Only", "subtasks": ["Step"]}])
    task = project["tasks"][0]
    sub_id = task["subtasks"][0]["id"]
    client.request("PATCH", f"/tasks/subtasks/{sub_id}", {"completed": True}, token=token)
    assert client.request("PATCH", f"/tasks/{task['id']}", {"completed": True}, token=token).json["project"]["completed"]

    reply = client.request("PATCH", f"/tasks/subtasks/{sub_id}", {"completed": False}, token=token)
    assert reply.status == 200
    assert reply.json["task"]["completed"] is False
    assert reply.json["task"]["project"]["completed"] is False
    assert get_project(client, token, project["id"])["completed"] is False


def test_new_incomplete_subtask_reopens_completed_task(client, owner, new_project):
    token, _ = owner
    project = new_project("Late subtask", tasks=["Only"])
    task_id = project["tasks"][0]["id"]
    client.request("PATCH", f"/tasks/{task_id}", {"completed": True}, token=token)

    reply = client.request("POST", f"/tasks/{task_id}/subtasks", {"text": "Forgot this"}, token=token)
    assert reply.status == 201
    assert reply.json["task"]["completed"] is False
    assert get_project(client, token, project["id"])["completed"] is False


def test_task_create_is_gated_and_recomputes_project(client, owner, new_project):
    token, _ = owner
    project = new_project("Create", tasks=["A"])
    a = project["tasks"][0]
    client.request("PATCH", f"/tasks/{a['id']}", {"completed": True}, token=token)
    assert get_project(client, token, project["id"])["completed"] is True

    created = client.request("POST", "/tasks", {"projectId": project["id"], "text": "B"}, token=token)
    assert created.status == 201
    assert created.json["order"] == 1
    assert created.json["project"]["completed"] is False

    pending = client.request("POST", "/tasks", {"projectId": project["id"], "text": "C"}, token=token).json
    blocked = client.request(
        "POST",
        "/tasks",
        {"projectId": project["id"], "text": "D", "completed": True, "dependencyTaskIds": [pending["id"]]},
        token=token,
    )
    assert blocked.status == 409
    assert len(get_project(client, token, project["id"])["tasks"]) == 3


def test_deleting_last_incomplete_task_completes_project(client, owner, new_project):
    token, _ = owner
    project = new_project("Delete", tasks=["Done", "Dropped"])
    done, dropped = project["tasks"]
    client.request("PATCH", f"/tasks/{done['id']}", {"completed": True}, token=token)

    reply = client.request("DELETE", f"/tasks/{dropped['id']}", token=token)
    assert reply.status == 200
    assert reply.json["project"] == {"id": project["id"], "completed": True}


def test_delete_subtask_returns_parent(client, owner, new_project):
    token, _ = owner
    project = new_project("Subs", tasks=[{"text": "T", "subtasks": ["x"]}])
    sub_id = project["tasks"][0]["subtasks"][0]["id"]
    reply = client.request("DELETE", f"/tasks/subtasks/{sub_id}", token=token)
    assert reply.status == 200
    assert reply.json["task"]["subtasks"] == []
    assert reply.json["task"]["canComplete"] is True


def test_assignees_are_validated(client, owner, new_project, make_user):
    token, user = owner
    project = new_project("Assign", tasks=["T"])
    task_id = project["tasks"][0]["id"]
    _, helper = make_user("Helper")

    ok = client.request("PATCH", f"/tasks/{task_id}", {"assigneeIds": [user["id"], helper["id"]]}, token=token)
    assert ok.status == 200
    assert [a["id"] for a in ok.json["assignees"]] == [user["id"], helper["id"]]
    assert client.request("PATCH", f"/tasks/{task_id}", {"assigneeIds": [9999]}, token=token).status == 404


def test_dependency_must_exist_in_same_project(client, owner, new_project):
    token, _ = owner
    one = new_project("One", tasks=["A"])
    two = new_project("Two", tasks=["B"])
    b_id = two["tasks"][0]["id"]
    other = client.request("PATCH", f"/tasks/{b_id}", {"dependencyTaskIds": [one["tasks"][0]["id"]]}, token=token)
    assert other.status == 400
    missing = client.request("PATCH", f"/tasks/{b_id}", {"dependencyTaskIds": [9999]}, token=token)
    assert missing.status == 404


def test_validation_errors(client, owner, new_project):
    token, _ = owner
    project = new_project("Validate", tasks=["T"])
    task_id = project["tasks"][0]["id"]
    assert client.request("PATCH", f"/tasks/{task_id}", {"completed": "yes"}, token=token).status == 400
    assert client.request("PATCH", f"/tasks/{task_id}", {"text": "  "}, token=token).status == 400
    assert client.request("POST", "/tasks", {"text": "No project"}, token=token).status == 400
    assert client.request("POST", "/tasks", {"projectId": project["id"]}, token=token).status == 400
    assert client.request("POST", f"/tasks/{task_id}/subtasks", {}, token=token).status == 400


def test_unknown_entities_are_not_found(client, owner):
    token, _ = owner
    assert client.request("GET", "/projects/9999", token=token).status == 404
    assert client.request("PATCH", "/tasks/9999", {"completed": True}, token=token).status == 404
    assert client.request("PATCH", "/tasks/subtasks/9999", {"completed": True}, token=token).status == 404
    assert client.request("POST", "/tasks", {"projectId": 9999, "text": "x"}, token=token).status == 404
    reply = client.request("GET", "/nowhere", token=token)
    assert reply.status == 404
    assert reply.json["error"] == "NotFound"


def test_ids_beyond_integer_columns_are_rejected(client, owner, new_project):
    token, _ = owner
    task_id = new_project("Huge", tasks=["A"])["tasks"][0]["id"]
    huge = 10**20
    assert client.request("GET", "/projects/99999999999999999999", token=token).status == 404
    assert client.request("PATCH", f"/tasks/{task_id}", {"dependencyTaskIds": [huge]}, token=token).status == 400
    assert client.request("PATCH", f"/tasks/{task_id}", {"order": huge}, token=token).status == 400
    assert client.request("POST", "/tasks", {"projectId": huge, "text": "x"}, token=token).status == 404


def test_non_owner_cannot_mutate(client, owner, new_project, make_user):
    token, _ = owner
    project = new_project("Private", tasks=[{"text": "T", "subtasks": ["s"]}])
    task = project["tasks"][0]
    intruder, _ = make_user("Intruder")

    attempts = [
        ("PATCH", f"/projects/{project['id']}", {"name": "Mine now"}),
        ("DELETE", f"/projects/{project['id']}", None),
        ("POST", "/tasks", {"projectId": project["id"], "text": "sneaky"}),
        ("PATCH", f"/tasks/{task['id']}", {"text": "changed"}),
        ("DELETE", f"/tasks/{task['id']}", None),
        ("POST", f"/tasks/{task['id']}/subtasks", {"text": "sneaky"}),
        ("PATCH", f"/tasks/subtasks/{task['subtasks'][0]['id']}", {"completed": True}),
        ("DELETE", f"/tasks/subtasks/{task['subtasks'][0]['id']}", None),
    ]
    for method, path, body in attempts:
        reply = client.request(method, path, body, token=intruder)
        assert reply.status == 403, (method, path, reply.text)
        assert reply.json["error"] == "Forbidden"

    assert get_project(client, token, project["id"]) == project


def test_members_can_read_but_not_write(client, owner, new_project, make_user):
    token, _ = owner
    member_token, member = make_user("Member")
    stranger_token, _ = make_user("Stranger")
    project = new_project("Shared", tasks=["T"], people=[member["email"]])

    assert client.request("GET", f"/projects/{project['id']}", token=member_token).status == 200
    assert [p["id"] for p in client.request("GET", "/projects", token=member_token).json] == [project["id"]]
    assert client.request("PATCH", f"/tasks/{project['tasks'][0]['id']}", {"completed": True}, token=member_token).status == 403

    assert client.request("GET", f"/projects/{project['id']}", token=stranger_token).status == 403
    assert client.request("GET", "/projects", token=stranger_token).json == []


def test_update_project(client, owner, new_project):
    token, _ = owner
    project = new_project("Rename me")
    for method in ("PATCH", "PUT"):
        reply = client.request(method, f"/projects/{project['id']}", {"name": f"Renamed {method}", "description": "d"}, token=token)
        assert reply.status == 200
        assert reply.json["name"] == f"Renamed {method}"
        assert reply.json["description"] == "d"

    forced = client.request("PATCH", f"/projects/{project['id']}", {"completed": True}, token=token)
    assert forced.status == 400
    assert get_project(client, token, project["id"])["completed"] is False


def test_delete_project_cascades(client, owner, new_project):
    token, _ = owner
    project = new_project("Doomed", tasks=[{"text": "T", "subtasks": ["s"]}])
    reply = client.request("DELETE", f"/projects/{project['id']}", token=token)
    assert reply.status == 200
    assert reply.json["message"] == "Project deleted successfully"
    assert client.request("GET", f"/projects/{project['id']}", token=token).status == 404
    assert client.request("PATCH", f"/tasks/{project['tasks'][0]['id']}", {"text": "x"}, token=token).status == 404


def test_users_endpoint_filters(client, owner, make_user):
    token, _ = owner
    make_user("Grace Hopper")
    make_user("Alan Turing")
    everyone = client.request("GET", "/users", token=token).json
    assert {u["name"] for u in everyone} >= {"Grace Hopper", "Alan Turing", "Owner"}
    filtered = client.request("GET", "/users?q=grace", token=token).json
    assert [u["name"] for u in filtered] == ["Grace Hopper"]
    assert WSGIClient().request("GET", "/users").status == 401


def test_health_and_preflight():
    anonymous = WSGIClient()
    health = anonymous.request("GET", "/healthz")
    assert health.status == 200
    assert health.text == "ok"
    ready = anonymous.request("GET", "/readyz")
    assert ready.status == 200
    preflight = anonymous.request("OPTIONS", "/projects")
    assert preflight.status == 204
    assert preflight.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert preflight.headers["Access-Control-Allow-Credentials"] == "true"
