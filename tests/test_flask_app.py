import pytest

from taskgate.flask_app import flask_app


@pytest.fixture()
def flask_client():
    flask_app.config["TESTING"] = True
    return flask_app.test_client()


def test_health_passes_through_bridge(flask_client):
    reply = flask_client.get("/healthz")
    assert reply.status_code == 200
    assert reply.get_data(as_text=True) == "ok"
    assert reply.headers["X-Content-Type-Options"] == "nosniff"


def test_api_round_trip_through_bridge(flask_client):
    signup = flask_client.post(
        "/auth",
        json={"name": "Ada", "email": "ada@example.com", "password": "secret-pw", "isSignup": True},
    )
    assert signup.status_code == 200
    assert "auth-token=" in signup.headers.get("Set-Cookie", "")
    token = signup.get_json()["token"]

    created = flask_client.post("/projects", json={"name": "Bridge", "tasks": ["A"]}, headers={"Authorization": f"Bearer {token}"})
    assert created.status_code == 201
    assert created.get_json()["tasks"][0]["canComplete"] is True

    missing = flask_client.get("/projects/9999", headers={"Authorization": f"Bearer {token}"})
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "NotFound"


def test_preflight_through_bridge(flask_client):
    reply = flask_client.open("/tasks", method="OPTIONS")
    assert reply.status_code == 204
    assert reply.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"


def test_init_db_command(temp_db):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "Database initialized" in result.output
    assert temp_db.exists()
