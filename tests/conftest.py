from __future__ import annotations

import io
import json
import secrets
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest

from taskgate import auth, db
from taskgate.server import app


class Reply:
    def __init__(self, status: str, headers: List[Tuple[str, str]], body: bytes):
        self.status_line = status
        self.status = int(status.split()[0])
        self.header_list = headers
        self.headers = dict(headers)
        self.text = body.decode("utf-8", errors="ignore")

    @property
    def json(self) -> Any:
        return json.loads(self.text) if self.text else None

    def cookies(self) -> List[str]:
        return [value for key, value in self.header_list if key.lower() == "set-cookie"]


class WSGIClient:
    """Tiny cookie-aware in-process client for the API callable."""

    def __init__(self, remote_addr: str = "127.0.0.1"):
        self.cookies: Dict[str, str] = {}
        self.remote_addr = remote_addr
        self.calls: List[Tuple[str, str]] = []

    def _cookie_header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self.cookies.items() if v)

    def request(
        self,
        method: str,
        path: str,
        json_body: Optional[object] = None,
        token: Optional[str] = None,
        raw_body: Optional[bytes] = None,
    ) -> Reply:
        if raw_body is not None:
            body = raw_body
        else:
            body = json.dumps(json_body).encode("utf-8") if json_body is not None else b""
        path_info, _, query = path.partition("?")
        environ = {
            "REQUEST_METHOD": method,
            "PATH_INFO": path_info,
            "QUERY_STRING": query,
            "wsgi.input": io.BytesIO(body),
            "CONTENT_LENGTH": str(len(body)),
            "CONTENT_TYPE": "application/json",
            "REMOTE_ADDR": self.remote_addr,
            "HTTP_USER_AGENT": "pytest",
            "HTTP_COOKIE": self._cookie_header(),
            "wsgi.url_scheme": "http",
            "SERVER_NAME": "localhost",
            "SERVER_PORT": "80",
            "SCRIPT_NAME": "",
            "wsgi.version": (1, 0),
            "wsgi.errors": io.StringIO(),
            "wsgi.multithread": False,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
        }
        if token:
            environ["HTTP_AUTHORIZATION"] = f"Bearer {token}"

        captured: Dict[str, Any] = {"status": None, "headers": []}

        def start_response(status, headers):
            captured["status"] = status
            captured["headers"] = headers

        self.calls.append((method, path))
        payload = b"".join(app(environ, start_response))
        for key, value in captured["headers"]:
            if key.lower() == "set-cookie":
                pair = value.split(";", 1)[0]
                if "=" in pair:
                    k, v = pair.split("=", 1)
                    self.cookies[k] = v
        return Reply(captured["status"], captured["headers"], payload)

    def transport(self, method: str, url: str, headers: Dict[str, str], body: Optional[bytes]) -> Tuple[int, bytes]:
        """Adapter matching ``taskgate.client.Transport``."""
        parts = urlsplit(url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        token = None
        bearer = headers.get("Authorization", "")
        if bearer.startswith("Bearer "):
            token = bearer[7:]
        reply = self.request(method, path, token=token, raw_body=body or b"")
        return reply.status, reply.text.encode("utf-8")


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Point every test at its own SQLite file."""
    path = tmp_path / "taskgate.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(db, "BOOTSTRAPPED", False)
    auth.RATE_LIMIT.clear()
    yield path
    auth.RATE_LIMIT.clear()


@pytest.fixture()
def client() -> WSGIClient:
    return WSGIClient()


@pytest.fixture()
def make_user(client: WSGIClient):
    """Sign up a fresh user; returns ``(token, user)``."""

    def _make(name: str = "Ada", email: Optional[str] = None, password: str = "secret-pw") -> Tuple[str, Dict[str, Any]]:
        email = email or f"{name.lower().replace(' ', '.')}-{secrets.token_hex(3)}@example.com"
        reply = client.request("POST", "/auth", {"name": name, "email": email, "password": password, "isSignup": True})
        assert reply.status == 200, reply.text
        return reply.json["token"], reply.json["user"]

    return _make


@pytest.fixture()
def owner(make_user):
    return make_user("Owner")


@pytest.fixture()
def new_project(client: WSGIClient, owner):
    """Create a project owned by ``owner``; extra keyword arguments go into the payload."""
    token, _ = owner

    def _create(name: str = "Launch", **payload: Any) -> Dict[str, Any]:
        reply = client.request("POST", "/projects", {"name": name, **payload}, token=token)
        assert reply.status == 201, reply.text
        return reply.json

    return _create
