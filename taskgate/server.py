#!/usr/bin/env python3
"""TaskGate API server

JSON REST API for projects whose tasks can only be completed once their
subtasks and dependency tasks are done. Runs on the stdlib WSGI server, or
behind Flask via ``taskgate.flask_app``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote
from wsgiref.simple_server import WSGIServer, make_server

from werkzeug.exceptions import BadRequest, HTTPException, InternalServerError, MethodNotAllowed, NotFound, Unauthorized
from werkzeug.http import HTTP_STATUS_CODES

from . import auth, db, projects
from .logging_setup import setup_logging

logger = logging.getLogger(__name__)

APP_NAME = "TaskGate"
SECRET_KEY = os.environ.get("TASKGATE_SECRET_KEY", "change-this-secret-in-production")
COOKIE_SECURE = os.environ.get("TASKGATE_COOKIE_SECURE", "0") == "1"
HOST = os.environ.get("TASKGATE_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("TASKGATE_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("TASKGATE_WSGI_THREADED", "1") == "1"
CORS_ORIGIN = os.environ.get("TASKGATE_CORS_ORIGIN", "http://localhost:3000").strip()
AUTH_COOKIE = "auth-token"
MAX_BODY_BYTES = 1024 * 1024

PROJECT_RE = re.compile(r"^/projects/(\d+)$")
PROJECT_PEOPLE_RE = re.compile(r"^/projects/(\d+)/people$")
PROJECT_PERSON_RE = re.compile(r"^/projects/(\d+)/people/(\d+)$")
TASK_RE = re.compile(r"^/tasks/(\d+)$")
TASK_SUBTASKS_RE = re.compile(r"^/tasks/(\d+)/subtasks$")
SUBTASK_RE = re.compile(r"^/tasks/subtasks/(\d+)$")


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server; each request opens its own connection."""

    daemon_threads = True


class Request:
    """Thin wrapper over the WSGI environ with lazy JSON body parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        if len(self.path) > 1:
            self.path = self.path.rstrip("/")
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._json: Optional[Dict[str, Any]] = None

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        if not raw_cookie:
            return cookies
        for token in raw_cookie.split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def remote_addr(self) -> str:
        return self.environ.get("REMOTE_ADDR", "") or "unknown"

    @property
    def user_agent(self) -> str:
        return self.environ.get("HTTP_USER_AGENT", "")

    @property
    def bearer_token(self) -> Optional[str]:
        """Token from ``Authorization: Bearer``, falling back to the auth cookie."""
        header = self.environ.get("HTTP_AUTHORIZATION", "")
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
            if token:
                return token
        return self.cookies.get(AUTH_COOKIE) or None

    @property
    def json(self) -> Dict[str, Any]:
        if self._json is None:
            self._json = self._parse_json()
        return self._json

    def _parse_json(self) -> Dict[str, Any]:
        try:
            length = int(self.environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        if length > MAX_BODY_BYTES:
            raise BadRequest("Request body too large")
        raw = self.environ["wsgi.input"].read(length) if length else b""
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise BadRequest("Malformed JSON body")
        if not isinstance(parsed, dict):
            raise BadRequest("JSON body must be an object")
        return parsed


class Response:
    """Simple response object that centralizes security and CORS headers."""

    def __init__(
        self,
        body: str = "",
        status: str = "200 OK",
        content_type: str = "application/json; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
            ("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"),
        ]
        if CORS_ORIGIN:
            sec_headers.extend(
                [
                    ("Access-Control-Allow-Origin", CORS_ORIGIN),
                    ("Access-Control-Allow-Credentials", "true"),
                    ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
                    ("Access-Control-Allow-Methods", "GET, POST, PUT, PATCH, DELETE, OPTIONS"),
                    ("Vary", "Origin"),
                ]
            )
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def status_line(code: int) -> str:
    return f"{code} {HTTP_STATUS_CODES.get(code, 'Unknown')}"


def json_response(payload: object, status: str = "200 OK", cookies: Optional[List[str]] = None) -> Response:
    headers = [("Set-Cookie", cookie) for cookie in cookies or []]
    return Response(json.dumps(payload), status=status, headers=headers)


def error_response(exc: HTTPException) -> Response:
    code = exc.code or 500
    payload = {
        "ok": False,
        "error": type(exc).__name__,
        "statusCode": code,
        "message": exc.description,
    }
    reasons = getattr(exc, "reasons", None)
    if reasons:
        payload["reasons"] = reasons
    headers = []
    if isinstance(exc, MethodNotAllowed) and exc.valid_methods:
        headers.append(("Allow", ", ".join(exc.valid_methods)))
    return Response(json.dumps(payload), status=status_line(code), headers=headers)


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)


def require_user(user: Optional[Dict[str, object]]) -> int:
    if not user:
        raise Unauthorized("Authentication required")
    return int(user["id"])


def dispatch(conn, req: Request) -> Response:
    """Route one API request; raises HTTPException for every failure."""
    user = auth.session_user(conn, req.bearer_token)

    if req.path == "/auth":
        if req.method != "POST":
            raise MethodNotAllowed(valid_methods=["POST"])
        payload = req.json
        result = auth.authenticate(conn, payload, user, req.remote_addr, req.user_agent)
        if "token" not in result:
            return json_response(result)
        cookie = set_cookie(AUTH_COOKIE, str(result["token"]), max_age=auth.SESSION_DAYS * 24 * 3600)
        return json_response(result, cookies=[cookie])

    if req.path == "/auth/logout":
        if req.method != "POST":
            raise MethodNotAllowed(valid_methods=["POST"])
        auth.end_session(conn, req.bearer_token)
        return json_response({"message": "Logged out successfully"}, cookies=[clear_cookie(AUTH_COOKIE)])

    if req.path == "/users":
        if req.method != "GET":
            raise MethodNotAllowed(valid_methods=["GET"])
        require_user(user)
        return json_response(projects.list_users(conn, req.query.get("q", "")))

    if req.path == "/projects":
        user_id = require_user(user)
        if req.method == "GET":
            return json_response(projects.list_projects(conn, user_id))
        if req.method == "POST":
            return json_response(projects.create_project(conn, user_id, req.json), status=status_line(201))
        raise MethodNotAllowed(valid_methods=["GET", "POST"])

    match = PROJECT_RE.match(req.path)
    if match:
        user_id = require_user(user)
        project_id = int(match.group(1))
        if req.method == "GET":
            return json_response(projects.get_project(conn, user_id, project_id))
        if req.method in {"PATCH", "PUT"}:
            return json_response(projects.update_project(conn, user_id, project_id, req.json))
        if req.method == "DELETE":
            return json_response(projects.delete_project(conn, user_id, project_id))
        raise MethodNotAllowed(valid_methods=["GET", "PATCH", "PUT", "DELETE"])

    match = PROJECT_PEOPLE_RE.match(req.path)
    if match:
        user_id = require_user(user)
        if req.method != "POST":
            raise MethodNotAllowed(valid_methods=["POST"])
        return json_response(projects.add_person(conn, user_id, int(match.group(1)), req.json), status=status_line(201))

    match = PROJECT_PERSON_RE.match(req.path)
    if match:
        user_id = require_user(user)
        if req.method != "DELETE":
            raise MethodNotAllowed(valid_methods=["DELETE"])
        return json_response(projects.remove_person(conn, user_id, int(match.group(1)), int(match.group(2))))

    if req.path == "/tasks":
        user_id = require_user(user)
        if req.method != "POST":
            raise MethodNotAllowed(valid_methods=["POST"])
        return json_response(projects.create_task(conn, user_id, req.json), status=status_line(201))

    match = SUBTASK_RE.match(req.path)
    if match:
        user_id = require_user(user)
        subtask_id = int(match.group(1))
        if req.method in {"PATCH", "PUT"}:
            return json_response(projects.update_subtask(conn, user_id, subtask_id, req.json))
        if req.method == "DELETE":
            return json_response(projects.delete_subtask(conn, user_id, subtask_id))
        raise MethodNotAllowed(valid_methods=["PATCH", "PUT", "DELETE"])

    match = TASK_SUBTASKS_RE.match(req.path)
    if match:
        user_id = require_user(user)
        if req.method != "POST":
            raise MethodNotAllowed(valid_methods=["POST"])
        return json_response(projects.add_subtask(conn, user_id, int(match.group(1)), req.json), status=status_line(201))

    match = TASK_RE.match(req.path)
    if match:
        user_id = require_user(user)
        task_id = int(match.group(1))
        if req.method in {"PATCH", "PUT"}:
            return json_response(projects.update_task(conn, user_id, task_id, req.json))
        if req.method == "DELETE":
            return json_response(projects.delete_task(conn, user_id, task_id))
        raise MethodNotAllowed(valid_methods=["PATCH", "PUT", "DELETE"])

    raise NotFound(f"Route {req.method} {req.path} not found")


def app(environ, start_response):
    """WSGI entrypoint.

    Route dispatch is explicit (``if req.path == ...`` plus a few id patterns).
    One connection per request: committed when the handler returns, rolled
    back when it raises.
    """
    req = Request(environ)

    if req.method == "OPTIONS":
        return Response("", status=status_line(204), content_type="text/plain").wsgi(start_response)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        # Readiness includes DB reachability to catch locked/corrupt startup states.
        try:
            db.ensure_bootstrap()
            probe = db.db_connect()
            try:
                probe.execute("SELECT 1").fetchone()
            finally:
                probe.close()
            return Response("ready", content_type="text/plain").wsgi(start_response)
        except Exception as exc:
            logger.warning("Readiness probe failed: %s", exc)
            return Response(f"not-ready: {exc}", status=status_line(503), content_type="text/plain").wsgi(start_response)

    try:
        db.ensure_bootstrap()
    except Exception:
        return error_response(InternalServerError("Database bootstrap failed")).wsgi(start_response)

    conn = db.db_connect()
    try:
        response = dispatch(conn, req)
        conn.commit()
        return response.wsgi(start_response)
    except HTTPException as exc:
        conn.rollback()
        if (exc.code or 500) >= 500:
            logger.error("%s %s failed: %s", req.method, req.path, exc.description)
        return error_response(exc).wsgi(start_response)
    except Exception:
        conn.rollback()
        logger.exception("Unhandled error on %s %s", req.method, req.path)
        return error_response(InternalServerError("An unexpected server error occurred.")).wsgi(start_response)
    finally:
        conn.close()


def run() -> None:
    setup_logging()
    db.ensure_bootstrap()
    server_mode = "threaded" if WSGI_THREADED else "single-threaded"
    logger.info("%s running on http://%s:%s (backend=%s, mode=%s)", APP_NAME, HOST, PORT, db.DB_BACKEND, server_mode)
    if WSGI_THREADED:
        server = make_server(HOST, PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(HOST, PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
