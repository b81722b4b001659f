#!/usr/bin/env python3
"""TaskGate - Flask application

Wraps the WSGI API in a Flask catch-all route so the service can run under
Flask tooling (``flask --app taskgate.flask_app``) and production WSGI hosts.
"""

from __future__ import annotations

import os
import subprocess
import sys
from typing import Any, Dict

import click
from flask import Flask, request

from . import db
from .logging_setup import setup_logging
from .server import COOKIE_SECURE, HOST, PORT, SECRET_KEY, app as wsgi_app

flask_app = Flask(__name__, static_folder=None, template_folder=None)

flask_app.config["SECRET_KEY"] = SECRET_KEY
flask_app.config["SESSION_COOKIE_SECURE"] = COOKIE_SECURE
flask_app.config["SESSION_COOKIE_HTTPONLY"] = True
flask_app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


@flask_app.before_request
def setup_request():
    # Health probes stay independent of database bootstrap.
    if request.path == "/healthz" or request.method == "OPTIONS":
        return None
    db.ensure_bootstrap()
    return None


@flask_app.route("/", defaults={"path": ""}, methods=ALL_METHODS, provide_automatic_options=False)
@flask_app.route("/<path:path>", methods=ALL_METHODS, provide_automatic_options=False)
def catch_all(path):
    """Delegate every route to the WSGI API and copy its status and headers."""
    response_data: Dict[str, Any] = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(wsgi_app(request.environ, start_response))
    status_code = int(response_data.get("status", "200 OK").split()[0])

    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        if header_name.lower() == "set-cookie":
            response.headers.add(header_name, header_value)
        else:
            response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db():
    """Initialize the database schema."""
    db.init_db()
    click.echo("Database initialized successfully!")


@flask_app.cli.command("run-tests")
def run_tests():
    """Run the pytest suite."""
    click.echo("Running tests...")
    result = subprocess.run([sys.executable, "-m", "pytest", "tests/"], cwd=str(db.BASE_DIR))
    sys.exit(result.returncode)


if __name__ == "__main__":
    setup_logging()
    flask_app.run(
        host=HOST,
        port=PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
