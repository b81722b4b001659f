#!/usr/bin/env python3
"""WSGI entry point for production deployment.

- Gunicorn: gunicorn wsgi:application
- Waitress: waitress-serve --port=8080 wsgi:application
"""

from taskgate.flask_app import flask_app
from taskgate.logging_setup import setup_logging

setup_logging()

# Standard WSGI application variable name
application = flask_app

if __name__ == "__main__":
    # For development only
    application.run()
