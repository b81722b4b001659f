"""Accounts, password hashing and bearer-token sessions."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import logging
import os
import secrets
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from werkzeug.exceptions import BadRequest, Conflict, TooManyRequests, Unauthorized

from .utils import iso, utcnow, valid_email

logger = logging.getLogger(__name__)

SESSION_DAYS = int(os.environ.get("TASKGATE_SESSION_DAYS", "1"))
LOGIN_MAX_ATTEMPTS = int(os.environ.get("TASKGATE_LOGIN_MAX_ATTEMPTS", "8"))
LOGIN_WINDOW_MINUTES = 10
MIN_PASSWORD_LENGTH = 6

RATE_LIMIT: Dict[str, List[dt.datetime]] = {}
RATE_LIMIT_LOCK = threading.Lock()


def hash_password(password: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    salt = base64.b64decode(salt_b64) if salt_b64 else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 310_000)
    return base64.b64encode(digest).decode("utf-8"), base64.b64encode(salt).decode("utf-8")


def verify_password(password: str, expected_hash: str, salt_b64: str) -> bool:
    computed, _ = hash_password(password, salt_b64)
    return hmac.compare_digest(computed, expected_hash)


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def public_user(row: Any) -> Dict[str, object]:
    return {
        "id": int(row["id"]),
        "email": row["email"],
        "name": row["name"],
        "avatar": row["avatar"],
    }


def enforce_rate_limit(ip: str, max_attempts: Optional[int] = None, window_minutes: int = LOGIN_WINDOW_MINUTES) -> bool:
    """Record a failed attempt for ``ip``; False once the window is exhausted."""
    limit = LOGIN_MAX_ATTEMPTS if max_attempts is None else max_attempts
    now = utcnow()
    cutoff = now - dt.timedelta(minutes=window_minutes)
    with RATE_LIMIT_LOCK:
        for other in [key for key, events in RATE_LIMIT.items() if key != ip and (not events or events[-1] < cutoff)]:
            del RATE_LIMIT[other]
        history = [event for event in RATE_LIMIT.get(ip, []) if event >= cutoff]
        if len(history) >= limit:
            RATE_LIMIT[ip] = history
            return False
        history.append(now)
        RATE_LIMIT[ip] = history
    return True


def rate_limited(ip: str) -> bool:
    cutoff = utcnow() - dt.timedelta(minutes=LOGIN_WINDOW_MINUTES)
    with RATE_LIMIT_LOCK:
        history = [event for event in RATE_LIMIT.get(ip, []) if event >= cutoff]
        if history:
            RATE_LIMIT[ip] = history
        else:
            RATE_LIMIT.pop(ip, None)
        return len(history) >= LOGIN_MAX_ATTEMPTS


def create_session(conn: sqlite3.Connection, user_id: int, ip: str = "", user_agent: str = "") -> str:
    raw_token = secrets.token_urlsafe(32)
    expires = utcnow() + dt.timedelta(days=SESSION_DAYS)
    conn.execute(
        "INSERT INTO sessions (user_id, token_hash, expires_at, created_at, last_seen_at, ip_address, user_agent) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (user_id, token_hash(raw_token), iso(expires), iso(), iso(), ip, (user_agent or "")[:200]),
    )
    logger.info("Session created for user %s", user_id)
    return raw_token


def session_user(conn: sqlite3.Connection, token: Optional[str]) -> Optional[Dict[str, object]]:
    """Resolve a raw bearer token to its active user, dropping expired sessions."""
    if not token:
        return None
    session = conn.execute(
        """
        SELECT s.id AS session_id, s.expires_at, u.id, u.email, u.name, u.avatar, u.is_active
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token_hash = ?
        """,
        (token_hash(token),),
    ).fetchone()
    if not session:
        return None
    try:
        expires_at = dt.datetime.fromisoformat(str(session["expires_at"]))
    except ValueError:
        expires_at = utcnow() - dt.timedelta(days=1)
    if expires_at < utcnow() or not session["is_active"]:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["session_id"],))
        conn.commit()
        return None
    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["session_id"]))
    return public_user(session)


def end_session(conn: sqlite3.Connection, token: Optional[str]) -> bool:
    if not token:
        return False
    cursor = conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash(token),))
    return cursor.rowcount > 0


def signup(conn: sqlite3.Connection, email: str, password: str, name: Optional[str] = None, ip: str = "", user_agent: str = "") -> Dict[str, object]:
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        raise Conflict("User with this email already exists")
    pw_hash, pw_salt = hash_password(password)
    display_name = (name or "").strip() or email.split("@")[0]
    cursor = conn.execute(
        "INSERT INTO users (email, name, password_hash, password_salt, is_active, created_at) VALUES (?, ?, ?, ?, 1, ?)",
        (email, display_name[:120], pw_hash, pw_salt, iso()),
    )
    user_id = int(cursor.lastrowid)
    token = create_session(conn, user_id, ip, user_agent)
    user = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    logger.info("User %s signed up", user_id)
    return {"message": "User created successfully", "user": public_user(user), "token": token}


def login(conn: sqlite3.Connection, email: str, password: str, ip: str = "", user_agent: str = "") -> Dict[str, object]:
    user = conn.execute("SELECT * FROM users WHERE email = ? AND is_active = 1", (email,)).fetchone()
    valid_password = False
    if user:
        try:
            valid_password = verify_password(password, str(user["password_hash"] or ""), str(user["password_salt"] or ""))
        except (ValueError, TypeError):
            valid_password = False
    if not user or not valid_password:
        raise Unauthorized("Invalid credentials")
    token = create_session(conn, int(user["id"]), ip, user_agent)
    return {"message": "Login successful", "user": public_user(user), "token": token}


def authenticate(
    conn: sqlite3.Connection,
    payload: Dict[str, Any],
    current_user: Optional[Dict[str, object]] = None,
    ip: str = "",
    user_agent: str = "",
) -> Dict[str, object]:
    """Dispatch ``POST /auth`` on its ``isVerify`` / ``isSignup`` flags."""
    if payload.get("isVerify"):
        if not current_user:
            raise Unauthorized("Authentication required for token verification")
        return {"valid": True, "user": current_user}

    email = str(payload.get("email") or "").strip().lower()
    password = payload.get("password")
    if not email or not isinstance(password, str) or not password:
        raise Unauthorized("Email and password are required")

    if rate_limited(ip):
        raise TooManyRequests("Too many attempts. Try again later.")

    try:
        if payload.get("isSignup"):
            if not valid_email(email):
                raise BadRequest("email must be a valid email address")
            if len(password) < MIN_PASSWORD_LENGTH:
                raise BadRequest(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
            name = payload.get("name")
            return signup(conn, email, password, name if isinstance(name, str) else None, ip, user_agent)
        return login(conn, email, password, ip, user_agent)
    except (Unauthorized, Conflict):
        enforce_rate_limit(ip)
        raise
