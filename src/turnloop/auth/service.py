"""Token-based session authentication helpers."""

import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from turnloop.config import get_settings
from turnloop.ids import new_id


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    user_id: str
    tenant_id: str | None
    role: str


def _token_hash(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def create_session(
    conn: sqlite3.Connection,
    user_id: str,
    role: str = "user",
    tenant_id: str | None = None,
) -> tuple[str, str]:
    settings = get_settings()
    session_id = new_id("wss")
    raw_token = secrets.token_urlsafe(48)
    created_at = datetime.now(UTC)
    expires_at = created_at + timedelta(hours=max(1, settings.web_auth_token_ttl_hours))
    conn.execute(
        (
            "INSERT INTO web_sessions("
            "id, user_id, tenant_id, role, token_hash, created_at, expires_at"
            ") VALUES(?,?,?,?,?,?,?)"
        ),
        (
            session_id,
            user_id,
            tenant_id,
            role,
            _token_hash(raw_token),
            created_at.isoformat(),
            expires_at.isoformat(),
        ),
    )
    return session_id, raw_token


def validate_token(conn: sqlite3.Connection, raw_token: str) -> SessionIdentity | None:
    row = conn.execute(
        (
            "SELECT id, user_id, tenant_id, role, expires_at FROM web_sessions "
            "WHERE token_hash=? LIMIT 1"
        ),
        (_token_hash(raw_token),),
    ).fetchone()
    if row is None:
        return None

    try:
        expires_at = datetime.fromisoformat(str(row["expires_at"]))
    except ValueError:
        conn.execute("DELETE FROM web_sessions WHERE id=?", (str(row["id"]),))
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    if expires_at <= datetime.now(UTC):
        conn.execute("DELETE FROM web_sessions WHERE id=?", (str(row["id"]),))
        return None

    tenant_id = row["tenant_id"]
    return SessionIdentity(
        user_id=str(row["user_id"]),
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        role=str(row["role"]),
    )


def delete_session(conn: sqlite3.Connection, session_id: str) -> None:
    conn.execute("DELETE FROM web_sessions WHERE id=?", (session_id,))
