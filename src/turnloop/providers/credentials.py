"""Provider credential lookup.

Precedence: system (environment / settings), then tenant, then user.
"""

import logging
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass

from turnloop.config import Settings, get_settings
from turnloop.conversations.store import now_iso
from turnloop.db.connection import get_conn
from turnloop.ids import new_id

logger = logging.getLogger(__name__)

CREDENTIAL_SCOPES = ("tenant", "user")


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: str
    tenant_id: str | None = None


class CredentialResolver:
    def __init__(
        self,
        settings: Settings | None = None,
        conn_factory: Callable[[], AbstractContextManager[sqlite3.Connection]] | None = None,
    ) -> None:
        self._settings = settings
        self._conn_factory = conn_factory or get_conn

    def _system_key(self, provider_id: str) -> str | None:
        settings = self._settings or get_settings()
        value = {
            "openai": settings.openai_api_key,
            "anthropic": settings.anthropic_api_key,
        }.get(provider_id, "")
        return value.strip() or None

    def _stored_key(self, scope: str, principal_id: str, provider_id: str) -> str | None:
        with self._conn_factory() as conn:
            row = conn.execute(
                (
                    "SELECT api_key FROM credentials "
                    "WHERE scope=? AND principal_id=? AND provider_id=? LIMIT 1"
                ),
                (scope, principal_id, provider_id),
            ).fetchone()
        if row is None:
            return None
        return str(row["api_key"]).strip() or None

    def resolve(self, provider_id: str, principal: Principal) -> str | None:
        system_key = self._system_key(provider_id)
        if system_key:
            return system_key
        if principal.tenant_id:
            tenant_key = self._stored_key("tenant", principal.tenant_id, provider_id)
            if tenant_key:
                return tenant_key
        user_key = self._stored_key("user", principal.user_id, provider_id)
        if user_key is None:
            logger.info("No %s credential for user %s", provider_id, principal.user_id)
        return user_key

    def store(self, scope: str, principal_id: str, provider_id: str, api_key: str) -> None:
        if scope not in CREDENTIAL_SCOPES:
            raise ValueError(f"unknown credential scope '{scope}'")
        with self._conn_factory() as conn:
            conn.execute(
                (
                    "INSERT INTO credentials(id, scope, principal_id, provider_id, api_key, "
                    "updated_at) VALUES(?,?,?,?,?,?) "
                    "ON CONFLICT(scope, principal_id, provider_id) "
                    "DO UPDATE SET api_key=excluded.api_key, updated_at=excluded.updated_at"
                ),
                (new_id("crd"), scope, principal_id, provider_id, api_key.strip(), now_iso()),
            )
