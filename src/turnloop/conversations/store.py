"""Conversation store: continuity handles, replay log and the turn ledger.

The store is the only component that persists cross-turn state. The
orchestrator reads a handle at the start of a turn and writes the
continuity token at most once, when the turn completes.
"""

import sqlite3
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, Protocol

from turnloop.db.connection import get_conn
from turnloop.errors import TurnloopError
from turnloop.ids import new_id

Purpose = Literal["chat", "run"]
PURPOSES: frozenset[str] = frozenset({"chat", "run"})


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class ConversationHandle:
    id: str
    family_id: str
    participant_id: str
    purpose: str
    provider_id: str
    continuity_token: str | None
    last_updated: str


@dataclass(frozen=True, slots=True)
class Message:
    role: str
    content: str


@dataclass(slots=True)
class TurnRecord:
    id: str
    handle_id: str
    model: str
    state: str
    response_id: str | None
    input_tokens: int
    output_tokens: int
    error_code: str | None
    error_message: str | None
    started_at: str
    finished_at: str | None


class ConversationStore(Protocol):
    def get_handle(
        self, family_id: str, participant_id: str, purpose: str, provider_id: str
    ) -> ConversationHandle | None: ...

    def get_or_create_handle(
        self, family_id: str, participant_id: str, purpose: str, provider_id: str
    ) -> ConversationHandle: ...

    def upsert_continuity_token(self, handle_id: str, token: str | None) -> None: ...

    def get_recent_messages(self, handle_id: str, limit: int) -> list[Message]: ...

    def append_messages(self, handle_id: str, messages: Sequence[Message]) -> None: ...

    def start_turn(self, handle_id: str, model: str) -> str: ...

    def finish_turn(
        self,
        turn_id: str,
        state: str,
        *,
        response_id: str | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None: ...


def _row_to_handle(row: sqlite3.Row) -> ConversationHandle:
    return ConversationHandle(
        id=str(row["id"]),
        family_id=str(row["family_id"]),
        participant_id=str(row["participant_id"]),
        purpose=str(row["purpose"]),
        provider_id=str(row["provider_id"]),
        continuity_token=(
            str(row["continuity_token"]) if row["continuity_token"] is not None else None
        ),
        last_updated=str(row["last_updated"]),
    )


class SqliteConversationStore:
    """ConversationStore backed by the service sqlite database.

    Each call opens its own short-lived connection so that the store can be
    shared by concurrent turns without holding a write lock across awaits.
    """

    def __init__(
        self,
        conn_factory: Callable[[], AbstractContextManager[sqlite3.Connection]] | None = None,
    ) -> None:
        self._conn_factory = conn_factory or get_conn

    def _conn(self) -> AbstractContextManager[sqlite3.Connection]:
        return self._conn_factory()

    def get_handle(
        self, family_id: str, participant_id: str, purpose: str, provider_id: str
    ) -> ConversationHandle | None:
        with self._conn() as conn:
            row = conn.execute(
                (
                    "SELECT * FROM conversation_handles "
                    "WHERE family_id=? AND participant_id=? AND purpose=? "
                    "AND provider_id=? AND is_active=1 LIMIT 1"
                ),
                (family_id, participant_id, purpose, provider_id),
            ).fetchone()
        return _row_to_handle(row) if row is not None else None

    def get_or_create_handle(
        self, family_id: str, participant_id: str, purpose: str, provider_id: str
    ) -> ConversationHandle:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown purpose '{purpose}'")
        existing = self.get_handle(family_id, participant_id, purpose, provider_id)
        if existing is not None:
            return existing
        handle_id = new_id("cnv")
        stamp = now_iso()
        with self._conn() as conn:
            conn.execute(
                (
                    "INSERT OR IGNORE INTO conversation_handles("
                    "id, family_id, participant_id, purpose, provider_id, "
                    "continuity_token, is_active, created_at, last_updated"
                    ") VALUES(?,?,?,?,?,NULL,1,?,?)"
                ),
                (handle_id, family_id, participant_id, purpose, provider_id, stamp, stamp),
            )
        # A concurrent first contact may have won the insert; re-read.
        created = self.get_handle(family_id, participant_id, purpose, provider_id)
        if created is None:
            raise TurnloopError(f"conversation handle for family {family_id} was not persisted")
        return created

    def upsert_continuity_token(self, handle_id: str, token: str | None) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE conversation_handles SET continuity_token=?, last_updated=? WHERE id=?",
                (token, now_iso(), handle_id),
            )

    def get_continuity_token(self, handle_id: str) -> str | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT continuity_token FROM conversation_handles WHERE id=?",
                (handle_id,),
            ).fetchone()
        if row is None or row["continuity_token"] is None:
            return None
        return str(row["continuity_token"])

    def get_recent_messages(self, handle_id: str, limit: int) -> list[Message]:
        with self._conn() as conn:
            rows = conn.execute(
                (
                    "SELECT role, content FROM conversation_messages WHERE handle_id=? "
                    "ORDER BY seq DESC LIMIT ?"
                ),
                (handle_id, max(0, limit)),
            ).fetchall()
        return [Message(role=str(r["role"]), content=str(r["content"])) for r in reversed(rows)]

    def append_messages(self, handle_id: str, messages: Sequence[Message]) -> None:
        if not messages:
            return
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM conversation_messages WHERE handle_id=?",
                (handle_id,),
            ).fetchone()
            seq = int(row["seq"]) if row is not None else 0
            for message in messages:
                seq += 1
                conn.execute(
                    (
                        "INSERT INTO conversation_messages("
                        "id, handle_id, role, content, created_at, seq"
                        ") VALUES(?,?,?,?,?,?)"
                    ),
                    (new_id("msg"), handle_id, message.role, message.content, now_iso(), seq),
                )

    def start_turn(self, handle_id: str, model: str) -> str:
        turn_id = new_id("trn")
        with self._conn() as conn:
            conn.execute(
                (
                    "INSERT INTO turns(id, handle_id, model, state, started_at) "
                    "VALUES(?,?,?,?,?)"
                ),
                (turn_id, handle_id, model, "requesting", now_iso()),
            )
        return turn_id

    def finish_turn(
        self,
        turn_id: str,
        state: str,
        *,
        response_id: str | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                (
                    "UPDATE turns SET state=?, response_id=?, input_tokens=?, "
                    "output_tokens=?, error_code=?, error_message=?, finished_at=? "
                    "WHERE id=?"
                ),
                (
                    state,
                    response_id,
                    int(input_tokens),
                    int(output_tokens),
                    error_code,
                    error_message[:1000] if error_message else None,
                    now_iso(),
                    turn_id,
                ),
            )

    def get_turn(self, turn_id: str) -> TurnRecord | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM turns WHERE id=?", (turn_id,)).fetchone()
        if row is None:
            return None
        return TurnRecord(
            id=str(row["id"]),
            handle_id=str(row["handle_id"]),
            model=str(row["model"]),
            state=str(row["state"]),
            response_id=row["response_id"],
            input_tokens=int(row["input_tokens"]),
            output_tokens=int(row["output_tokens"]),
            error_code=row["error_code"],
            error_message=row["error_message"],
            started_at=str(row["started_at"]),
            finished_at=row["finished_at"],
        )

