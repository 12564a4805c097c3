"""SQLite-backed persistence gateway."""

from __future__ import annotations

import asyncio
import contextlib
import json
import sqlite3
from datetime import UTC
from typing import TYPE_CHECKING

import structlog

from shared.dal.gateway import PersistenceError, PersistenceGateway, Transaction
from shared.dal.models import GameSession, PlayerProfile, PlayerStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator
    from datetime import datetime

    from shared.dal.models import SessionStatus
    from shared.db.connection import Database

logger = structlog.get_logger()


def _ts(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp, so text comparison in SQL matches time order."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


@contextlib.contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("ROLLBACK")


def _select_session(conn: sqlite3.Connection, session_id: str) -> GameSession | None:
    row = conn.execute("SELECT data FROM game_sessions WHERE id = ?", (session_id,)).fetchone()
    if row is None:
        return None
    return GameSession.model_validate(json.loads(row[0]))


def _upsert_session(conn: sqlite3.Connection, session: GameSession) -> None:
    conn.execute(
        "INSERT INTO game_sessions (id, beacon_id, template_id, status, start_time, end_time, data) "
        "VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET "
        "  status = excluded.status, "
        "  end_time = excluded.end_time, "
        "  data = excluded.data",
        (
            session.session_id,
            session.beacon_id,
            session.template_id,
            str(session.status),
            _ts(session.start_time),
            _ts(session.end_time) if session.end_time else None,
            session.model_dump_json(),
        ),
    )


def _select_player(conn: sqlite3.Connection, player_id: str) -> PlayerProfile | None:
    row = conn.execute("SELECT data FROM players WHERE id = ?", (player_id,)).fetchone()
    if row is None:
        return None
    return PlayerProfile.model_validate(json.loads(row[0]))


def _upsert_player(conn: sqlite3.Connection, player: PlayerProfile) -> None:
    conn.execute(
        "INSERT INTO players (id, username, status, last_game_at, join_date, data) "
        "VALUES (?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET "
        "  username = excluded.username, "
        "  status = excluded.status, "
        "  last_game_at = excluded.last_game_at, "
        "  data = excluded.data",
        (
            player.player_id,
            player.username,
            str(player.status),
            _ts(player.last_game_at) if player.last_game_at else None,
            _ts(player.join_date),
            player.model_dump_json(),
        ),
    )


class _SqliteTransaction(Transaction):
    """Transaction view over a connection with an open BEGIN."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def get_session(self, session_id: str) -> GameSession | None:
        return _select_session(self._conn, session_id)

    async def put_session(self, session: GameSession) -> None:
        _upsert_session(self._conn, session)

    async def get_player(self, player_id: str) -> PlayerProfile | None:
        return _select_player(self._conn, player_id)

    async def put_player(self, player: PlayerProfile) -> None:
        _upsert_player(self._conn, player)


class SqlitePersistenceGateway(PersistenceGateway):
    """SQLite implementation of PersistenceGateway.

    All access goes through one asyncio lock, so reads never observe an open
    transaction from this process. Cross-process safety comes from SQLite
    itself: transactions use BEGIN IMMEDIATE and compare-and-set is a single
    conditional UPDATE.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def get_session(self, session_id: str) -> GameSession | None:
        async with self._lock:
            with _storage_errors("get_session"):
                return _select_session(self._db.connection, session_id)

    async def put_session(self, session: GameSession) -> None:
        async with self._lock:
            conn = self._db.connection
            try:
                with _storage_errors("put_session"):
                    _upsert_session(conn, session)
                    conn.commit()
            except PersistenceError:
                _rollback(conn)
                raise

    async def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        beacon_id: str | None = None,
        template_id: str | None = None,
        player_id: str | None = None,
        limit: int = 50,
    ) -> list[GameSession]:
        """List sessions newest first, optionally filtered.

        Participant lookups use json_each over the stored snapshot.
        """
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        if beacon_id is not None:
            clauses.append("beacon_id = ?")
            params.append(beacon_id)
        if template_id is not None:
            clauses.append("template_id = ?")
            params.append(template_id)
        if player_id is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(game_sessions.data, '$.participants') WHERE value = ?)")
            params.append(player_id)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.append(limit)

        async with self._lock:
            with _storage_errors("list_sessions"):
                rows = self._db.connection.execute(
                    f"SELECT data FROM game_sessions {where}ORDER BY start_time DESC LIMIT ?",  # noqa: S608
                    params,
                ).fetchall()
        return [GameSession.model_validate(json.loads(row[0])) for row in rows]

    async def get_player(self, player_id: str) -> PlayerProfile | None:
        async with self._lock:
            with _storage_errors("get_player"):
                return _select_player(self._db.connection, player_id)

    async def put_player(self, player: PlayerProfile) -> None:
        async with self._lock:
            conn = self._db.connection
            try:
                with _storage_errors("put_player"):
                    _upsert_player(conn, player)
                    conn.commit()
            except PersistenceError:
                _rollback(conn)
                raise

    async def list_active_players(self) -> list[PlayerProfile]:
        async with self._lock:
            with _storage_errors("list_active_players"):
                rows = self._db.connection.execute(
                    "SELECT data FROM players WHERE status = ? ORDER BY COALESCE(last_game_at, join_date)",
                    (str(PlayerStatus.ACTIVE),),
                ).fetchall()
        return [PlayerProfile.model_validate(json.loads(row[0])) for row in rows]

    async def list_active_players_older_than(self, cutoff: datetime) -> list[str]:
        async with self._lock:
            with _storage_errors("list_active_players_older_than"):
                rows = self._db.connection.execute(
                    "SELECT id FROM players WHERE status = ? AND COALESCE(last_game_at, join_date) < ? "
                    "ORDER BY COALESCE(last_game_at, join_date)",
                    (str(PlayerStatus.ACTIVE), _ts(cutoff)),
                ).fetchall()
        return [row[0] for row in rows]

    async def compare_and_set_player_status(
        self,
        player_id: str,
        expected_status: PlayerStatus,
        expected_activity: datetime,
        new_status: PlayerStatus,
    ) -> bool:
        async with self._lock:
            conn = self._db.connection
            try:
                with _storage_errors("compare_and_set_player_status"):
                    cursor = conn.execute(
                        "UPDATE players SET "
                        "status = ?, "
                        "data = json_set(data, '$.status', ?) "
                        "WHERE id = ? AND status = ? AND COALESCE(last_game_at, join_date) = ?",
                        (
                            str(new_status),
                            str(new_status),
                            player_id,
                            str(expected_status),
                            _ts(expected_activity),
                        ),
                    )
                    conn.commit()
            except PersistenceError:
                _rollback(conn)
                raise
        if cursor.rowcount == 0:
            logger.debug("compare-and-set matched no record", player_id=player_id, expected_status=expected_status)
            return False
        return True

    async def run_transaction[T](self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run fn inside BEGIN IMMEDIATE; commit on return, roll back on any exception."""
        async with self._lock:
            conn = self._db.connection
            try:
                with _storage_errors("run_transaction"):
                    conn.execute("BEGIN IMMEDIATE")
                    result = await fn(_SqliteTransaction(conn))
                    conn.execute("COMMIT")
            except BaseException:
                _rollback(conn)
                raise
            return result
