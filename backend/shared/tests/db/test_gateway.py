"""Tests for SqlitePersistenceGateway."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from shared.dal.gateway import PersistenceError
from shared.dal.models import (
    GameSession,
    PlayerProfile,
    PlayerStatus,
    SessionStatus,
    TemplateType,
)
from shared.db.connection import Database
from shared.db.gateway import SqlitePersistenceGateway

if TYPE_CHECKING:
    from pathlib import Path

    from shared.dal.gateway import Transaction

JOINED = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def _player(player_id: str = "p1", **overrides) -> PlayerProfile:
    fields = {"player_id": player_id, "username": player_id.upper(), "join_date": JOINED}
    fields.update(overrides)
    return PlayerProfile(**fields)


def _session(
    session_id: str,
    *,
    participants: tuple[str, ...] = ("p1", "p2"),
    beacon_id: str = "beacon-1",
    template_id: str = "tpl-1",
    start_time: datetime = JOINED,
) -> GameSession:
    return GameSession(
        session_id=session_id,
        beacon_id=beacon_id,
        template_id=template_id,
        template_type=TemplateType.VERSUS,
        participants=participants,
        start_time=start_time,
    )


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def gateway(db: Database) -> SqlitePersistenceGateway:
    return SqlitePersistenceGateway(db)


class TestSessions:
    async def test_put_and_get(self, gateway: SqlitePersistenceGateway) -> None:
        session = _session("s1")
        await gateway.put_session(session)

        assert await gateway.get_session("s1") == session

    async def test_get_unknown_returns_none(self, gateway: SqlitePersistenceGateway) -> None:
        assert await gateway.get_session("nope") is None

    async def test_put_overwrites_status(self, gateway: SqlitePersistenceGateway) -> None:
        session = _session("s1")
        await gateway.put_session(session)
        cancelled = session.model_copy(
            update={"status": SessionStatus.CANCELLED, "end_time": JOINED + timedelta(hours=1)},
        )
        await gateway.put_session(cancelled)

        result = await gateway.get_session("s1")
        assert result is not None
        assert result.status == SessionStatus.CANCELLED
        assert await gateway.list_sessions(status=SessionStatus.ACTIVE) == []


class TestListSessions:
    @pytest.fixture
    async def seeded(self, gateway: SqlitePersistenceGateway) -> SqlitePersistenceGateway:
        await gateway.put_session(_session("s1", participants=("p1", "p2"), start_time=JOINED))
        await gateway.put_session(
            _session("s2", participants=("p2", "p3"), beacon_id="beacon-2", start_time=JOINED + timedelta(hours=1)),
        )
        await gateway.put_session(
            _session("s3", participants=("p1", "p3"), template_id="tpl-2", start_time=JOINED + timedelta(hours=2)),
        )
        return gateway

    async def test_newest_first(self, seeded: SqlitePersistenceGateway) -> None:
        sessions = await seeded.list_sessions()
        assert [s.session_id for s in sessions] == ["s3", "s2", "s1"]

    async def test_limit(self, seeded: SqlitePersistenceGateway) -> None:
        sessions = await seeded.list_sessions(limit=2)
        assert [s.session_id for s in sessions] == ["s3", "s2"]

    async def test_filter_by_participant(self, seeded: SqlitePersistenceGateway) -> None:
        sessions = await seeded.list_sessions(player_id="p1")
        assert [s.session_id for s in sessions] == ["s3", "s1"]

    async def test_participant_filter_matches_whole_ids(self, seeded: SqlitePersistenceGateway) -> None:
        await seeded.put_session(_session("s4", participants=("p10", "p20")))
        sessions = await seeded.list_sessions(player_id="p1")
        assert "s4" not in [s.session_id for s in sessions]

    async def test_filter_by_beacon_and_template(self, seeded: SqlitePersistenceGateway) -> None:
        assert [s.session_id for s in await seeded.list_sessions(beacon_id="beacon-2")] == ["s2"]
        assert [s.session_id for s in await seeded.list_sessions(template_id="tpl-2")] == ["s3"]
        assert await seeded.list_sessions(beacon_id="beacon-2", template_id="tpl-2") == []


class TestPlayers:
    async def test_put_and_get(self, gateway: SqlitePersistenceGateway) -> None:
        player = _player()
        await gateway.put_player(player)
        assert await gateway.get_player("p1") == player

    async def test_get_unknown_returns_none(self, gateway: SqlitePersistenceGateway) -> None:
        assert await gateway.get_player("ghost") is None

    async def test_list_active_players_skips_other_statuses(self, gateway: SqlitePersistenceGateway) -> None:
        await gateway.put_player(_player("p1"))
        await gateway.put_player(_player("p2", status=PlayerStatus.ELIMINATED))
        await gateway.put_player(_player("p3", status=PlayerStatus.FORFEIT))

        active = await gateway.list_active_players()
        assert [p.player_id for p in active] == ["p1"]

    async def test_older_than_uses_last_game_then_join_date(self, gateway: SqlitePersistenceGateway) -> None:
        cutoff = JOINED + timedelta(days=10)
        await gateway.put_player(_player("never-played"))
        await gateway.put_player(_player("played-early", last_game_at=JOINED + timedelta(days=5)))
        await gateway.put_player(_player("played-recently", last_game_at=JOINED + timedelta(days=11)))
        await gateway.put_player(_player("eliminated", status=PlayerStatus.ELIMINATED))

        overdue = await gateway.list_active_players_older_than(cutoff)
        assert overdue == ["never-played", "played-early"]

    async def test_older_than_is_strict(self, gateway: SqlitePersistenceGateway) -> None:
        await gateway.put_player(_player("p1"))
        assert await gateway.list_active_players_older_than(JOINED) == []


class TestCompareAndSet:
    async def test_applies_when_state_matches(self, gateway: SqlitePersistenceGateway) -> None:
        await gateway.put_player(_player())

        applied = await gateway.compare_and_set_player_status("p1", PlayerStatus.ACTIVE, JOINED, PlayerStatus.FORFEIT)

        assert applied is True
        player = await gateway.get_player("p1")
        assert player is not None
        assert player.status == PlayerStatus.FORFEIT

    async def test_second_identical_call_does_not_apply(self, gateway: SqlitePersistenceGateway) -> None:
        await gateway.put_player(_player())

        first = await gateway.compare_and_set_player_status("p1", PlayerStatus.ACTIVE, JOINED, PlayerStatus.FORFEIT)
        second = await gateway.compare_and_set_player_status("p1", PlayerStatus.ACTIVE, JOINED, PlayerStatus.FORFEIT)

        assert (first, second) == (True, False)

    async def test_rejects_stale_activity(self, gateway: SqlitePersistenceGateway) -> None:
        played = JOINED + timedelta(days=2)
        await gateway.put_player(_player(last_game_at=played))

        applied = await gateway.compare_and_set_player_status("p1", PlayerStatus.ACTIVE, JOINED, PlayerStatus.FORFEIT)

        assert applied is False
        player = await gateway.get_player("p1")
        assert player is not None
        assert player.status == PlayerStatus.ACTIVE

    async def test_unknown_player_does_not_apply(self, gateway: SqlitePersistenceGateway) -> None:
        assert not await gateway.compare_and_set_player_status(
            "ghost",
            PlayerStatus.ACTIVE,
            JOINED,
            PlayerStatus.FORFEIT,
        )


class TestRunTransaction:
    async def test_commits_all_writes(self, gateway: SqlitePersistenceGateway) -> None:
        async def _write(tx: Transaction) -> str:
            await tx.put_player(_player("p1"))
            await tx.put_player(_player("p2"))
            await tx.put_session(_session("s1"))
            return "done"

        assert await gateway.run_transaction(_write) == "done"
        assert await gateway.get_player("p2") is not None
        assert await gateway.get_session("s1") is not None

    async def test_reads_see_own_writes(self, gateway: SqlitePersistenceGateway) -> None:
        async def _write_then_read(tx: Transaction) -> PlayerProfile | None:
            await tx.put_player(_player("p1"))
            return await tx.get_player("p1")

        assert await gateway.run_transaction(_write_then_read) is not None

    async def test_rolls_back_on_error(self, gateway: SqlitePersistenceGateway) -> None:
        await gateway.put_player(_player("p1"))

        async def _fail(tx: Transaction) -> None:
            await tx.put_player(_player("p1", status=PlayerStatus.ELIMINATED))
            await tx.put_session(_session("s1"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await gateway.run_transaction(_fail)

        player = await gateway.get_player("p1")
        assert player is not None
        assert player.status == PlayerStatus.ACTIVE
        assert await gateway.get_session("s1") is None

    async def test_gateway_usable_after_rollback(self, gateway: SqlitePersistenceGateway) -> None:
        async def _fail(_tx: Transaction) -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await gateway.run_transaction(_fail)

        await gateway.put_player(_player("p9"))
        assert await gateway.get_player("p9") is not None


class TestStorageErrors:
    async def test_sqlite_errors_become_persistence_errors(self, db: Database, gateway: SqlitePersistenceGateway) -> None:
        db.connection.execute("DROP TABLE players")

        with pytest.raises(PersistenceError, match="get_player failed") as exc_info:
            await gateway.get_player("p1")
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    async def test_failed_write_inside_transaction_rolls_back(
        self,
        db: Database,
        gateway: SqlitePersistenceGateway,
    ) -> None:
        db.connection.execute("DROP TABLE game_sessions")

        async def _write(tx: Transaction) -> None:
            await tx.put_player(_player("p1"))
            await tx.put_session(_session("s1"))

        with pytest.raises(PersistenceError):
            await gateway.run_transaction(_write)
        assert await gateway.get_player("p1") is None
