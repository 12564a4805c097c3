"""Abstract storage contract for sessions and player profiles."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from shared.dal.models import GameSession, PlayerProfile, PlayerStatus, SessionStatus


class PersistenceError(Exception):
    """Storage-layer failure (connection lost, constraint violated, disk full)."""


class Transaction(ABC):
    """Reads and writes that commit or roll back together.

    Only valid inside the callable passed to PersistenceGateway.run_transaction.
    """

    @abstractmethod
    async def get_session(self, session_id: str) -> GameSession | None: ...

    @abstractmethod
    async def put_session(self, session: GameSession) -> None: ...

    @abstractmethod
    async def get_player(self, player_id: str) -> PlayerProfile | None: ...

    @abstractmethod
    async def put_player(self, player: PlayerProfile) -> None: ...


class PersistenceGateway(ABC):
    """Durable storage for sessions and players.

    Implementations can use SQLite, PostgreSQL, a remote datastore, etc. The
    only cross-writer guarantees the core relies on are run_transaction
    (all-or-nothing) and compare_and_set_player_status (atomic conditional
    update).
    """

    @abstractmethod
    async def get_session(self, session_id: str) -> GameSession | None: ...

    @abstractmethod
    async def put_session(self, session: GameSession) -> None: ...

    @abstractmethod
    async def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        beacon_id: str | None = None,
        template_id: str | None = None,
        player_id: str | None = None,
        limit: int = 50,
    ) -> list[GameSession]: ...

    @abstractmethod
    async def get_player(self, player_id: str) -> PlayerProfile | None: ...

    @abstractmethod
    async def put_player(self, player: PlayerProfile) -> None: ...

    @abstractmethod
    async def list_active_players(self) -> list[PlayerProfile]: ...

    @abstractmethod
    async def list_active_players_older_than(self, cutoff: datetime) -> list[str]:
        """Return ids of Active players whose effective activity is strictly before cutoff."""

    @abstractmethod
    async def compare_and_set_player_status(
        self,
        player_id: str,
        expected_status: PlayerStatus,
        expected_activity: datetime,
        new_status: PlayerStatus,
    ) -> bool:
        """Set new_status only if status and effective activity still match.

        Returns False when no record was changed.
        """

    @abstractmethod
    async def run_transaction[T](self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run fn against a transaction; commit on return, roll back on any exception."""
