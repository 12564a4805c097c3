"""Builders shared by beacon tests."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from shared.dal.models import PlayerProfile, PlayerStatus

if TYPE_CHECKING:
    from datetime import timedelta

    from shared.dal.gateway import PersistenceGateway

EPOCH = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock, injected wherever the code asks for the time."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def make_player(
    player_id: str,
    *,
    username: str | None = None,
    status: PlayerStatus = PlayerStatus.ACTIVE,
    join_date: datetime = EPOCH,
    last_game_at: datetime | None = None,
) -> PlayerProfile:
    return PlayerProfile(
        player_id=player_id,
        username=username or player_id.capitalize(),
        status=status,
        join_date=join_date,
        last_game_at=last_game_at,
    )


async def seed_players(gateway: PersistenceGateway, *players: PlayerProfile) -> None:
    for player in players:
        await gateway.put_player(player)
