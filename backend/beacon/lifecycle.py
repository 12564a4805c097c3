"""Player lifecycle state machine.

    Active --(loss in a completed session)--> Eliminated
    Active --(inactivity, scheduler only)---> Forfeit
    Eliminated | Forfeit --(reinstate)------> Active

Every status change goes through this module.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from beacon.errors import ConcurrencyConflict, NotFound
from shared.dal.models import PlayerProfile, PlayerStatus

if TYPE_CHECKING:
    from datetime import datetime

    from shared.dal.gateway import PersistenceGateway

logger = structlog.get_logger()


def is_overdue(player: PlayerProfile, cutoff: datetime) -> bool:
    """Whether an Active player has been inactive since before cutoff."""
    return player.status == PlayerStatus.ACTIVE and player.effective_activity < cutoff


class PlayerLifecycle:
    """Apply the three named player status transitions."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    @staticmethod
    def eliminate(player: PlayerProfile) -> PlayerProfile:
        """Return the player marked Eliminated after losing a session.

        Pure; the caller writes the result inside its session transaction.
        """
        if player.status == PlayerStatus.ELIMINATED:
            return player
        return player.model_copy(update={"status": PlayerStatus.ELIMINATED})

    async def forfeit(self, player_id: str, expected_activity: datetime) -> None:
        """Move an Active player to Forfeit if nothing changed since it was read.

        Raises ConcurrencyConflict when the conditional update matched no record.
        """
        applied = await self._gateway.compare_and_set_player_status(
            player_id,
            PlayerStatus.ACTIVE,
            expected_activity,
            PlayerStatus.FORFEIT,
        )
        if not applied:
            raise ConcurrencyConflict(f"Player {player_id} changed before it could be forfeited")

    async def reinstate_player(self, player_id: str) -> PlayerProfile:
        """Return an Eliminated or Forfeit player to Active.

        Idempotent: an already Active player is returned unchanged. Leaves
        last_game_at untouched.
        """
        player = await self._gateway.get_player(player_id)
        if player is None:
            raise NotFound(f"Player {player_id} not found")
        if player.status == PlayerStatus.ACTIVE:
            return player

        applied = await self._gateway.compare_and_set_player_status(
            player_id,
            player.status,
            player.effective_activity,
            PlayerStatus.ACTIVE,
        )
        current = await self._gateway.get_player(player_id)
        if current is None:
            raise NotFound(f"Player {player_id} not found")
        if applied:
            logger.info("player reinstated", player_id=player_id, previous_status=player.status)
        elif current.status != PlayerStatus.ACTIVE:
            raise ConcurrencyConflict(f"Player {player_id} changed while being reinstated")
        return current
