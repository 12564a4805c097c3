"""Session lifecycle: start, complete with an outcome, or cancel."""

from __future__ import annotations

import secrets
import string
import time
from typing import TYPE_CHECKING, Any

import structlog

from beacon.clock import utc_now
from beacon.errors import InvalidInput, InvalidStateTransition, NotFound, PersistenceError
from beacon.lifecycle import PlayerLifecycle
from beacon.outcomes import losing_participants, parse_outcome, participant_outcome
from shared.dal.models import GameSession, PlayerStatus, SessionStatus, TemplateType

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from beacon.clock import Clock
    from shared.dal.gateway import PersistenceGateway, Transaction
    from shared.dal.models import Outcome, OutcomeResult, PlayerProfile

logger = structlog.get_logger()

_ID_ALPHABET = string.ascii_uppercase + string.digits
_MAX_ID_ATTEMPTS = 5
MAX_LIST_LIMIT = 500


def new_session_id() -> str:
    """Session id in the form BG-<last 8 digits of epoch ms>-<4 random chars>."""
    stamp = str(time.time_ns() // 1_000_000)[-8:]
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"BG-{stamp}-{suffix}"


def _ensure_active(session: GameSession, action: str) -> None:
    if session.status != SessionStatus.ACTIVE:
        raise InvalidStateTransition(f"Cannot {action} session {session.session_id}: it is {session.status}")


def _validate_participants(template_type: TemplateType, participants: Sequence[str]) -> tuple[str, ...]:
    roster = tuple(participants)
    if not roster:
        raise InvalidInput("A session needs at least one participant")
    if len(set(roster)) != len(roster):
        raise InvalidInput("Duplicate participant in session")
    if template_type == TemplateType.SOLO and len(roster) != 1:
        raise InvalidInput(f"Solo sessions take exactly one participant, got {len(roster)}")
    return roster


class OutcomeResolver:
    """Start, complete and cancel beacon game sessions.

    Completion commits the session and every participant's activity and
    status in a single gateway transaction.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        lifecycle: PlayerLifecycle | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._gateway = gateway
        self._lifecycle = lifecycle or PlayerLifecycle(gateway)
        self._clock = clock

    async def start_session(
        self,
        beacon_id: str,
        template_id: str,
        template_type: TemplateType | str,
        participants: Sequence[str],
    ) -> GameSession:
        """Create an Active session. Only Active players can join."""
        try:
            kind = TemplateType(template_type)
        except ValueError as exc:
            raise InvalidInput(f"Unknown template type {template_type!r}") from exc
        roster = _validate_participants(kind, participants)
        start_time = self._clock()

        async def _create(tx: Transaction) -> GameSession:
            for player_id in roster:
                player = await tx.get_player(player_id)
                if player is None:
                    raise NotFound(f"Player {player_id} not found")
                if player.status != PlayerStatus.ACTIVE:
                    raise InvalidInput(f"Only active players can join a session; {player_id} is {player.status}")

            for _ in range(_MAX_ID_ATTEMPTS):
                session_id = new_session_id()
                if await tx.get_session(session_id) is None:
                    break
            else:  # pragma: no cover
                raise PersistenceError("Could not allocate a unique session id")

            session = GameSession(
                session_id=session_id,
                beacon_id=beacon_id,
                template_id=template_id,
                template_type=kind,
                participants=roster,
                start_time=start_time,
            )
            await tx.put_session(session)
            return session

        session = await self._gateway.run_transaction(_create)
        logger.info(
            "session started",
            session_id=session.session_id,
            beacon_id=beacon_id,
            template_type=kind,
            participants=len(roster),
        )
        return session

    async def complete_session(self, session_id: str, raw_outcome: Mapping[str, Any] | Outcome) -> GameSession:
        """Record the outcome, stamp every participant's activity, eliminate the losers.

        Winners keep their status; a Forfeit winner stays Forfeit until
        explicitly reinstated.
        """
        session = await self._require_session(session_id)
        _ensure_active(session, "complete")
        outcome = parse_outcome(session.template_type, session.participants, raw_outcome)

        async def _commit(tx: Transaction) -> tuple[GameSession, frozenset[str]]:
            current = await tx.get_session(session_id)
            if current is None:
                raise NotFound(f"Session {session_id} not found")
            _ensure_active(current, "complete")
            # stamped under the transaction lock: end_time order is commit order
            end_time = self._clock()

            completed = GameSession(
                **current.model_dump(exclude={"status", "end_time", "outcome"}),
                status=SessionStatus.COMPLETED,
                end_time=end_time,
                outcome=outcome,
            )
            losers = losing_participants(outcome, completed.participants)

            updated: list[PlayerProfile] = []
            for player_id in completed.participants:
                player = await tx.get_player(player_id)
                if player is None:
                    raise NotFound(f"Player {player_id} not found")
                player = player.model_copy(update={"last_game_at": end_time})
                if player_id in losers:
                    player = self._lifecycle.eliminate(player)
                updated.append(player)

            await tx.put_session(completed)
            for player in updated:
                await tx.put_player(player)
            return completed, losers

        completed, losers = await self._gateway.run_transaction(_commit)
        logger.info(
            "session completed",
            session_id=session_id,
            template_type=completed.template_type,
            eliminated=len(losers),
            participants=len(completed.participants),
        )
        return completed

    async def cancel_session(self, session_id: str) -> GameSession:
        """Mark an Active session Cancelled. Participants are left untouched."""
        session = await self._require_session(session_id)
        _ensure_active(session, "cancel")

        async def _cancel(tx: Transaction) -> GameSession:
            current = await tx.get_session(session_id)
            if current is None:
                raise NotFound(f"Session {session_id} not found")
            _ensure_active(current, "cancel")
            end_time = self._clock()
            cancelled = current.model_copy(update={"status": SessionStatus.CANCELLED, "end_time": end_time})
            await tx.put_session(cancelled)
            return cancelled

        cancelled = await self._gateway.run_transaction(_cancel)
        logger.info("session cancelled", session_id=session_id)
        return cancelled

    async def get_session(self, session_id: str) -> GameSession:
        return await self._require_session(session_id)

    async def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        beacon_id: str | None = None,
        template_id: str | None = None,
        player_id: str | None = None,
        limit: int = 50,
    ) -> list[GameSession]:
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {MAX_LIST_LIMIT}, got {limit}")
        return await self._gateway.list_sessions(
            status=status,
            beacon_id=beacon_id,
            template_id=template_id,
            player_id=player_id,
            limit=limit,
        )

    async def get_player(self, player_id: str) -> PlayerProfile:
        player = await self._gateway.get_player(player_id)
        if player is None:
            raise NotFound(f"Player {player_id} not found")
        return player

    async def player_history(
        self,
        player_id: str,
        limit: int = 10,
    ) -> list[tuple[GameSession, OutcomeResult | None]]:
        """Sessions the player took part in, newest first, with their personal result."""
        await self.get_player(player_id)
        sessions = await self.list_sessions(player_id=player_id, limit=limit)
        return [(session, participant_outcome(session, player_id)) for session in sessions]

    async def _require_session(self, session_id: str) -> GameSession:
        session = await self._gateway.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session
