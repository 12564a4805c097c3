"""Persistence models for beacon game sessions and player profiles."""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal, Self

from pydantic import AwareDatetime, BaseModel, Field, model_validator


class TemplateType(StrEnum):
    SOLO = "Solo"
    VERSUS = "Versus"
    GROUP = "Group"


class SessionStatus(StrEnum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class PlayerStatus(StrEnum):
    ACTIVE = "Active"
    ELIMINATED = "Eliminated"
    FORFEIT = "Forfeit"


class OutcomeResult(StrEnum):
    WON = "won"
    ELIMINATED = "eliminated"


class SoloOutcome(BaseModel, frozen=True, extra="forbid"):
    """Result of a Solo session, applied to its single participant."""

    template_type: Literal["Solo"] = "Solo"
    result: OutcomeResult


class GroupOutcome(BaseModel, frozen=True, extra="forbid"):
    """Result of a Group session, applied uniformly to every participant."""

    template_type: Literal["Group"] = "Group"
    result: OutcomeResult


class VersusOutcome(BaseModel, frozen=True, extra="forbid"):
    """Partition of a Versus session's participants into winners and eliminated."""

    template_type: Literal["Versus"] = "Versus"
    winners: frozenset[str]
    eliminated: frozenset[str]

    @model_validator(mode="after")
    def _validate_disjoint(self) -> Self:
        overlap = self.winners & self.eliminated
        if overlap:
            raise ValueError(f"Players cannot both win and be eliminated: {', '.join(sorted(overlap))}")
        return self


Outcome = Annotated[SoloOutcome | GroupOutcome | VersusOutcome, Field(discriminator="template_type")]


class GameSession(BaseModel, frozen=True):
    """One timed play of a game template at a beacon.

    Sessions are written twice at most: once at start, once when they
    complete or are cancelled. They are never deleted.
    """

    session_id: str
    beacon_id: str
    template_id: str
    template_type: TemplateType
    status: SessionStatus = SessionStatus.ACTIVE
    participants: tuple[str, ...]
    start_time: AwareDatetime
    end_time: AwareDatetime | None = None
    outcome: Outcome | None = None

    @model_validator(mode="after")
    def _validate_shape(self) -> Self:
        if not self.participants:
            raise ValueError("A session needs at least one participant")
        if len(set(self.participants)) != len(self.participants):
            raise ValueError("Duplicate participant in session")
        if self.template_type == TemplateType.SOLO and len(self.participants) != 1:
            raise ValueError("Solo sessions have exactly one participant")

        if self.status == SessionStatus.ACTIVE:
            if self.end_time is not None or self.outcome is not None:
                raise ValueError("Active sessions have no end time or outcome")
            return self

        if self.end_time is None:
            raise ValueError(f"{self.status} sessions must have an end time")
        if self.status == SessionStatus.CANCELLED:
            if self.outcome is not None:
                raise ValueError("Cancelled sessions have no outcome")
            return self

        if self.outcome is None:
            raise ValueError("Completed sessions must have an outcome")
        if self.outcome.template_type != self.template_type:
            raise ValueError(f"{self.outcome.template_type} outcome on a {self.template_type} session")
        if isinstance(self.outcome, VersusOutcome):
            if self.outcome.winners | self.outcome.eliminated != set(self.participants):
                raise ValueError("Versus outcome must cover exactly the session participants")
        return self


class PlayerProfile(BaseModel, frozen=True):
    """A registered player and their lifecycle status."""

    player_id: str
    username: str
    status: PlayerStatus = PlayerStatus.ACTIVE
    last_game_at: AwareDatetime | None = None  # end time of the latest completed session
    join_date: AwareDatetime

    @property
    def effective_activity(self) -> datetime:
        """Timestamp inactivity is measured from: last completed game, else join date."""
        return self.last_game_at if self.last_game_at is not None else self.join_date
