"""Outcome parsing and per-participant result derivation.

Each template type has exactly one outcome shape:

- Solo:   {"result": "won" | "eliminated"} for the single participant
- Group:  {"result": "won" | "eliminated"} applied to every participant
- Versus: {"winners": [...], "eliminated": [...]} partitioning the participants
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, assert_never

import pydantic

from beacon.errors import ValidationError
from shared.dal.models import (
    GroupOutcome,
    OutcomeResult,
    SessionStatus,
    SoloOutcome,
    TemplateType,
    VersusOutcome,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shared.dal.models import GameSession, Outcome


def _model_for(template_type: TemplateType) -> type[SoloOutcome | GroupOutcome | VersusOutcome]:
    match template_type:
        case TemplateType.SOLO:
            return SoloOutcome
        case TemplateType.GROUP:
            return GroupOutcome
        case TemplateType.VERSUS:
            return VersusOutcome
        case _:
            assert_never(template_type)


def parse_outcome(
    template_type: TemplateType,
    participants: Sequence[str],
    raw_outcome: Mapping[str, Any] | Outcome,
) -> Outcome:
    """Validate a raw outcome against the session's template type and participants.

    Accepts either a mapping (the template tag is optional) or an already
    built outcome model. Raises ValidationError on any mismatch.
    """
    model = _model_for(template_type)
    if isinstance(raw_outcome, Mapping):
        payload = dict(raw_outcome)
        payload.setdefault("template_type", str(template_type))
        try:
            outcome = model.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid {template_type} outcome: {exc}") from exc
    elif isinstance(raw_outcome, model):
        outcome = raw_outcome
    else:
        raise ValidationError(f"{type(raw_outcome).__name__} does not fit a {template_type} session")

    if isinstance(outcome, VersusOutcome):
        expected = set(participants)
        declared = outcome.winners | outcome.eliminated
        unknown = declared - expected
        missing = expected - declared
        if unknown:
            raise ValidationError(f"Outcome names non-participants: {', '.join(sorted(unknown))}")
        if missing:
            raise ValidationError(f"Outcome leaves participants unresolved: {', '.join(sorted(missing))}")
    return outcome


def losing_participants(outcome: Outcome, participants: Sequence[str]) -> frozenset[str]:
    """Participants whose result is a loss."""
    match outcome:
        case SoloOutcome() | GroupOutcome():
            return frozenset(participants) if outcome.result == OutcomeResult.ELIMINATED else frozenset()
        case VersusOutcome():
            return outcome.eliminated
        case _:
            assert_never(outcome)


def participant_outcome(session: GameSession, player_id: str) -> OutcomeResult | None:
    """Result for one participant of a completed session, None otherwise."""
    if session.status != SessionStatus.COMPLETED or session.outcome is None:
        return None
    if player_id not in session.participants:
        return None
    if player_id in losing_participants(session.outcome, session.participants):
        return OutcomeResult.ELIMINATED
    return OutcomeResult.WON
