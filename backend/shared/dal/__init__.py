"""Data access layer: storage contract and shared persistence models."""

from shared.dal.gateway import PersistenceError, PersistenceGateway, Transaction
from shared.dal.models import (
    GameSession,
    GroupOutcome,
    Outcome,
    OutcomeResult,
    PlayerProfile,
    PlayerStatus,
    SessionStatus,
    SoloOutcome,
    TemplateType,
    VersusOutcome,
)

__all__ = [
    "GameSession",
    "GroupOutcome",
    "Outcome",
    "OutcomeResult",
    "PersistenceError",
    "PersistenceGateway",
    "PlayerProfile",
    "PlayerStatus",
    "SessionStatus",
    "SoloOutcome",
    "TemplateType",
    "Transaction",
    "VersusOutcome",
]
