from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shared.dal.models import TemplateType


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    beacon_id: str = Field(min_length=1, max_length=100)
    template_id: str = Field(min_length=1, max_length=100)
    template_type: TemplateType
    participants: list[str] = Field(min_length=1, max_length=500)


class CompleteSessionRequest(BaseModel):
    """Outcome payload; its shape is checked against the session's template type."""

    model_config = ConfigDict(extra="forbid")

    outcome: dict[str, Any]
