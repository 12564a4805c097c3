"""Beacon service configuration via environment variables."""

import json
from datetime import timedelta
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

from beacon.scheduler import DEFAULT_FORFEITURE_WINDOW, DEFAULT_SWEEP_INTERVAL


class BeaconSettings(BaseSettings):
    model_config = {"env_prefix": "BEACON_"}

    # ISO 8601 durations in the environment: "P3D", "PT60S"
    forfeiture_window: timedelta = DEFAULT_FORFEITURE_WINDOW
    sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL
    database_path: str = Field(default="backend/beacon.db", min_length=1)
    log_dir: str = Field(default="backend/logs/beacon", min_length=1)
    # NoDecode: pydantic-settings would otherwise insist on JSON for list fields
    cors_origins: Annotated[list[str], NoDecode] = []

    @field_validator("forfeiture_window", "sweep_interval")
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("Duration must be positive")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Accept a list, a JSON array string, or a comma-separated string."""
        if not isinstance(v, str):
            return v
        stripped = v.strip()
        if stripped.startswith("["):
            parsed = json.loads(stripped)
            if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
                raise ValueError("JSON value must be an array of strings")
            return parsed
        return [origin.strip() for origin in stripped.split(",") if origin.strip()]
